import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from turnbound.app_config import load_json_config, parse_app_config, resolve_runtime_env
from turnbound.bootstrap import AppRuntime, bootstrap_runtime, shutdown_runtime
from turnbound.commands.router import CommandRouter
from turnbound.models import ROLE_TOOL, Message
from turnbound.turn_controller import ConversationObserver, TurnPhase
from turnbound.turn_events import ContentDelta, TerminalEvent, TurnDone, TurnEvent, TurnFailed

_HELP = """\
Commands:
  /undo              undo the last turn (files, history and stored messages)
  /sessions [limit]  list recent sessions
  /help              show this help
  exit, quit         leave (queued writes are flushed first)
Press Ctrl-C while the assistant is working to interrupt the turn."""


class ConsoleObserver(ConversationObserver):
    """Prints streamed output and turn results to stdout."""

    def __init__(self) -> None:
        self._at_line_start = True

    def _write(self, text: str) -> None:
        if not text:
            return
        sys.stdout.write(text)
        sys.stdout.flush()
        self._at_line_start = text.endswith("\n")

    def _line(self, text: str) -> None:
        if not self._at_line_start:
            self._write("\n")
        self._write(f"{text}\n")

    def on_delta(self, event: TurnEvent) -> None:
        if isinstance(event, ContentDelta):
            self._write(event.text)

    def on_message(self, message: Message) -> None:
        if message.role == ROLE_TOOL:
            first_line = message.content.split("\n", 1)[0][:100]
            self._line(f"  [tool] {first_line}")
        for tc in message.tool_calls:
            self._line(f"  -> {tc.name}")

    def on_turn_finished(self, phase: TurnPhase, event: TerminalEvent | None) -> None:
        if isinstance(event, TurnDone):
            self._line(
                f"--- {event.duration_seconds:.1f}s | in {event.input_tokens:,} | out {event.output_tokens:,} ---"
            )
        elif isinstance(event, TurnFailed):
            self._line(f"Error: {event.error}")
        elif phase == TurnPhase.CANCELLED:
            self._line("(interrupted)")
        self._write("\n")

    def on_undo_finished(self, restored: list[str], error: str | None) -> None:
        if restored:
            self._line(f"Undo restored {len(restored)} file(s):")
            for path in restored:
                self._line(f"  {path}")
        else:
            self._line("Undo done.")
        if error:
            self._line(f"Undo incomplete: {error}")

    def on_notice(self, text: str) -> None:
        self._line(text)


def _print_banner(runtime: AppRuntime, working_directory: str | None) -> None:
    print("turnbound (type 'exit' to quit, '/help' for commands)")
    print("Tools:")
    for t in runtime.tools.tools:
        print(f"  - {t.name}")
    if working_directory:
        print(f"Working directory: {working_directory}")
    state = "resumed" if runtime.resumed else "new"
    print(f"Session: {runtime.session_id} ({state})")
    print(f"Undo: {'enabled' if runtime.delta_tracker is not None else 'disabled'}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()


async def _run_turn(runtime: AppRuntime, text: str) -> None:
    controller = runtime.controller
    if not await controller.submit(text):
        print("Busy: wait for the current turn to finish.")
        return

    session = await asyncio.to_thread(runtime.sessions.get_session, runtime.session_id)
    if session is not None and not session.title:
        await asyncio.to_thread(runtime.sessions.set_session_title, runtime.session_id, text[:60])

    loop = asyncio.get_running_loop()
    interrupt_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(controller.cancel()))
        interrupt_installed = True
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler unavailable; Ctrl-C will exit instead of interrupting")
    try:
        await controller.wait_until_idle()
    finally:
        if interrupt_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    if not env.provider_api_key:
        print(f"{env.provider_env_var} environment variable is required.", file=sys.stderr)
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env, observer=ConsoleObserver())
    controller = runtime.controller

    async def on_help() -> None:
        print(_HELP)

    async def on_undo() -> None:
        if not await controller.undo():
            print("Nothing to undo.")
            return
        await controller.wait_until_idle()

    async def on_sessions(command: str) -> None:
        parts = command.split()
        limit = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 20
        sessions = await asyncio.to_thread(runtime.sessions.list_sessions, limit=limit)
        if not sessions:
            print("No sessions.")
        for s in sessions:
            marker = "*" if s.id == runtime.session_id else " "
            print(f"{marker} {s.id}  {s.title or '(untitled)'}")

    def on_unknown(command: str) -> None:
        print(f"Unknown command: {command} (try /help)")

    router = CommandRouter(on_help=on_help, on_undo=on_undo, on_sessions=on_sessions, on_unknown=on_unknown)
    _print_banner(runtime, app.working_directory)

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit", "/quit"):
                break
            if not trimmed:
                continue

            try:
                if await router.try_handle(trimmed):
                    continue
                print()
                await _run_turn(runtime, trimmed)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await shutdown_runtime(runtime, timeout=app.shutdown_flush_seconds)


if __name__ == "__main__":
    asyncio.run(main())
