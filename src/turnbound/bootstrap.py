from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from turnbound.app_config import AppConfig, RuntimeEnv
from turnbound.file_tracker import FileReadTracker
from turnbound.llm_loop import process_turn
from turnbound.logging_config import setup_logging
from turnbound.memory import (
    DeltaTracker,
    MemoryStore,
    ResultCache,
    SessionStore,
    WriteBehindQueue,
    prune_sessions,
)
from turnbound.provider import create_provider
from turnbound.system_prompt import build_system_prompt
from turnbound.tool_registry import ToolRegistry, get_all
from turnbound.turn_controller import ConversationObserver, TurnController
from turnbound.turn_engine import TurnEngine


@dataclass
class AppRuntime:
    controller: TurnController
    engine: TurnEngine
    memory_store: MemoryStore
    sessions: SessionStore
    cache: ResultCache
    write_behind: WriteBehindQueue
    delta_tracker: DeltaTracker | None
    tools: ToolRegistry
    session_id: str
    resumed: bool
    log_descriptions: list[str] = field(default_factory=list)
    controller_task: asyncio.Task | None = None


def _resolve_db_path(db_path: str) -> Path:
    path = Path(db_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _select_session(app: AppConfig, sessions: SessionStore) -> tuple[str, bool]:
    if app.resume_session_id:
        if not sessions.session_exists(app.resume_session_id):
            raise ValueError(f"Resume session not found: {app.resume_session_id}")
        return app.resume_session_id, True
    if app.continue_conversation:
        latest = sessions.latest_session_id()
        if latest is not None:
            return latest, True
    return sessions.create_session(), False


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    observer: ConversationObserver | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    working_directory = app.working_directory or str(Path.cwd())
    memory_store = MemoryStore(str(_resolve_db_path(app.db_path)))
    sessions = SessionStore(memory_store)
    cache = ResultCache(memory_store, ttl_seconds=int(app.cache_ttl_hours * 3600))

    session_id, resumed = _select_session(app, sessions)
    removed = prune_sessions(
        memory_store,
        max_sessions=app.max_sessions,
        retention_days=app.session_retention_days,
        keep_session_id=session_id,
    )
    if removed:
        logger.info(f"Pruned {removed} old session(s)")

    read_tracker = FileReadTracker()
    delta_tracker = DeltaTracker(memory_store, session_id=session_id) if app.enable_undo else None
    tools = ToolRegistry(
        get_all(working_directory, tracker=read_tracker, cache=cache, brave_api_key=env.brave_api_key),
        max_result_chars=app.max_tool_result_chars,
    )
    provider = create_provider(
        app.provider_name,
        env.provider_api_key,
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
    )

    engine = TurnEngine(
        process_turn=functools.partial(process_turn, max_tool_rounds=app.max_tool_rounds),
        provider=provider,
        tools=tools,
        queue_size=app.turn_queue_size,
        delta_tracker=delta_tracker,
        snapshot_root=working_directory if delta_tracker is not None else None,
    )

    write_behind = WriteBehindQueue(sessions, maxsize=app.store_queue_size)
    await write_behind.start()

    controller = TurnController(
        engine,
        session_id=session_id,
        sessions=sessions,
        write_behind=write_behind,
        delta_tracker=delta_tracker,
        read_tracker=read_tracker,
        observer=observer,
        max_display_turns=app.max_display_turns,
        system_prompt=build_system_prompt(working_directory),
    )
    if resumed:
        stored = await asyncio.to_thread(sessions.load_messages, session_id)
        controller.load_history([s.message for s in stored])
        logger.info(f"Resumed session {session_id} with {len(stored)} message(s)")

    runtime = AppRuntime(
        controller=controller,
        engine=engine,
        memory_store=memory_store,
        sessions=sessions,
        cache=cache,
        write_behind=write_behind,
        delta_tracker=delta_tracker,
        tools=tools,
        session_id=session_id,
        resumed=resumed,
        log_descriptions=log_descriptions,
    )
    runtime.controller_task = asyncio.create_task(controller.run(), name="turn-controller")
    return runtime


async def shutdown_runtime(runtime: AppRuntime, *, timeout: float) -> None:
    """Stop the current turn, flush queued writes within ``timeout`` and close the database."""
    try:
        await runtime.controller.close(timeout)
        if runtime.controller_task is not None:
            await runtime.controller_task
        await runtime.write_behind.close(timeout)
    finally:
        runtime.memory_store.close()
        logger.info(f"Shut down session {runtime.session_id} ({runtime.write_behind.dropped_batches} dropped batch(es))")
