from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_DB_PATH = ".turnbound/turnbound.db"


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    brave_api_key: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    max_tool_result_chars: int
    max_tool_rounds: int
    working_directory: str | None
    db_path: str
    cache_ttl_hours: float
    continue_conversation: bool
    resume_session_id: str | None
    store_queue_size: int
    turn_queue_size: int
    max_display_turns: int
    shutdown_flush_seconds: float
    session_retention_days: int
    max_sessions: int
    enable_undo: bool
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _positive_int(config: dict, key: str, default: int) -> int:
    value = int(config.get(key, default))
    if value < 1:
        raise ValueError(f"{key} must be at least 1 (got {value})")
    return value


def parse_app_config(config: dict) -> AppConfig:
    cache_ttl_hours = float(config.get("CacheTtlHours", 24))
    if cache_ttl_hours <= 0:
        raise ValueError(f"CacheTtlHours must be positive (got {cache_ttl_hours})")

    return AppConfig(
        provider_name=str(config.get("Provider", "anthropic")).strip().lower(),
        model=config.get("Model", DEFAULT_MODEL),
        max_tokens=_positive_int(config, "MaxTokens", 8192),
        temperature=float(config.get("Temperature", 1.0)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        max_tool_rounds=_positive_int(config, "MaxToolRounds", 60),
        working_directory=config.get("WorkingDirectory"),
        db_path=str(config.get("DbPath", DEFAULT_DB_PATH)),
        cache_ttl_hours=cache_ttl_hours,
        continue_conversation=_to_bool(config.get("ContinueConversation", False), default=False),
        resume_session_id=str(config.get("ResumeSessionId", "")).strip() or None,
        store_queue_size=_positive_int(config, "StoreQueueSize", 64),
        turn_queue_size=_positive_int(config, "TurnQueueSize", 500),
        max_display_turns=_positive_int(config, "MaxDisplayTurns", 50),
        shutdown_flush_seconds=float(config.get("ShutdownFlushSeconds", 5.0)),
        session_retention_days=int(config.get("SessionRetentionDays", 30)),
        max_sessions=int(config.get("MaxSessions", 200)),
        enable_undo=_to_bool(config.get("EnableUndo", True), default=True),
        log_level=str(config.get("LogLevel", "INFO")),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        provider_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        provider_env_var="ANTHROPIC_API_KEY",
        brave_api_key=os.environ.get("BRAVE_API_KEY") or None,
    )
