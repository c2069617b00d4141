"""Configuration layer: load relay settings from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _resolve_path(path_like: str) -> Path:
    candidate = Path(path_like)
    if candidate.is_absolute():
        return candidate
    if candidate.exists():
        return candidate
    project_root = Path(__file__).resolve().parents[2]
    rooted = project_root / candidate
    if rooted.exists():
        return rooted
    return candidate


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    """Immutable relay settings shared by transport, session and engine layers."""

    app_name: str = "Agent Relay"
    app_version: str = "0.1.0"
    env: str = "dev"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_allow_origins: str = "http://localhost:5173,http://127.0.0.1:5173"
    access_log_enabled: bool = True
    auth_tokens: str = ""
    replay_buffer_size: int = 256
    outbound_queue_size: int = 512
    slow_consumer_send_timeout_seconds: float = 5.0
    sse_keepalive_seconds: float = 15.0
    session_idle_timeout_seconds: float = 900.0
    session_sweep_interval_seconds: float = 30.0
    closed_session_grace_seconds: float = 120.0
    retired_session_capacity: int = 4096
    engine: str = "echo"
    engine_script_file: Path = Path("config/engine_script.yaml")
    engine_step_delay_seconds: float = 0.05

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from process env with deterministic defaults."""
        return cls(
            app_name=os.getenv("APP_NAME", cls.app_name),
            app_version=os.getenv("APP_VERSION", cls.app_version),
            env=os.getenv("APP_ENV", cls.env),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            host=os.getenv("HOST", cls.host),
            port=_env_int("PORT", cls.port),
            cors_allow_origins=os.getenv("CORS_ALLOW_ORIGINS", cls.cors_allow_origins),
            access_log_enabled=_env_bool("ACCESS_LOG_ENABLED", cls.access_log_enabled),
            auth_tokens=os.getenv("RELAY_AUTH_TOKENS", cls.auth_tokens),
            replay_buffer_size=_env_int("REPLAY_BUFFER_SIZE", cls.replay_buffer_size),
            outbound_queue_size=_env_int("OUTBOUND_QUEUE_SIZE", cls.outbound_queue_size),
            slow_consumer_send_timeout_seconds=_env_float(
                "SLOW_CONSUMER_SEND_TIMEOUT_SECONDS", cls.slow_consumer_send_timeout_seconds
            ),
            sse_keepalive_seconds=_env_float("SSE_KEEPALIVE_SECONDS", cls.sse_keepalive_seconds),
            session_idle_timeout_seconds=_env_float(
                "SESSION_IDLE_TIMEOUT_SECONDS", cls.session_idle_timeout_seconds
            ),
            session_sweep_interval_seconds=_env_float(
                "SESSION_SWEEP_INTERVAL_SECONDS", cls.session_sweep_interval_seconds
            ),
            closed_session_grace_seconds=_env_float(
                "CLOSED_SESSION_GRACE_SECONDS", cls.closed_session_grace_seconds
            ),
            retired_session_capacity=_env_int(
                "RETIRED_SESSION_CAPACITY", cls.retired_session_capacity
            ),
            engine=os.getenv("RELAY_ENGINE", cls.engine).strip().lower(),
            engine_script_file=_resolve_path(
                os.getenv("RELAY_ENGINE_SCRIPT_FILE", str(cls.engine_script_file))
            ),
            engine_step_delay_seconds=_env_float(
                "RELAY_ENGINE_STEP_DELAY_SECONDS", cls.engine_step_delay_seconds
            ),
        )

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]
