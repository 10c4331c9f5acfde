from __future__ import annotations

import os
from dataclasses import dataclass


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "MetaLuxe Inbox"
    api_prefix: str = "/api"
    store_backend: str = "file"
    store_path: str = "db.json"
    database_url: str = ""
    graph_api_base_url: str = "https://graph.facebook.com/v19.0"
    graph_api_timeout_seconds: int = 15
    platform_sender_type: str = "http"
    webhook_signature_mode: str = "off"
    push_probe_interval_seconds: float = 30.0
    server_host: str = "0.0.0.0"
    server_port: int = 3001
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"


@dataclass(frozen=True)
class ClientSettings:
    api_base_url: str = "http://localhost:3001/api"
    push_url: str = "ws://localhost:3001/api/ws"
    reconnect_delay_seconds: float = 3.0
    # 1.0 keeps the reconnect delay fixed; larger values back off up to the max.
    reconnect_backoff_factor: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    reply_debounce_seconds: float = 0.5
    gemini_model: str = "gemini-2.5-flash"
    history_window: int = 8
    request_timeout_seconds: float = 30.0


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INBOX_APP_NAME", "MetaLuxe Inbox"),
        api_prefix=os.getenv("INBOX_API_PREFIX", "/api"),
        store_backend=os.getenv("INBOX_STORE_BACKEND", "file"),
        store_path=os.getenv("INBOX_STORE_PATH", "db.json"),
        database_url=os.getenv("DATABASE_URL", ""),
        graph_api_base_url=os.getenv("GRAPH_API_BASE_URL", "https://graph.facebook.com/v19.0"),
        graph_api_timeout_seconds=_as_int(os.getenv("GRAPH_API_TIMEOUT_SECONDS"), 15),
        platform_sender_type=os.getenv("PLATFORM_SENDER_TYPE", "http"),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="off",
            allowed={"off", "log_only", "enforce"},
        ),
        push_probe_interval_seconds=_as_float(os.getenv("PUSH_PROBE_INTERVAL_SECONDS"), 30.0),
        server_host=os.getenv("INBOX_HOST", "0.0.0.0"),
        server_port=_as_int(os.getenv("INBOX_PORT"), 3001),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS")) or ("http://localhost:3000",),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def get_client_settings() -> ClientSettings:
    api_base_url = os.getenv("INBOX_API_BASE_URL", "http://localhost:3001/api").rstrip("/")
    default_push_url = api_base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1) + "/ws"
    return ClientSettings(
        api_base_url=api_base_url,
        push_url=os.getenv("INBOX_PUSH_URL", default_push_url),
        reconnect_delay_seconds=_as_float(os.getenv("INBOX_RECONNECT_DELAY_SECONDS"), 3.0),
        reconnect_backoff_factor=max(1.0, _as_float(os.getenv("INBOX_RECONNECT_BACKOFF_FACTOR"), 1.0)),
        reconnect_max_delay_seconds=_as_float(os.getenv("INBOX_RECONNECT_MAX_DELAY_SECONDS"), 30.0),
        reply_debounce_seconds=_as_float(os.getenv("INBOX_REPLY_DEBOUNCE_SECONDS"), 0.5),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        history_window=_as_int(os.getenv("INBOX_HISTORY_WINDOW"), 8),
        request_timeout_seconds=_as_float(os.getenv("INBOX_REQUEST_TIMEOUT_SECONDS"), 30.0),
    )


def runtime_secret_issues(settings: Settings, *, app_secrets_configured: bool = False) -> tuple[str, ...]:
    issues: list[str] = []
    backend = settings.store_backend.strip().lower()
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when INBOX_STORE_BACKEND=postgres")
    if backend == "file" and not settings.store_path.strip():
        issues.append("INBOX_STORE_PATH is empty; the file store needs a document path")
    if settings.webhook_signature_mode == "enforce" and not app_secrets_configured:
        issues.append(
            "WEBHOOK_SIGNATURE_MODE=enforce but no platform connection has an app secret; "
            "every webhook batch will be dropped"
        )
    if settings.platform_sender_type not in {"http", "stub"}:
        issues.append(f"PLATFORM_SENDER_TYPE={settings.platform_sender_type} is not supported; use http or stub")
    return tuple(issues)
