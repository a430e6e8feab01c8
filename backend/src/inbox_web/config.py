from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Wanderlynx Inbox"
    api_prefix: str = "/api/v1"
    cors_allowed_origins: str = "http://localhost:3000"
    # WhatsApp Cloud API delivery.
    whatsapp_enabled: bool = False
    whatsapp_sender_type: str = "stub"
    whatsapp_api_base_url: str = "https://graph.facebook.com/v20.0"
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_business_account_id: str = ""
    whatsapp_timeout_seconds: float = 10.0
    whatsapp_template_language: str = "en_US"
    # Webhook verification.
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_webhook_signature_mode: str = "log_only"
    events_api_key: str = ""
    # Storage.
    conversation_store_backend: str = "inmemory"
    ledger_store_backend: str = "inmemory"
    campaign_store_backend: str = "inmemory"
    database_url: str = ""
    # Messaging policy.
    session_window_hours: float = 24.0
    ledger_retention_days: int = 30
    agent_directory: str = "agent-admin:Admin:admin"
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"
    log_json: bool = False
    # Process runner.
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    def parsed_agent_directory(self) -> tuple[tuple[str, str, str], ...]:
        entries: list[tuple[str, str, str]] = []
        for chunk in self.agent_directory.split(";"):
            parts = [part.strip() for part in chunk.split(":")]
            if len(parts) != 3 or not all(parts):
                continue
            agent_id, display_name, role = parts
            entries.append((agent_id, display_name, role.lower()))
        return tuple(entries)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INBOX_APP_NAME", "Wanderlynx Inbox"),
        api_prefix=os.getenv("INBOX_API_PREFIX", "/api/v1"),
        cors_allowed_origins=os.getenv("INBOX_CORS_ORIGINS", "http://localhost:3000"),
        whatsapp_enabled=_as_bool(os.getenv("WHATSAPP_ENABLED"), False),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com/v20.0"),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_business_account_id=os.getenv("WHATSAPP_BUSINESS_ID", ""),
        whatsapp_timeout_seconds=_as_float(os.getenv("WHATSAPP_API_TIMEOUT_SECONDS"), 10.0),
        whatsapp_template_language=os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en_US"),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_webhook_signature_mode=_normalize_mode(
            os.getenv("WHATSAPP_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        events_api_key=os.getenv("EVENTS_API_KEY", ""),
        conversation_store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "inmemory"),
        ledger_store_backend=os.getenv("LEDGER_STORE_BACKEND", "inmemory"),
        campaign_store_backend=os.getenv("CAMPAIGN_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        session_window_hours=_as_float(os.getenv("SESSION_WINDOW_HOURS"), 24.0),
        ledger_retention_days=_as_int(os.getenv("LEDGER_RETENTION_DAYS"), 30),
        agent_directory=os.getenv("AGENT_DIRECTORY", "agent-admin:Admin:admin"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_json=_as_bool(os.getenv("LOG_JSON"), False),
        server_host=os.getenv("INBOX_HOST", "127.0.0.1").strip() or "127.0.0.1",
        server_port=_as_int(os.getenv("INBOX_PORT"), 8000),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.whatsapp_verify_token, defaults={"dev-verify-token"}):
        issues.append("WHATSAPP_VERIFY_TOKEN is empty or uses a placeholder value")
    if settings.whatsapp_webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WHATSAPP_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.whatsapp_sender_type == "http":
        if not settings.whatsapp_access_token.strip():
            issues.append("WHATSAPP_ACCESS_TOKEN is required when WHATSAPP_SENDER_TYPE=http")
        if not settings.whatsapp_phone_number_id.strip():
            issues.append("WHATSAPP_PHONE_NUMBER_ID is required when WHATSAPP_SENDER_TYPE=http")
    if _is_placeholder(settings.events_api_key, defaults={"dev-events-key"}):
        issues.append("EVENTS_API_KEY is empty or uses a placeholder; event endpoints accept unauthenticated calls")
    if not settings.parsed_agent_directory():
        issues.append("AGENT_DIRECTORY has no valid id:name:role entries")
    return tuple(issues)
