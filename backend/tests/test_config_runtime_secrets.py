from __future__ import annotations

import os

from inbox_web.config import Settings, get_settings, runtime_secret_issues
from inbox_web.services import create_template_source
from inbox_web.whatsapp import HttpTemplateSource


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = [
        "WHATSAPP_SENDER_TYPE",
        "WHATSAPP_WEBHOOK_SIGNATURE_MODE",
        "SESSION_WINDOW_HOURS",
        "CONVERSATION_STORE_BACKEND",
        "RUNTIME_SECRET_GUARD_MODE",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.whatsapp_sender_type == "stub"
        assert settings.whatsapp_webhook_signature_mode == "log_only"
        assert settings.session_window_hours == 24.0
        assert settings.conversation_store_backend == "inmemory"
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_falls_back_on_invalid_values() -> None:
    previous = {
        "WHATSAPP_SENDER_TYPE": _set_env("WHATSAPP_SENDER_TYPE", "carrier-pigeon"),
        "SESSION_WINDOW_HOURS": _set_env("SESSION_WINDOW_HOURS", "soon"),
        "LEDGER_RETENTION_DAYS": _set_env("LEDGER_RETENTION_DAYS", " 7 "),
        "LOG_LEVEL": _set_env("LOG_LEVEL", "debug"),
    }
    try:
        settings = get_settings()
        assert settings.whatsapp_sender_type == "stub"
        assert settings.session_window_hours == 24.0
        assert settings.ledger_retention_days == 7
        assert settings.log_level == "DEBUG"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_parsed_agent_directory_skips_malformed_entries() -> None:
    settings = Settings(agent_directory="agent-1:Ana:Admin; broken ;agent-2::support;agent-3:Mia:marketing")

    assert settings.parsed_agent_directory() == (
        ("agent-1", "Ana", "admin"),
        ("agent-3", "Mia", "marketing"),
    )


def test_placeholder_secrets_are_reported() -> None:
    issues = runtime_secret_issues(
        Settings(
            whatsapp_verify_token="change-me",
            events_api_key="",
            whatsapp_webhook_signature_mode="enforce",
            whatsapp_sender_type="http",
        )
    )

    assert any("WHATSAPP_VERIFY_TOKEN" in issue for issue in issues)
    assert any("EVENTS_API_KEY" in issue for issue in issues)
    assert any("WHATSAPP_APP_SECRET is required" in issue for issue in issues)
    assert any("WHATSAPP_ACCESS_TOKEN is required" in issue for issue in issues)
    assert any("WHATSAPP_PHONE_NUMBER_ID is required" in issue for issue in issues)


def test_complete_configuration_has_no_issues() -> None:
    settings = Settings(
        whatsapp_verify_token="prod-verify-token-001",
        whatsapp_app_secret="prod-app-secret-001",
        whatsapp_webhook_signature_mode="enforce",
        whatsapp_sender_type="http",
        whatsapp_access_token="prod-access-token-001",
        whatsapp_phone_number_id="1098765",
        events_api_key="prod-events-key-001",
    )

    assert runtime_secret_issues(settings) == ()


def test_log_only_signature_mode_does_not_require_app_secret() -> None:
    issues = runtime_secret_issues(
        Settings(
            whatsapp_verify_token="prod-verify-token-001",
            events_api_key="prod-events-key-001",
            whatsapp_webhook_signature_mode="log_only",
        )
    )

    assert issues == ()


def test_template_source_requires_http_sender_and_business_id() -> None:
    assert create_template_source(Settings()) is None
    assert create_template_source(Settings(whatsapp_sender_type="http", whatsapp_access_token="token")) is None

    previous = _set_env("WHATSAPP_BUSINESS_ID", "WABA1")
    try:
        settings = get_settings()
    finally:
        _restore_env("WHATSAPP_BUSINESS_ID", previous)
    assert settings.whatsapp_business_account_id == "WABA1"

    configured = Settings(
        whatsapp_sender_type="http",
        whatsapp_access_token="token",
        whatsapp_business_account_id=settings.whatsapp_business_account_id,
    )
    assert isinstance(create_template_source(configured), HttpTemplateSource)
