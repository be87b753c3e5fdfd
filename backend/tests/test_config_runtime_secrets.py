from __future__ import annotations

import os

from freelance_billing.config import Settings, get_settings, runtime_secret_issues


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


def test_get_settings_defaults_to_stub_mail_and_in_memory_documents() -> None:
    previous_mail = _set_env("MAIL_SENDER_TYPE", None)
    previous_store = _set_env("DOCUMENT_STORE_BACKEND", None)
    try:
        settings = get_settings()
        assert settings.mail_sender_type == "stub"
        assert settings.document_store_backend == "inmemory"
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        _restore_env("MAIL_SENDER_TYPE", previous_mail)
        _restore_env("DOCUMENT_STORE_BACKEND", previous_store)


def test_get_settings_falls_back_to_gmail_credentials() -> None:
    previous = {
        "SMTP_USERNAME": _set_env("SMTP_USERNAME", None),
        "SMTP_PASSWORD": _set_env("SMTP_PASSWORD", None),
        "GMAIL_USER": _set_env("GMAIL_USER", "asha@gmail.com"),
        "GMAIL_APP_PASSWORD": _set_env("GMAIL_APP_PASSWORD", "abcd efgh ijkl mnop"),
        "MAIL_FROM_ADDRESS": _set_env("MAIL_FROM_ADDRESS", None),
    }
    try:
        settings = get_settings()
        assert settings.smtp_username == "asha@gmail.com"
        assert settings.smtp_password == "abcd efgh ijkl mnop"
        assert settings.mail_sender_address == "asha@gmail.com"
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_unknown_modes_fall_back_to_defaults() -> None:
    previous = {
        "MAIL_SENDER_TYPE": _set_env("MAIL_SENDER_TYPE", "sendgrid"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "loud"),
        "SMTP_PORT": _set_env("SMTP_PORT", "not-a-port"),
    }
    try:
        settings = get_settings()
        assert settings.mail_sender_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.smtp_port == 587
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_placeholder_admin_token_and_memory_database_are_flagged() -> None:
    issues = runtime_secret_issues(Settings())

    assert any("ADMIN_API_TOKEN" in issue for issue in issues)
    assert any("DATABASE_URL" in issue for issue in issues)


def test_smtp_without_credentials_is_flagged() -> None:
    issues = runtime_secret_issues(
        Settings(
            admin_api_token="prod-admin-token-001",
            database_url="postgresql+psycopg://billing@db/billing",
            mail_sender_type="smtp",
        )
    )

    assert any("SMTP_USERNAME and SMTP_PASSWORD" in issue for issue in issues)
    assert any("MAIL_FROM_ADDRESS" in issue for issue in issues)


def test_production_settings_have_no_issues() -> None:
    issues = runtime_secret_issues(
        Settings(
            admin_api_token="prod-admin-token-001",
            database_url="postgresql+psycopg://billing@db/billing",
            mail_sender_type="smtp",
            smtp_username="asha@gmail.com",
            smtp_password="app-password",
        )
    )

    assert issues == ()


def test_log_level_is_normalized() -> None:
    previous = _set_env("LOG_LEVEL", "VERBOSE")
    try:
        assert get_settings().log_level == "INFO"
        os.environ["LOG_LEVEL"] = " debug "
        assert get_settings().log_level == "DEBUG"
    finally:
        _restore_env("LOG_LEVEL", previous)
