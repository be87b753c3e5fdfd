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
    app_name: str = "Freelance Billing"
    api_prefix: str = "/api/v1"
    database_url: str = "sqlite+pysqlite:///:memory:"
    billing_timezone: str = "Asia/Kolkata"
    default_currency: str = "INR"
    log_level: str = "INFO"
    frontend_base_url: str = "http://localhost:5173"
    # Outbound mail.
    mail_sender_type: str = "stub"
    mail_from_name: str = "Freelance Billing"
    mail_from_address: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_send_timeout_seconds: int = 30
    # Invoice PDF storage.
    document_store_backend: str = "inmemory"
    document_store_root: str = "./var/documents"
    # Reminder dispatch.
    reminder_dispatch_lock_ttl_seconds: int = 900
    admin_api_token: str = "dev-admin-token"
    runtime_secret_guard_mode: str = "warn"

    @property
    def mail_sender_address(self) -> str:
        return self.mail_from_address.strip() or self.smtp_username.strip()


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INVOICING_APP_NAME", "Freelance Billing"),
        api_prefix=os.getenv("INVOICING_API_PREFIX", "/api/v1"),
        database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///:memory:"),
        billing_timezone=os.getenv("BILLING_TIMEZONE", "Asia/Kolkata"),
        default_currency=os.getenv("DEFAULT_CURRENCY", "INR").strip().upper() or "INR",
        log_level=_normalize_mode(
            os.getenv("LOG_LEVEL"),
            default="info",
            allowed={"debug", "info", "warning", "error", "critical"},
        ).upper(),
        frontend_base_url=os.getenv("FRONTEND_BASE_URL", "http://localhost:5173"),
        mail_sender_type=_normalize_mode(
            os.getenv("MAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        mail_from_name=os.getenv("MAIL_FROM_NAME", "Freelance Billing"),
        mail_from_address=os.getenv("MAIL_FROM_ADDRESS", ""),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_username=os.getenv("SMTP_USERNAME", os.getenv("GMAIL_USER", "")),
        smtp_password=os.getenv("SMTP_PASSWORD", os.getenv("GMAIL_APP_PASSWORD", "")),
        smtp_use_tls=_as_bool(os.getenv("SMTP_USE_TLS"), True),
        mail_send_timeout_seconds=_as_int(os.getenv("MAIL_SEND_TIMEOUT_SECONDS"), 30),
        document_store_backend=_normalize_mode(
            os.getenv("DOCUMENT_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "filesystem"},
        ),
        document_store_root=os.getenv("DOCUMENT_STORE_ROOT", "./var/documents"),
        reminder_dispatch_lock_ttl_seconds=_as_int(os.getenv("REMINDER_DISPATCH_LOCK_TTL_SECONDS"), 900),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", "dev-admin-token"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_token,
        defaults={"dev-admin-token", "change-me-in-production"},
    ):
        issues.append("ADMIN_API_TOKEN is empty or uses a development placeholder")
    if settings.mail_sender_type == "smtp":
        if not settings.smtp_username.strip() or not settings.smtp_password.strip():
            issues.append("SMTP_USERNAME and SMTP_PASSWORD are required when MAIL_SENDER_TYPE=smtp")
        if not settings.mail_sender_address:
            issues.append("MAIL_FROM_ADDRESS or SMTP_USERNAME is required when MAIL_SENDER_TYPE=smtp")
    if settings.database_url.startswith("sqlite") and ":memory:" in settings.database_url:
        issues.append("DATABASE_URL points at an in-memory database; data is lost on restart")
    return tuple(issues)
