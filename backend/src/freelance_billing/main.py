from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .db import Database
from .dispatcher import ReminderDispatcher
from .documents import DocumentStore, create_document_store
from .invoice_email import InvoiceEmailService
from .mailer import MailSender, create_mail_sender

logger = logging.getLogger(__name__)


def _origin(url: str) -> str:
    normalized = url.strip().rstrip("/")
    if "://" in normalized:
        return "/".join(normalized.split("/")[:3])
    return normalized


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    mail_sender: MailSender | None = None,
    document_store: DocumentStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("freelance_billing").setLevel(settings.log_level)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set ADMIN_API_TOKEN, the SMTP credentials and a persistent DATABASE_URL."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    database = database or Database(settings.database_url)
    mail_sender = mail_sender or create_mail_sender(settings)
    document_store = document_store or create_document_store(
        backend=settings.document_store_backend,
        root=settings.document_store_root,
    )
    email_service = InvoiceEmailService(mail_sender=mail_sender, document_store=document_store)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.database = database
    app.state.mail_sender = mail_sender
    app.state.document_store = document_store
    app.state.email_service = email_service
    app.state.dispatcher = ReminderDispatcher(
        database=database,
        email_service=email_service,
        lock_ttl_seconds=settings.reminder_dispatch_lock_ttl_seconds,
        send_timeout_seconds=settings.mail_send_timeout_seconds,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[_origin(settings.frontend_base_url)],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
