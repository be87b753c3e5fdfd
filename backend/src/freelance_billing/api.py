from __future__ import annotations

import hmac
import re
from contextlib import contextmanager
from datetime import date
from typing import Iterator

from fastapi import APIRouter, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from .accounts import AccountService
from .clock import local_today
from .config import Settings
from .dispatcher import ReminderDispatcher
from .errors import (
    BillingError,
    DispatchAlreadyRunningError,
    DuplicateUserError,
    EmailDeliveryError,
    ReminderDispatchError,
)
from .invoice_email import InvoiceEmailService
from .lifecycle import InvoiceLifecycle
from .models import (
    ClientCreateRequest,
    ClientRecord,
    DueReminderItem,
    DueReminderListResponse,
    InvoiceCreateRequest,
    InvoiceDeleteResponse,
    InvoiceDocumentResponse,
    InvoiceEmailRequest,
    InvoiceEmailResponse,
    InvoiceRecord,
    InvoiceStatusUpdateRequest,
    InvoiceUpdateRequest,
    PaymentCreateRequest,
    PaymentDeleteResponse,
    PaymentRecord,
    ReminderDebugResponse,
    ReminderDispatchResponse,
    ReminderDispatchRunListResponse,
    ReminderRecord,
    ReminderRunRequest,
    ReminderSyncResponse,
    UserCreateRequest,
    UserRecord,
)
from .payments import PaymentService
from .reminder_ledger import ReminderLedger, to_reminder_record

router = APIRouter(prefix="/billing", tags=["billing"])

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _today(request: Request) -> date:
    return local_today(_settings(request).billing_timezone)


@contextmanager
def _transaction(request: Request) -> Iterator[Session]:
    with request.app.state.database.session() as session:
        with session.begin():
            yield session


def _require_user(request: Request) -> int:
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        raise HTTPException(401, "user identity required")
    try:
        user_id = int(raw)
    except ValueError as exc:
        raise HTTPException(401, "invalid user identity") from exc
    if user_id <= 0:
        raise HTTPException(401, "invalid user identity")
    return user_id


def _require_admin(request: Request) -> None:
    token = request.headers.get("X-Admin-Token", "")
    expected = _settings(request).admin_api_token
    if not token or not expected:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid admin token")


def _http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, KeyError):
        detail = exc.args[0] if exc.args else ""
        label = _CAMEL_RE.sub(" ", exc.__class__.__name__.removesuffix("NotFoundError")).lower()
        return HTTPException(status_code=404, detail=f"{label} not found: {detail}")
    if isinstance(exc, DuplicateUserError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DispatchAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, EmailDeliveryError):
        return HTTPException(status_code=502, detail={"message": exc.message, "error_code": exc.error_code})
    if isinstance(exc, ReminderDispatchError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _lifecycle(request: Request, session: Session) -> InvoiceLifecycle:
    return InvoiceLifecycle(session, today=_today(request), default_currency=_settings(request).default_currency)


def _dispatcher(request: Request) -> ReminderDispatcher:
    return request.app.state.dispatcher


# ---------------------------------------------------------------------------
# Users and clients
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserRecord, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreateRequest, request: Request) -> UserRecord:
    try:
        with _transaction(request) as session:
            return AccountService(session, default_currency=_settings(request).default_currency).create_user(payload)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/users/me", response_model=UserRecord)
def get_current_user(request: Request) -> UserRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return AccountService(session).get_user(user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.post("/clients", response_model=ClientRecord, status_code=status.HTTP_201_CREATED)
def create_client(payload: ClientCreateRequest, request: Request) -> ClientRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return AccountService(session).create_client(user_id, payload)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/clients", response_model=list[ClientRecord])
def list_clients(request: Request) -> list[ClientRecord]:
    user_id = _require_user(request)
    with _transaction(request) as session:
        return AccountService(session).list_clients(user_id)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


@router.post("/invoices", response_model=InvoiceRecord, status_code=status.HTTP_201_CREATED)
def create_invoice(payload: InvoiceCreateRequest, request: Request) -> InvoiceRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).create_invoice(user_id, payload)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/invoices", response_model=list[InvoiceRecord])
def list_invoices(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
) -> list[InvoiceRecord]:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).list_invoices(user_id, status=status_filter)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/invoices/{invoice_id}", response_model=InvoiceRecord)
def get_invoice(invoice_id: int, request: Request) -> InvoiceRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).get_invoice(invoice_id, user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.put("/invoices/{invoice_id}", response_model=InvoiceRecord)
def update_invoice(invoice_id: int, payload: InvoiceUpdateRequest, request: Request) -> InvoiceRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).update_invoice(invoice_id, user_id, payload)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.patch("/invoices/{invoice_id}/status", response_model=InvoiceRecord)
def update_invoice_status(invoice_id: int, payload: InvoiceStatusUpdateRequest, request: Request) -> InvoiceRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).set_status(invoice_id, user_id, payload.status)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.delete("/invoices/{invoice_id}", response_model=InvoiceDeleteResponse)
def delete_invoice(invoice_id: int, request: Request) -> InvoiceDeleteResponse:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            _lifecycle(request, session).delete_invoice(invoice_id, user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return InvoiceDeleteResponse(invoice_id=invoice_id, deleted=True)


@router.put("/invoices/{invoice_id}/pdf", response_model=InvoiceDocumentResponse)
async def upload_invoice_pdf(invoice_id: int, request: Request) -> InvoiceDocumentResponse:
    user_id = _require_user(request)
    content = await request.body()
    if not content:
        raise HTTPException(400, "invoice PDF body is empty")
    try:
        with _transaction(request) as session:
            return _lifecycle(request, session).attach_pdf(
                invoice_id,
                user_id,
                content,
                request.app.state.document_store,
            )
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.post("/invoices/{invoice_id}/email", response_model=InvoiceEmailResponse)
def send_invoice_email(invoice_id: int, payload: InvoiceEmailRequest, request: Request) -> InvoiceEmailResponse:
    user_id = _require_user(request)
    email_service: InvoiceEmailService = request.app.state.email_service
    try:
        with _transaction(request) as session:
            return email_service.send_invoice_email(
                session,
                invoice_id,
                user_id,
                payload.type,
                today=_today(request),
                trigger="manual",
            )
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/invoices/{invoice_id}/reminders", response_model=list[ReminderRecord])
def list_invoice_reminders(invoice_id: int, request: Request) -> list[ReminderRecord]:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            _lifecycle(request, session).get_invoice(invoice_id, user_id)
            return [to_reminder_record(row) for row in ReminderLedger(session).list_for_invoice(invoice_id)]
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.get("/invoices/{invoice_id}/payments", response_model=list[PaymentRecord])
def list_invoice_payments(invoice_id: int, request: Request) -> list[PaymentRecord]:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return PaymentService(session).list_for_invoice(invoice_id, user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.post("/payments", response_model=PaymentRecord, status_code=status.HTTP_201_CREATED)
def create_payment(payload: PaymentCreateRequest, request: Request) -> PaymentRecord:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            return PaymentService(session).create_payment(user_id, payload)
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.delete("/payments/{payment_id}", response_model=PaymentDeleteResponse)
def delete_payment(payment_id: int, request: Request) -> PaymentDeleteResponse:
    user_id = _require_user(request)
    try:
        with _transaction(request) as session:
            PaymentService(session).delete_payment(payment_id, user_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return PaymentDeleteResponse(payment_id=payment_id, deleted=True)


# ---------------------------------------------------------------------------
# Reminder administration
# ---------------------------------------------------------------------------


@router.post("/reminders/run", response_model=ReminderDispatchResponse)
def run_reminders(request: Request, payload: ReminderRunRequest | None = None) -> ReminderDispatchResponse:
    _require_admin(request)
    run_date = payload.run_date if payload is not None and payload.run_date is not None else _today(request)
    try:
        return _dispatcher(request).process_due(run_date, triggered_by="admin_api")
    except BillingError as exc:
        raise _http_error(exc) from exc


@router.post("/reminders/sync", response_model=ReminderSyncResponse)
def sync_reminders(request: Request) -> ReminderSyncResponse:
    _require_admin(request)
    with _transaction(request) as session:
        result = ReminderLedger(session).sync_missing(_today(request))
    return ReminderSyncResponse(invoice_ids=result.invoice_ids, reminders_created=result.reminders_created)


@router.get("/reminders/due", response_model=DueReminderListResponse)
def list_due_reminders(request: Request, as_of: date | None = None) -> DueReminderListResponse:
    _require_admin(request)
    effective = as_of or _today(request)
    with _transaction(request) as session:
        due = ReminderLedger(session).list_due_with_details(effective)
    return DueReminderListResponse(
        as_of=effective,
        items=[
            DueReminderItem(
                reminder_id=item.reminder_id,
                invoice_id=item.invoice_id,
                kind=item.kind,
                trigger_date=item.trigger_date,
                invoice_number=item.invoice_number,
                invoice_status=item.invoice_status,
                client_name=item.client_name,
                client_email=item.client_email,
                user_name=item.user_name,
            )
            for item in due
        ],
    )


@router.get("/reminders/debug", response_model=ReminderDebugResponse)
def debug_reminders(request: Request) -> ReminderDebugResponse:
    _require_admin(request)
    with _transaction(request) as session:
        inspection = ReminderLedger(session).inspect(_today(request))
    return ReminderDebugResponse(
        today=inspection.today,
        total=len(inspection.items),
        unsent=inspection.unsent,
        items=inspection.items,
        invoices_without_reminders=inspection.invoices_without_reminders,
    )


@router.get("/reminders/runs", response_model=ReminderDispatchRunListResponse)
def list_reminder_runs(request: Request, limit: int = 20) -> ReminderDispatchRunListResponse:
    _require_admin(request)
    bounded = max(1, min(limit, 200))
    return ReminderDispatchRunListResponse(items=_dispatcher(request).list_runs(limit=bounded))
