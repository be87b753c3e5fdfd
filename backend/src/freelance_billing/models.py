from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .reminder_planner import RepetitionCode

InvoiceStatus = Literal["pending", "overdue", "paid"]
EmailType = Literal["invoice", "reminder", "update"]
ReminderKindValue = Literal["minus3", "onDue", "plus7", "plus10", "plus15", "manual"]
DispatchRunStatus = Literal["completed", "completed_with_errors", "failed"]

INVOICE_STATUSES: tuple[str, ...] = ("pending", "overdue", "paid")


def _parse_repetition(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    codes: list[str] = []
    for raw in value:
        code = RepetitionCode.parse(raw)
        if code is None:
            raise ValueError(f"unsupported payment reminder repetition: {raw!r}")
        if code.value not in codes:
            codes.append(code.value)
    return codes


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class UserCreateRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=256)
    phone: str | None = Field(default=None, max_length=64)
    currency: str | None = Field(default=None, min_length=3, max_length=8)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("email must contain @")
        return normalized


class UserRecord(BaseModel):
    id: int
    full_name: str
    email: str
    phone: str | None = None
    currency: str
    created_at: datetime


class ClientCreateRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=256)
    organization: str | None = Field(default=None, max_length=256)
    email: str | None = Field(default=None, max_length=256)
    mobile_number: str | None = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        normalized = _strip_optional(value)
        if normalized is not None and "@" not in normalized:
            raise ValueError("email must contain @")
        return normalized


class ClientRecord(BaseModel):
    id: int
    user_id: int
    full_name: str
    organization: str | None = None
    email: str | None = None
    mobile_number: str | None = None
    created_at: datetime


class InvoiceCreateRequest(BaseModel):
    client_id: int
    invoice_number: str | None = Field(default=None, max_length=64)
    invoice_date: date
    due_date: date
    sub_total_amount: float = Field(ge=0)
    gst: float = Field(default=0, ge=0, le=100)
    total_amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    additional_notes: str | None = None
    payment_reminder_repetition: list[str] | None = None

    @field_validator("payment_reminder_repetition")
    @classmethod
    def _normalize_repetition(cls, value: list[str] | None) -> list[str] | None:
        return _parse_repetition(value)

    @model_validator(mode="after")
    def _validate_dates(self) -> InvoiceCreateRequest:
        if self.due_date < self.invoice_date:
            raise ValueError("due_date must be on or after invoice_date")
        return self


class InvoiceUpdateRequest(BaseModel):
    client_id: int | None = None
    invoice_number: str | None = Field(default=None, max_length=64)
    invoice_date: date | None = None
    due_date: date | None = None
    sub_total_amount: float | None = Field(default=None, ge=0)
    gst: float | None = Field(default=None, ge=0, le=100)
    total_amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    additional_notes: str | None = None
    payment_reminder_repetition: list[str] | None = None
    status: str | None = None

    @field_validator("payment_reminder_repetition")
    @classmethod
    def _normalize_repetition(cls, value: list[str] | None) -> list[str] | None:
        return _parse_repetition(value)

    def changes(self) -> dict[str, object]:
        """Fields the caller actually sent, so an explicit null clears a value."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class InvoiceStatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1, max_length=16)


class InvoiceRecord(BaseModel):
    id: int
    user_id: int
    client_id: int
    invoice_number: str | None = None
    invoice_date: date
    due_date: date
    sub_total_amount: float
    gst: float
    total_amount: float
    currency: str
    additional_notes: str | None = None
    payment_reminder_repetition: list[str] = Field(default_factory=list)
    status: InvoiceStatus
    invoice_file_name: str | None = None
    created_at: datetime
    updated_at: datetime
    reminder_warning: str | None = None


class InvoiceDeleteResponse(BaseModel):
    invoice_id: int
    deleted: bool


class InvoiceDocumentResponse(BaseModel):
    invoice_id: int
    invoice_file_name: str
    size_bytes: int


class PaymentCreateRequest(BaseModel):
    invoice_id: int
    amount_received: float = Field(gt=0)
    payment_gateway_fee: float = Field(default=0, ge=0)
    tds_deducted: float = Field(default=0, ge=0)
    other_deduction: float = Field(default=0, ge=0)
    payment_date: date
    notes: str | None = None


class PaymentRecord(BaseModel):
    id: int
    invoice_id: int
    user_id: int
    client_id: int
    invoice_amount: float
    amount_received: float
    payment_gateway_fee: float
    tds_deducted: float
    other_deduction: float
    final_amount: float
    payment_date: date
    notes: str | None = None
    created_at: datetime


class PaymentDeleteResponse(BaseModel):
    payment_id: int
    deleted: bool


class InvoiceEmailRequest(BaseModel):
    type: EmailType = "invoice"


class InvoiceEmailResponse(BaseModel):
    invoice_id: int
    type: EmailType
    recipient: str
    subject: str
    message_id: str | None = None
    audit_recorded: bool = True


class ReminderRecord(BaseModel):
    id: int
    invoice_id: int
    user_id: int
    client_id: int
    kind: ReminderKindValue
    trigger_date: date
    sent: bool
    sent_at: datetime | None = None
    created_at: datetime


class DueReminderItem(BaseModel):
    reminder_id: int
    invoice_id: int
    kind: ReminderKindValue
    trigger_date: date
    invoice_number: str | None = None
    invoice_status: InvoiceStatus
    client_name: str
    client_email: str | None = None
    user_name: str


class DueReminderListResponse(BaseModel):
    as_of: date
    items: list[DueReminderItem]


class DispatchError(BaseModel):
    reminder_id: int
    invoice_id: int
    error: str


class ReminderDispatchResponse(BaseModel):
    run_id: str
    run_at: datetime
    run_date: date
    status: DispatchRunStatus
    processed: int
    sent: int
    failed: int
    skipped: int
    errors: list[DispatchError] = Field(default_factory=list)


class ReminderDispatchRunListResponse(BaseModel):
    items: list[ReminderDispatchResponse]


class ReminderRunRequest(BaseModel):
    run_date: date | None = None


class ReminderSyncResponse(BaseModel):
    invoice_ids: list[int]
    reminders_created: int


class ReminderDebugItem(BaseModel):
    reminder_id: int
    invoice_id: int
    kind: ReminderKindValue
    trigger_date: date
    sent: bool
    sent_at: datetime | None = None
    days_until_trigger: int


class ReminderDebugResponse(BaseModel):
    today: date
    total: int
    unsent: int
    items: list[ReminderDebugItem]
    invoices_without_reminders: list[int]
