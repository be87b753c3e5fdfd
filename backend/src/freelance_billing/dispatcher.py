from __future__ import annotations

import json
import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import coerce_utc, now_utc
from .db import Database
from .errors import BillingError, DispatchAlreadyRunningError, ReminderDispatchError
from .invoice_email import ComposedEmail, InvoiceEmailService
from .mailer import MailReceipt, MailSendError
from .models import DispatchError, ReminderDispatchResponse
from .reminder_ledger import DueReminder, ReminderLedger
from .tables import InvoiceRow, ReminderDispatchLockRow, ReminderDispatchRunRow

logger = logging.getLogger(__name__)

DISPATCH_LOCK_NAME = "payment-reminders"
CLIENT_EMAIL_MISSING = "Client email is missing"


class DispatchLock:
    """Lease row in ``reminder_dispatch_locks``; an expired lease can be taken over."""

    def __init__(self, database: Database, *, ttl_seconds: int, name: str = DISPATCH_LOCK_NAME) -> None:
        self._database = database
        self._ttl = timedelta(seconds=max(1, ttl_seconds))
        self._name = name

    def acquire(self, owner: str) -> bool:
        now = now_utc()
        try:
            with self._database.session() as session:
                with session.begin():
                    row = session.get(ReminderDispatchLockRow, self._name, with_for_update=True)
                    if row is None:
                        session.add(
                            ReminderDispatchLockRow(
                                lock_name=self._name,
                                owner=owner,
                                acquired_at=now,
                                expires_at=now + self._ttl,
                            )
                        )
                    elif row.owner != owner and coerce_utc(row.expires_at) > now:
                        return False
                    else:
                        row.owner = owner
                        row.acquired_at = now
                        row.expires_at = now + self._ttl
        except IntegrityError:
            return False
        return True

    def renew(self, owner: str) -> bool:
        """Extend a lease still held by ``owner``; False once another owner has it."""
        now = now_utc()
        with self._database.session() as session:
            with session.begin():
                row = session.get(ReminderDispatchLockRow, self._name, with_for_update=True)
                if row is None or row.owner != owner:
                    return False
                row.expires_at = now + self._ttl
        return True

    def release(self, owner: str) -> None:
        with self._database.session() as session:
            with session.begin():
                row = session.get(ReminderDispatchLockRow, self._name)
                if row is not None and row.owner == owner:
                    session.delete(row)


@dataclass(frozen=True)
class _ItemOutcome:
    status: str
    error: str | None = None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, MailSendError):
        return exc.message
    if isinstance(exc, KeyError):
        detail = exc.args[0] if exc.args else ""
        return f"{exc.__class__.__name__}: {detail}"
    return str(exc) or exc.__class__.__name__


def _run_status(*, lock_lost: bool, has_errors: bool) -> str:
    if lock_lost:
        return "failed"
    return "completed_with_errors" if has_errors else "completed"


class ReminderDispatcher:
    """Sends every due, unsent reminder once, one item at a time."""

    def __init__(
        self,
        *,
        database: Database,
        email_service: InvoiceEmailService,
        lock_ttl_seconds: int = 900,
        send_timeout_seconds: int = 30,
    ) -> None:
        self._database = database
        self._email_service = email_service
        self._lock = DispatchLock(database, ttl_seconds=lock_ttl_seconds)
        self._send_timeout_seconds = send_timeout_seconds
        self._executor = self._new_executor()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="reminder-send")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def process_due(self, today: date, *, triggered_by: str = "scheduler") -> ReminderDispatchResponse:
        run_id = f"rdrun_{secrets.token_hex(8)}"
        started_at = now_utc()
        if not self._lock.acquire(run_id):
            raise DispatchAlreadyRunningError("another reminder dispatch is already running")
        try:
            try:
                with self._database.session() as session:
                    due = ReminderLedger(session).list_due_with_details(today)
            except SQLAlchemyError as exc:
                logger.exception("could not load due reminders for %s", today)
                raise ReminderDispatchError("could not load due reminders") from exc

            logger.info("reminder dispatch %s found %d due reminders for %s", run_id, len(due), today)
            counts = {"sent": 0, "failed": 0, "skipped": 0}
            errors: list[DispatchError] = []
            lock_lost = False
            for item in due:
                if not self._lock.renew(run_id):
                    logger.error(
                        "reminder dispatch %s lost its lock; stopping before reminder %s", run_id, item.reminder_id
                    )
                    lock_lost = True
                    break
                outcome = self._process_item(item, today)
                counts[outcome.status] += 1
                if outcome.error is not None:
                    errors.append(
                        DispatchError(reminder_id=item.reminder_id, invoice_id=item.invoice_id, error=outcome.error)
                    )

            summary = ReminderDispatchResponse(
                run_id=run_id,
                run_at=started_at,
                run_date=today,
                status=_run_status(lock_lost=lock_lost, has_errors=bool(errors)),
                processed=counts["sent"] + counts["failed"],
                sent=counts["sent"],
                failed=counts["failed"],
                skipped=counts["skipped"],
                errors=errors,
            )
            self._save_run(summary, triggered_by=triggered_by, finished_at=now_utc())
            logger.info(
                "reminder dispatch %s finished: sent=%d failed=%d skipped=%d",
                run_id,
                summary.sent,
                summary.failed,
                summary.skipped,
            )
            return summary
        finally:
            self._lock.release(run_id)

    def _close_paid(self, item: DueReminder) -> _ItemOutcome:
        try:
            with self._database.session() as session:
                with session.begin():
                    ReminderLedger(session).mark_sent(item.reminder_id)
        except (BillingError, SQLAlchemyError) as exc:
            logger.warning("could not close reminder %s of paid invoice %s", item.reminder_id, item.invoice_id)
            return _ItemOutcome("failed", _describe(exc))
        return _ItemOutcome("skipped")

    def _process_item(self, item: DueReminder, today: date) -> _ItemOutcome:
        if item.invoice_status == "paid":
            return self._close_paid(item)
        if not (item.client_email or "").strip():
            return _ItemOutcome("failed", CLIENT_EMAIL_MISSING)

        try:
            with self._database.session() as session:
                invoice = session.get(InvoiceRow, item.invoice_id)
                if invoice is not None and invoice.status == "paid":
                    paid_since_listing = True
                else:
                    paid_since_listing = False
                    composed = self._email_service.compose(
                        session,
                        item.invoice_id,
                        item.user_id,
                        "reminder",
                        today=today,
                        skip_overdue_check=True,
                    )
            if paid_since_listing:
                return self._close_paid(item)
            self._deliver_with_timeout(composed)
        except FuturesTimeoutError:
            logger.warning("reminder %s send timed out after %ss", item.reminder_id, self._send_timeout_seconds)
            return _ItemOutcome("failed", f"Mail send timed out after {self._send_timeout_seconds}s")
        except (BillingError, MailSendError, SQLAlchemyError) as exc:
            logger.warning("reminder %s for invoice %s failed: %s", item.reminder_id, item.invoice_id, _describe(exc))
            return _ItemOutcome("failed", _describe(exc))
        except Exception as exc:
            logger.exception("reminder %s for invoice %s failed unexpectedly", item.reminder_id, item.invoice_id)
            return _ItemOutcome("failed", _describe(exc))

        try:
            with self._database.session() as session:
                with session.begin():
                    ReminderLedger(session).mark_sent(item.reminder_id)
        except (BillingError, SQLAlchemyError) as exc:
            logger.error("reminder %s was sent but could not be marked sent", item.reminder_id)
            return _ItemOutcome("failed", _describe(exc))
        return _ItemOutcome("sent")

    def _deliver_with_timeout(self, composed: ComposedEmail) -> MailReceipt:
        if self._send_timeout_seconds <= 0:
            return self._email_service.deliver(composed)
        future = self._executor.submit(self._email_service.deliver, composed)
        try:
            return future.result(timeout=self._send_timeout_seconds)
        except FuturesTimeoutError:
            # The stalled worker cannot be interrupted; abandon it.
            future.cancel()
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor()
            raise

    def _save_run(self, summary: ReminderDispatchResponse, *, triggered_by: str, finished_at: datetime) -> None:
        with self._database.session() as session:
            with session.begin():
                session.add(
                    ReminderDispatchRunRow(
                        run_id=summary.run_id,
                        triggered_by=triggered_by,
                        run_date=summary.run_date,
                        status=summary.status,
                        processed_count=summary.processed,
                        sent_count=summary.sent,
                        failed_count=summary.failed,
                        skipped_count=summary.skipped,
                        errors_json=json.dumps([error.model_dump() for error in summary.errors]),
                        started_at=summary.run_at,
                        finished_at=finished_at,
                    )
                )

    def list_runs(self, *, limit: int = 20) -> list[ReminderDispatchResponse]:
        with self._database.session() as session:
            rows = session.scalars(
                select(ReminderDispatchRunRow).order_by(ReminderDispatchRunRow.started_at.desc()).limit(limit)
            ).all()
            return [
                ReminderDispatchResponse(
                    run_id=row.run_id,
                    run_at=coerce_utc(row.started_at),
                    run_date=row.run_date,
                    status=row.status,
                    processed=row.processed_count,
                    sent=row.sent_count,
                    failed=row.failed_count,
                    skipped=row.skipped_count,
                    errors=[DispatchError(**error) for error in json.loads(row.errors_json or "[]")],
                )
                for row in rows
            ]
