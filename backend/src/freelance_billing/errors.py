from __future__ import annotations


class BillingError(Exception):
    """Base class for errors raised by the billing services."""


class InvoiceNotFoundError(BillingError, KeyError):
    """Raised when an invoice does not exist or belongs to another user."""


class ClientNotFoundError(BillingError, KeyError):
    """Raised when a client does not exist or belongs to another user."""


class UserNotFoundError(BillingError, KeyError):
    """Raised when an operation references a user id that does not exist."""


class PaymentNotFoundError(BillingError, KeyError):
    """Raised when a payment does not exist or belongs to another user."""


class ReminderNotFoundError(BillingError, KeyError):
    """Raised when a reminder ledger row does not exist."""


class InvoiceDocumentNotFoundError(BillingError, KeyError):
    """Raised when the stored invoice PDF cannot be found."""


class InvalidStatusError(BillingError, ValueError):
    """Raised when a status value is outside pending/overdue/paid."""


class NothingToUpdateError(BillingError, ValueError):
    """Raised when an update request carries no fields."""


class InvoiceDateError(BillingError, ValueError):
    """Raised when an update would put the due date before the invoice date."""


class PaymentValidationError(BillingError, ValueError):
    """Raised when payment amounts are inconsistent with the invoice."""


class ReminderNotAllowedError(BillingError, ValueError):
    """Raised when a manual reminder targets an invoice that is not overdue."""


class ClientEmailMissingError(BillingError, ValueError):
    """Raised when the invoice client has no email address."""


class EmailDeliveryError(BillingError, RuntimeError):
    """Raised when the mail transport fails for a manual send."""

    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class DispatchAlreadyRunningError(BillingError, RuntimeError):
    """Raised when another dispatcher run holds the dispatch lock."""


class ReminderDispatchError(BillingError, RuntimeError):
    """Raised when a dispatcher run cannot even load its due reminders."""


class DuplicateUserError(BillingError, ValueError):
    """Raised when a user with the same email already exists."""
