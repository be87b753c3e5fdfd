from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from html import escape

_CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€", "GBP": "£"}


@dataclass(frozen=True)
class SenderSignature:
    full_name: str
    email: str
    phone: str | None = None


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


def format_amount(amount: float, currency: str | None) -> str:
    code = (currency or "INR").upper()
    symbol = _CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{code} {amount:,.2f}"
    return f"{symbol}{amount:,.2f}"


def format_long_date(value: date) -> str:
    return f"{value.day} {value.strftime('%B')} {value.year}"


def _first_name(full_name: str) -> str:
    parts = full_name.strip().split()
    return parts[0] if parts else full_name


def _signature_lines(signature: SenderSignature) -> list[str]:
    lines = ["Warm regards,", "", signature.full_name]
    if signature.phone:
        lines.append(f"Phone: {signature.phone}")
    lines.append(f"Email: {signature.email}")
    return lines


def _render(subject: str, paragraphs: list[str], signature: SenderSignature) -> RenderedEmail:
    signature_lines = _signature_lines(signature)
    text = "\n\n".join(paragraphs + ["\n".join(signature_lines)])
    html_parts = [f"<p>{escape(paragraph)}</p>" for paragraph in paragraphs]
    html_parts.append("<p>" + "<br/>".join(escape(line) for line in signature_lines) + "</p>")
    return RenderedEmail(subject=subject, text=text, html="\n".join(html_parts))


def build_invoice_email(
    *,
    client_name: str,
    amount: float,
    currency: str | None,
    signature: SenderSignature,
) -> RenderedEmail:
    amount_text = format_amount(amount, currency)
    paragraphs = [
        f"Hi {client_name},",
        "Hope you're doing well.",
        "Please find attached the invoice (PDF) for the work completed.",
        f"The total payable amount is {amount_text}.",
        "Kindly confirm once the payment is processed.",
        "Thank you for the opportunity. I truly appreciate your trust and look forward to working together again.",
    ]
    return _render(f"Invoice for {client_name} - {amount_text}", paragraphs, signature)


def build_reminder_email(
    *,
    client_name: str,
    amount: float,
    currency: str | None,
    invoice_number: str,
    date_sent: date,
    signature: SenderSignature,
) -> RenderedEmail:
    amount_text = format_amount(amount, currency)
    paragraphs = [
        f"Hi {_first_name(client_name)},",
        "Hope you've been doing well.",
        (
            f"This is a gentle reminder regarding Invoice #{invoice_number} for {amount_text}, "
            f"which was shared on {format_long_date(date_sent)}."
        ),
        "Please let me know once the payment is processed, or if you need me to resend the invoice for convenience.",
        "Thank you for your time and for the continued trust in my work.",
    ]
    return _render(f"Gentle reminder: Invoice #{invoice_number}", paragraphs, signature)


def build_update_email(
    *,
    client_name: str,
    amount: float,
    currency: str | None,
    invoice_number: str,
    signature: SenderSignature,
) -> RenderedEmail:
    amount_text = format_amount(amount, currency)
    paragraphs = [
        f"Hi {_first_name(client_name)},",
        "Hope you're doing well.",
        "I wanted to kindly check in regarding the invoice I shared earlier for the work completed.",
        f"The total payable amount is {amount_text}. Can you please confirm the status of the payment when convenient?",
        "If anything is needed from my end (revised copy, additional details, etc.), please feel free to let me know.",
        "Thank you again. I appreciate your time and support.",
    ]
    return _render(f"Payment Update Request - Invoice #{invoice_number}", paragraphs, signature)
