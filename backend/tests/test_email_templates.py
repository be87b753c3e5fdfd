from __future__ import annotations

from datetime import date

from freelance_billing.email_templates import (
    SenderSignature,
    build_invoice_email,
    build_reminder_email,
    build_update_email,
    format_amount,
    format_long_date,
)

SIGNATURE = SenderSignature(full_name="Asha Rao", email="asha@example.com", phone="+91 98765 43210")


def test_format_amount_uses_currency_symbols() -> None:
    assert format_amount(1180.0, "INR") == "₹1,180.00"
    assert format_amount(99.5, "usd") == "$99.50"
    assert format_amount(1234567.891, "JPY") == "JPY 1,234,567.89"
    assert format_amount(10, None) == "₹10.00"


def test_format_long_date() -> None:
    assert format_long_date(date(2025, 6, 1)) == "1 June 2025"


def test_invoice_email_subject_and_body() -> None:
    rendered = build_invoice_email(client_name="Ravi Kumar", amount=1180.0, currency="INR", signature=SIGNATURE)

    assert rendered.subject == "Invoice for Ravi Kumar - ₹1,180.00"
    assert rendered.text.startswith("Hi Ravi Kumar,")
    assert "The total payable amount is ₹1,180.00." in rendered.text
    assert "Phone: +91 98765 43210" in rendered.text


def test_reminder_email_mentions_invoice_and_date_sent() -> None:
    rendered = build_reminder_email(
        client_name="Ravi Kumar",
        amount=1180.0,
        currency="INR",
        invoice_number="INV-2025-07",
        date_sent=date(2025, 6, 1),
        signature=SenderSignature(full_name="Asha Rao", email="asha@example.com"),
    )

    assert rendered.subject == "Gentle reminder: Invoice #INV-2025-07"
    assert rendered.text.startswith("Hi Ravi,")
    assert "Invoice #INV-2025-07 for ₹1,180.00, which was shared on 1 June 2025." in rendered.text
    assert "Phone:" not in rendered.text


def test_update_email_subject() -> None:
    rendered = build_update_email(
        client_name="Ravi Kumar",
        amount=500.0,
        currency="USD",
        invoice_number="INV00003",
        signature=SIGNATURE,
    )

    assert rendered.subject == "Payment Update Request - Invoice #INV00003"
    assert "$500.00" in rendered.text


def test_html_body_escapes_user_supplied_text() -> None:
    rendered = build_invoice_email(
        client_name="<script>alert(1)</script>",
        amount=1.0,
        currency="INR",
        signature=SIGNATURE,
    )

    assert "<script>" not in rendered.html
    assert "&lt;script&gt;" in rendered.html
    assert "<br/>" in rendered.html
