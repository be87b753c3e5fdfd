from __future__ import annotations

from datetime import timedelta

from fastapi.testclient import TestClient

from freelance_billing.clock import local_today
from freelance_billing.config import Settings
from freelance_billing.dispatcher import DispatchLock
from freelance_billing.documents import InMemoryDocumentStore
from freelance_billing.main import create_app
from freelance_billing.mailer import StubMailSender

BASE = "/api/v1/billing"
ADMIN = {"X-Admin-Token": "test-admin-token"}


def _client() -> tuple[TestClient, StubMailSender]:
    sender = StubMailSender()
    settings = Settings(
        runtime_secret_guard_mode="off",
        admin_api_token="test-admin-token",
        billing_timezone="UTC",
    )
    app = create_app(settings, mail_sender=sender, document_store=InMemoryDocumentStore())
    return TestClient(app), sender


def _user(client: TestClient, email: str = "asha@example.com") -> dict[str, str]:
    created = client.post(f"{BASE}/users", json={"full_name": "Asha Rao", "email": email, "currency": "INR"})
    assert created.status_code == 201
    return {"X-User-Id": str(created.json()["id"])}


def _client_record(client: TestClient, headers: dict[str, str], email: str | None = "ravi@example.com") -> int:
    created = client.post(
        f"{BASE}/clients",
        json={"full_name": "Ravi Kumar", "email": email, "organization": "Kumar Studio"},
        headers=headers,
    )
    assert created.status_code == 201
    return created.json()["id"]


def _invoice_payload(client_id: int, *, days_until_due: int, policy: list[str] | None = None) -> dict:
    today = local_today("UTC")
    return {
        "client_id": client_id,
        "invoice_number": "INV-2025-07",
        "invoice_date": (today - timedelta(days=30)).isoformat(),
        "due_date": (today + timedelta(days=days_until_due)).isoformat(),
        "sub_total_amount": 1000.0,
        "gst": 18.0,
        "payment_reminder_repetition": policy,
    }


def test_invoice_reminder_lifecycle() -> None:
    client, sender = _client()
    headers = _user(client)
    client_id = _client_record(client, headers)

    created = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=-1, policy=["Only on Due date", "7"]),
        headers=headers,
    )
    assert created.status_code == 201
    invoice = created.json()
    assert invoice["status"] == "overdue"
    assert invoice["total_amount"] == 1180.0
    assert invoice["payment_reminder_repetition"] == ["onDue", "plus7"]
    invoice_id = invoice["id"]

    reminders = client.get(f"{BASE}/invoices/{invoice_id}/reminders", headers=headers)
    assert [(row["kind"], row["sent"]) for row in reminders.json()] == [("onDue", False), ("plus7", False)]

    uploaded = client.put(
        f"{BASE}/invoices/{invoice_id}/pdf",
        content=b"%PDF-1.7 invoice",
        headers={**headers, "Content-Type": "application/pdf"},
    )
    assert uploaded.status_code == 200
    assert uploaded.json()["invoice_file_name"] == "INV-2025-07.pdf"

    due = client.get(f"{BASE}/reminders/due", headers=ADMIN)
    assert [item["kind"] for item in due.json()["items"]] == ["onDue"]

    run = client.post(f"{BASE}/reminders/run", headers=ADMIN)
    assert run.status_code == 200
    summary = run.json()
    assert (summary["processed"], summary["sent"], summary["failed"]) == (1, 1, 0)
    assert summary["status"] == "completed"
    assert len(sender.sent) == 1
    assert sender.sent[0].subject == "Gentle reminder: Invoice #INV-2025-07"

    again = client.post(f"{BASE}/reminders/run", headers=ADMIN)
    assert again.json()["processed"] == 0

    runs = client.get(f"{BASE}/reminders/runs", params={"limit": 5}, headers=ADMIN)
    assert [item["run_id"] for item in runs.json()["items"]] == [again.json()["run_id"], summary["run_id"]]

    paid = client.post(
        f"{BASE}/payments",
        json={"invoice_id": invoice_id, "amount_received": 1180.0, "payment_date": local_today("UTC").isoformat()},
        headers=headers,
    )
    assert paid.status_code == 201
    assert client.get(f"{BASE}/invoices/{invoice_id}", headers=headers).json()["status"] == "paid"

    reverted = client.patch(f"{BASE}/invoices/{invoice_id}/status", json={"status": "pending"}, headers=headers)
    assert reverted.status_code == 200
    assert client.get(f"{BASE}/invoices/{invoice_id}/payments", headers=headers).json() == []


def test_manual_reminder_requires_overdue_and_records_audit() -> None:
    client, sender = _client()
    headers = _user(client)
    client_id = _client_record(client, headers)
    pending_id = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=5),
        headers=headers,
    ).json()["id"]
    client.put(f"{BASE}/invoices/{pending_id}/pdf", content=b"%PDF", headers=headers)

    rejected = client.post(f"{BASE}/invoices/{pending_id}/email", json={"type": "reminder"}, headers=headers)
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "Reminder emails can only be sent for overdue invoices"

    moved = client.put(
        f"{BASE}/invoices/{pending_id}",
        json={"due_date": (local_today("UTC") - timedelta(days=2)).isoformat()},
        headers=headers,
    )
    assert moved.json()["status"] == "overdue"

    sent = client.post(f"{BASE}/invoices/{pending_id}/email", json={"type": "reminder"}, headers=headers)
    assert sent.status_code == 200
    assert sent.json()["audit_recorded"] is True
    reminders = client.get(f"{BASE}/invoices/{pending_id}/reminders", headers=headers).json()
    assert [(row["kind"], row["sent"]) for row in reminders] == [("manual", True)]
    assert len(sender.sent) == 1


def test_email_failures_map_to_status_codes() -> None:
    client, _ = _client()
    headers = _user(client)
    no_email_client = _client_record(client, headers, email=None)
    failing_client = _client_record(client, headers, email="fail@example.com")

    no_email_invoice = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(no_email_client, days_until_due=5),
        headers=headers,
    ).json()["id"]
    missing = client.post(f"{BASE}/invoices/{no_email_invoice}/email", json={"type": "invoice"}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Client email is missing"

    failing_invoice = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(failing_client, days_until_due=5),
        headers=headers,
    ).json()["id"]
    no_pdf = client.post(f"{BASE}/invoices/{failing_invoice}/email", json={}, headers=headers)
    assert no_pdf.status_code == 404

    client.put(f"{BASE}/invoices/{failing_invoice}/pdf", content=b"%PDF", headers=headers)
    bounced = client.post(f"{BASE}/invoices/{failing_invoice}/email", json={"type": "update"}, headers=headers)
    assert bounced.status_code == 502
    assert bounced.json()["detail"]["error_code"] == "mail_rejected"


def test_invoice_validation_and_ownership_errors() -> None:
    client, _ = _client()
    headers = _user(client)
    other = _user(client, email="other@example.com")
    client_id = _client_record(client, headers)

    assert client.post(f"{BASE}/invoices", json=_invoice_payload(client_id, days_until_due=5)).status_code == 401
    unknown_code = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=5, policy=["weekly"]),
        headers=headers,
    )
    assert unknown_code.status_code == 422

    invoice_id = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=5),
        headers=headers,
    ).json()["id"]

    foreign = client.get(f"{BASE}/invoices/{invoice_id}", headers=other)
    assert foreign.status_code == 404
    assert foreign.json()["detail"] == f"invoice not found: {invoice_id}"

    bad_status = client.patch(f"{BASE}/invoices/{invoice_id}/status", json={"status": "archived"}, headers=headers)
    assert bad_status.status_code == 400
    assert client.put(f"{BASE}/invoices/{invoice_id}", json={}, headers=headers).status_code == 400
    early_due = {"due_date": (local_today("UTC") - timedelta(days=60)).isoformat()}
    assert client.put(f"{BASE}/invoices/{invoice_id}", json=early_due, headers=headers).status_code == 400
    assert client.get(f"{BASE}/invoices", params={"status": "draft"}, headers=headers).status_code == 400

    over = client.post(
        f"{BASE}/payments",
        json={"invoice_id": invoice_id, "amount_received": 5000.0, "payment_date": local_today("UTC").isoformat()},
        headers=headers,
    )
    assert over.status_code == 400

    deleted = client.delete(f"{BASE}/invoices/{invoice_id}", headers=headers)
    assert deleted.json() == {"invoice_id": invoice_id, "deleted": True}
    assert client.get(f"{BASE}/invoices/{invoice_id}", headers=headers).status_code == 404


def test_list_invoices_filters_by_status() -> None:
    client, _ = _client()
    headers = _user(client)
    client_id = _client_record(client, headers)
    overdue_id = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=-3),
        headers=headers,
    ).json()["id"]
    client.post(f"{BASE}/invoices", json=_invoice_payload(client_id, days_until_due=3), headers=headers)

    listed = client.get(f"{BASE}/invoices", params={"status": "overdue"}, headers=headers)

    assert [invoice["id"] for invoice in listed.json()] == [overdue_id]
    assert len(client.get(f"{BASE}/invoices", headers=headers).json()) == 2


def test_duplicate_user_is_conflict() -> None:
    client, _ = _client()
    _user(client)

    duplicate = client.post(f"{BASE}/users", json={"full_name": "Asha", "email": "ASHA@example.com"})

    assert duplicate.status_code == 409


def test_admin_endpoints_require_token() -> None:
    client, _ = _client()

    assert client.post(f"{BASE}/reminders/run").status_code == 401
    assert client.get(f"{BASE}/reminders/debug", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.post(f"{BASE}/reminders/sync", headers=ADMIN).json() == {"invoice_ids": [], "reminders_created": 0}


def test_reminder_run_is_conflict_while_locked() -> None:
    client, sender = _client()
    headers = _user(client)
    client_id = _client_record(client, headers)
    client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=-1, policy=["onDue"]),
        headers=headers,
    )
    assert DispatchLock(client.app.state.database, ttl_seconds=600).acquire("rdrun_elsewhere")

    locked = client.post(f"{BASE}/reminders/run", headers=ADMIN)

    assert locked.status_code == 409
    assert sender.sent == []


def test_debug_and_run_date_override() -> None:
    client, _ = _client()
    headers = _user(client)
    client_id = _client_record(client, headers)
    invoice_id = client.post(
        f"{BASE}/invoices",
        json=_invoice_payload(client_id, days_until_due=2, policy=["7"]),
        headers=headers,
    ).json()["id"]

    debug = client.get(f"{BASE}/reminders/debug", headers=ADMIN).json()
    assert debug["total"] == 1
    assert debug["unsent"] == 1
    assert debug["items"][0]["days_until_trigger"] == 9

    future = (local_today("UTC") + timedelta(days=9)).isoformat()
    run = client.post(f"{BASE}/reminders/run", json={"run_date": future}, headers=ADMIN).json()
    assert run["run_date"] == future
    assert run["failed"] == 1
    assert run["errors"][0]["invoice_id"] == invoice_id
