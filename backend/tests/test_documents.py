from __future__ import annotations

from pathlib import Path

import pytest

from freelance_billing.documents import (
    FilesystemDocumentStore,
    InMemoryDocumentStore,
    create_document_store,
    invoice_document_name,
)
from freelance_billing.errors import InvoiceDocumentNotFoundError


def test_invoice_document_name_prefers_stored_name() -> None:
    assert invoice_document_name("custom.pdf", "INV-1") == "custom.pdf"
    assert invoice_document_name(None, "INV-1") == "INV-1.pdf"
    assert invoice_document_name(None, "INV-1.PDF") == "INV-1.PDF"
    assert invoice_document_name(None, "  ") is None
    assert invoice_document_name(None, None) is None


def test_in_memory_store_round_trip_and_reset() -> None:
    store = InMemoryDocumentStore()

    name = store.save(7, "INV-1.pdf", b"%PDF")

    assert name == "INV-1.pdf"
    assert store.load(7, "INV-1.pdf") == b"%PDF"
    with pytest.raises(InvoiceDocumentNotFoundError):
        store.load(8, "INV-1.pdf")
    store.reset()
    with pytest.raises(InvoiceDocumentNotFoundError):
        store.load(7, "INV-1.pdf")


def test_filesystem_store_writes_under_user_directory(tmp_path: Path) -> None:
    store = FilesystemDocumentStore(tmp_path)

    name = store.save(7, "INV 2025/07.pdf", b"%PDF-1.7")

    assert name == "07.pdf"
    assert (tmp_path / "Invoices" / "7" / "07.pdf").read_bytes() == b"%PDF-1.7"
    assert store.load(7, "07.pdf") == b"%PDF-1.7"
    assert not list((tmp_path / "Invoices" / "7").glob("*.tmp"))


def test_filesystem_store_sanitizes_names(tmp_path: Path) -> None:
    store = FilesystemDocumentStore(tmp_path)

    name = store.save(1, "../../etc/passwd invoice.pdf", b"x")

    assert name == "passwd_invoice.pdf"
    assert (tmp_path / "Invoices" / "1" / "passwd_invoice.pdf").exists()


def test_filesystem_store_missing_and_reset(tmp_path: Path) -> None:
    store = FilesystemDocumentStore(tmp_path)
    with pytest.raises(InvoiceDocumentNotFoundError):
        store.load(1, "missing.pdf")

    store.save(1, "a.pdf", b"a")
    store.reset()

    assert list((tmp_path / "Invoices").iterdir()) == []


def test_create_document_store(tmp_path: Path) -> None:
    assert isinstance(create_document_store(backend="inmemory", root=str(tmp_path)), InMemoryDocumentStore)
    assert isinstance(create_document_store(backend=" Filesystem ", root=str(tmp_path)), FilesystemDocumentStore)
    with pytest.raises(RuntimeError):
        create_document_store(backend="s3", root=str(tmp_path))
