from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Protocol

from .errors import InvoiceDocumentNotFoundError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def invoice_document_name(invoice_file_name: str | None, invoice_number: str | None) -> str | None:
    """Stored file name if one was recorded, otherwise ``<invoice_number>.pdf``."""
    if invoice_file_name:
        return invoice_file_name
    if not invoice_number:
        return None
    name = invoice_number.strip()
    if not name:
        return None
    if not name.lower().endswith(".pdf"):
        name = f"{name}.pdf"
    return name


def _safe_name(file_name: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", Path(file_name).name).strip("._")
    if not cleaned:
        raise ValueError(f"invalid document name: {file_name!r}")
    return cleaned


class DocumentStore(Protocol):
    def load(self, user_id: int, file_name: str) -> bytes: ...

    def save(self, user_id: int, file_name: str, content: bytes) -> str: ...

    def reset(self) -> None: ...


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[tuple[int, str], bytes] = {}

    def load(self, user_id: int, file_name: str) -> bytes:
        key = (user_id, _safe_name(file_name))
        with self._lock:
            content = self._documents.get(key)
        if content is None:
            raise InvoiceDocumentNotFoundError(file_name)
        return content

    def save(self, user_id: int, file_name: str, content: bytes) -> str:
        name = _safe_name(file_name)
        with self._lock:
            self._documents[(user_id, name)] = bytes(content)
        return name

    def reset(self) -> None:
        with self._lock:
            self._documents.clear()


class FilesystemDocumentStore:
    """Invoices live under ``<root>/Invoices/<user_id>/<file_name>``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, user_id: int, file_name: str) -> Path:
        return self._root / "Invoices" / str(int(user_id)) / _safe_name(file_name)

    def load(self, user_id: int, file_name: str) -> bytes:
        path = self._path(user_id, file_name)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise InvoiceDocumentNotFoundError(file_name) from exc

    def save(self, user_id: int, file_name: str, content: bytes) -> str:
        path = self._path(user_id, file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(path)
        logger.debug("stored invoice document %s (%d bytes)", path, len(content))
        return path.name

    def reset(self) -> None:
        invoices_root = self._root / "Invoices"
        if not invoices_root.exists():
            return
        for path in sorted(invoices_root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            else:
                path.rmdir()


def create_document_store(*, backend: str, root: str) -> DocumentStore:
    normalized = backend.strip().lower()
    if normalized == "filesystem":
        return FilesystemDocumentStore(root)
    if normalized == "inmemory":
        return InMemoryDocumentStore()
    raise RuntimeError(f"unsupported DOCUMENT_STORE_BACKEND: {backend}")
