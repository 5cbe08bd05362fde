"""Batch-file storage collaborator used by the presentment and import flows."""

import hashlib
import re
from datetime import date

from app.services.object_storage import StorageService, get_batch_storage

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def sha256_of_buffer(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_file_name(file_name: str | None, fallback: str = "batch.txt") -> str:
    cleaned = _UNSAFE_NAME.sub("_", (file_name or "").strip()).strip("._")
    return cleaned[:120] or fallback


def build_storage_key(direction: str, business_date: date, batch_id, file_name: str | None) -> str:
    return (
        f"billing/direct-debit/{direction}/{business_date.isoformat()}"
        f"/batch-{batch_id}-{safe_file_name(file_name)}"
    )


def upload_batch_file(
    storage_key: str,
    data: bytes,
    content_type: str | None = None,
    storage: StorageService | None = None,
) -> None:
    (storage or get_batch_storage()).upload(storage_key, data, content_type)


def read_batch_file(storage_key: str, storage: StorageService | None = None) -> bytes:
    return (storage or get_batch_storage()).download(storage_key)


def delete_batch_file(storage_key: str, storage: StorageService | None = None) -> None:
    (storage or get_batch_storage()).delete(storage_key)
