"""Receipt blob storage.

The ledger only needs ``store`` and ``delete``; production deployments can
plug any object store behind the ``BlobStorage`` protocol. ``LocalBlobStorage``
keeps files on disk under a base directory.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from uuid import uuid4

from fleet_office.errors import InfrastructureError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_RECEIPT_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
}

RECEIPTS_FOLDER = "receipts"


@dataclass(frozen=True)
class StoredBlob:
    url: str
    storage_id: str


@dataclass(frozen=True)
class UploadedReceipt:
    """Receipt file handed over by the HTTP layer."""

    filename: str
    content_type: str
    content: bytes

    def validate(self) -> None:
        errors: list[str] = []
        if self.content_type.lower() not in SUPPORTED_RECEIPT_TYPES:
            errors.append(
                f"Unsupported content type '{self.content_type}'. "
                f"Supported values: {sorted(SUPPORTED_RECEIPT_TYPES)}"
            )
        if not self.content:
            errors.append("Receipt file is empty")
        if errors:
            raise ValidationError(errors)


class BlobStorage(Protocol):
    def store(self, content: bytes, folder: str, filename: Optional[str] = None) -> StoredBlob:
        ...

    def delete(self, storage_id: str) -> None:
        ...


@dataclass
class LocalBlobStorage:
    base_dir: Path
    base_url: str = "/uploads"

    def store(self, content: bytes, folder: str, filename: Optional[str] = None) -> StoredBlob:
        folder_safe = sanitize_identifier(folder)
        name = f"{uuid4().hex}-{sanitize_filename(filename or 'upload.bin')}"
        storage_id = f"{folder_safe}/{name}"
        path = self._resolve(storage_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as exc:
            raise InfrastructureError(f"Cannot store receipt {storage_id}: {exc}") from exc
        logger.debug("Stored %d bytes as %s", len(content), storage_id)
        return StoredBlob(url=f"{self.base_url.rstrip('/')}/{storage_id}", storage_id=storage_id)

    def delete(self, storage_id: str) -> None:
        path = self._resolve(storage_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise InfrastructureError(f"Cannot delete receipt {storage_id}: {exc}") from exc

    def _resolve(self, storage_id: str) -> Path:
        root = Path(self.base_dir).resolve()
        resolved = (root / storage_id).resolve()
        if not str(resolved).startswith(str(root)):
            raise ValidationError("Unsafe storage path")
        return resolved


def sanitize_identifier(value: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", value)
    return safe.strip("_") or RECEIPTS_FOLDER


def sanitize_filename(value: str) -> str:
    value = Path(value).name
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return safe or "upload.bin"
