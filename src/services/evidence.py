"""Evidence storage — files attached to a report at submission time.

Files are written under ``EVIDENCE_DIR/<owner_id>/`` with a random name and
the caller only ever sees an opaque reference (``evidence/<owner>/<name>``).
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Protocol

from config.settings import settings
from src.errors import StorageFailure, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".pdf", ".txt", ".mp4"}


class EvidenceStorage(Protocol):
    async def upload(self, filename: str, data: bytes, owner_id: str) -> str: ...


class LocalEvidenceStorage:
    """Stores evidence on the local filesystem."""

    def __init__(self, base_dir: Path | str, max_bytes: int | None = None):
        self.base_dir = Path(base_dir)
        self.max_bytes = max_bytes or settings.MAX_EVIDENCE_BYTES

    async def upload(self, filename: str, data: bytes, owner_id: str) -> str:
        ext = Path(filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                f"Invalid evidence type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
                filename=filename,
            )
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"Evidence too large. Max size: {self.max_bytes / 1024 / 1024:.1f}MB",
                filename=filename,
            )

        safe_name = f"{uuid.uuid4()}{ext}"
        destination = self.base_dir / owner_id / safe_name
        try:
            await asyncio.to_thread(self._write, destination, data)
        except OSError as exc:
            logger.error("Failed to store evidence %s for %s", filename, owner_id, exc_info=True)
            raise StorageFailure("Could not store evidence") from exc

        logger.info("Stored evidence %s (%d bytes) for %s", safe_name, len(data), owner_id)
        return f"evidence/{owner_id}/{safe_name}"

    @staticmethod
    def _write(destination: Path, data: bytes) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with destination.open("wb") as fh:
            fh.write(data)


evidence_storage = LocalEvidenceStorage(settings.EVIDENCE_DIR)
