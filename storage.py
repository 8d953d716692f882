from __future__ import annotations

import logging
import re
import secrets
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from config import get_settings
from errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "application/pdf": "pdf",
}
MEDIA_TYPES = {ext: mime for mime, ext in ALLOWED_TYPES.items()}
UPLOAD_CHUNK_SIZE = 64 * 1024
PUBLIC_ID_RE = re.compile(r"^\d+/receipts/[A-Za-z0-9_-]+$")


def sanitize_receipt_name(filename: str) -> str:
    stem = re.sub(r"\.[^/.]+$", "", filename or "")
    stem = re.sub(r"\s+", "-", stem)
    stem = re.sub(r"[^a-zA-Z0-9\-_]", "", stem)
    stem = re.sub(r"[-_]{2,}", "-", stem)
    stem = stem.strip("-_")
    return stem[:30] or "receipt"


def _too_large(max_bytes: int) -> ValidationError:
    return ValidationError(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB")


def read_capped(stream: BinaryIO, max_bytes: int, declared_size: Optional[int] = None) -> bytes:
    """Read an upload, never pulling more than ``max_bytes + 1`` bytes."""
    if declared_size is not None and declared_size > max_bytes:
        raise _too_large(max_bytes)
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = stream.read(min(UPLOAD_CHUNK_SIZE, max_bytes + 1 - total))
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise _too_large(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


class ReceiptStorage:
    """Receipt files on local disk, addressed by ``{user_id}/receipts/...`` ids."""

    def __init__(
        self,
        user_id: int,
        root: Optional[Path] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.user_id = user_id
        self.root = Path(root or settings.upload_dir)
        self.max_bytes = max_bytes or settings.max_upload_bytes

    def _new_public_id(self, filename: str) -> str:
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(6))
        timestamp = int(time.time() * 1000)
        return f"{self.user_id}/receipts/{timestamp}-{sanitize_receipt_name(filename)}-{suffix}"

    def _check_owner(self, public_id: str) -> None:
        if not PUBLIC_ID_RE.match(public_id):
            raise ValidationError("Invalid receipt id")
        if not public_id.startswith(f"{self.user_id}/"):
            raise ForbiddenError("Unauthorized to access this file")

    def _locate(self, public_id: str) -> Path:
        self._check_owner(public_id)
        for ext in MEDIA_TYPES:
            path = self.root / f"{public_id}.{ext}"
            if path.exists():
                return path
        raise NotFoundError("File not found")

    def _describe(self, public_id: str, path: Path) -> dict[str, object]:
        stat = path.stat()
        ext = path.suffix.lstrip(".")
        return {
            "publicId": public_id,
            "url": f"/api/upload/receipt/{public_id}/file",
            "format": ext,
            "mimetype": MEDIA_TYPES[ext],
            "size": stat.st_size,
            "createdAt": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        }

    def _extension(self, content_type: str) -> str:
        ext = ALLOWED_TYPES.get(content_type)
        if ext is None:
            raise ValidationError(
                "Invalid file type. Only JPEG, PNG, WebP, and PDF files are allowed."
            )
        return ext

    def save_upload(
        self,
        filename: str,
        content_type: str,
        stream: BinaryIO,
        declared_size: Optional[int] = None,
    ) -> dict[str, object]:
        self._extension(content_type)
        data = read_capped(stream, self.max_bytes, declared_size)
        return self.save(filename, content_type, data)

    def save(self, filename: str, content_type: str, data: bytes) -> dict[str, object]:
        ext = self._extension(content_type)
        if not data:
            raise ValidationError("No file uploaded")
        if len(data) > self.max_bytes:
            raise _too_large(self.max_bytes)

        public_id = self._new_public_id(filename)
        path = self.root / f"{public_id}.{ext}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"receipt_uploaded: user_id={self.user_id} public_id={public_id}")
        info = self._describe(public_id, path)
        info["originalName"] = filename
        return info

    def info(self, public_id: str) -> dict[str, object]:
        return self._describe(public_id, self._locate(public_id))

    def open(self, public_id: str) -> tuple[Iterator[bytes], str]:
        path = self._locate(public_id)

        def iter_file(chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
            with open(path, "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return iter_file(), MEDIA_TYPES[path.suffix.lstrip(".")]

    def delete(self, public_id: str) -> None:
        path = self._locate(public_id)
        path.unlink()
        logger.info(f"receipt_deleted: user_id={self.user_id} public_id={public_id}")

    def bulk_delete(self, public_ids: list[str]) -> dict[str, object]:
        if not public_ids:
            raise ValidationError("No public IDs provided")
        invalid = [pid for pid in public_ids if not pid.startswith(f"{self.user_id}/")]
        if invalid:
            raise ForbiddenError("Unauthorized to delete some files")

        deleted: list[str] = []
        not_found: list[str] = []
        for public_id in public_ids:
            try:
                self.delete(public_id)
            except NotFoundError:
                not_found.append(public_id)
            else:
                deleted.append(public_id)
        logger.info(
            f"receipt_bulk_delete: user_id={self.user_id} deleted={len(deleted)}"
        )
        return {"deleted": deleted, "notFound": not_found}

    def stats(self) -> dict[str, object]:
        folder = self.root / str(self.user_id) / "receipts"
        total_files = 0
        total_size = 0
        by_format: dict[str, int] = {}
        if folder.exists():
            for path in folder.iterdir():
                if not path.is_file():
                    continue
                ext = path.suffix.lstrip(".")
                total_files += 1
                total_size += path.stat().st_size
                by_format[ext] = by_format.get(ext, 0) + 1
        return {
            "totalFiles": total_files,
            "totalSize": total_size,
            "totalSizeMB": round(total_size / (1024 * 1024), 2),
            "formats": by_format,
        }
