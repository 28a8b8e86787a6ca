"""
Attachment blob store on the local filesystem.

Chat attachments, homework files and registration photos are written under
UPLOAD_DIR at a storage path chosen by the caller (for example
``chat_attachments/{principalId}/{conversationId}/{messageId}-{name}``).
Records keep that path so the blob can be deleted with the record.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

# Magic byte signatures for file header validation
_MAGIC_BYTES = {
    ".pdf": b"%PDF",
    ".png": b"\x89PNG",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
    ".webp": b"RIFF",
}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}


def _validate_file_header(file_storage: FileStorage, ext: str) -> bool:
    """Check file header magic bytes match the claimed extension."""
    expected = _MAGIC_BYTES.get(ext)
    if not expected:
        return False
    header = file_storage.stream.read(len(expected))
    file_storage.stream.seek(0)
    return header.startswith(expected)


def _root() -> Path:
    return Path(current_app.config["UPLOAD_DIR"]).resolve()


def _resolve(storage_path: str) -> Path:
    root = _root()
    target = (root / storage_path).resolve()
    if root not in target.parents:
        raise ValidationError("Invalid storage path.")
    return target


def save(prefix: str, file_storage: FileStorage, key: str | None = None) -> dict:
    """Validate and store an uploaded image or PDF under ``prefix``.

    Returns the attachment record: name, url, type ("image" | "pdf"),
    path and size in bytes.
    """
    if not file_storage or not file_storage.filename:
        raise ValidationError("No file provided.")
    original = file_storage.filename
    ext = Path(original).suffix.lower()
    if ext not in _MAGIC_BYTES:
        raise ValidationError("Supported formats: PDF, PNG, JPG, WEBP")
    if not _validate_file_header(file_storage, ext):
        raise ValidationError("File content does not match its extension.")

    safe_name = secure_filename(original) or f"file{ext}"
    storage_path = f"{prefix.strip('/')}/{key or uuid.uuid4().hex}-{safe_name}"
    target = _resolve(storage_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    file_storage.save(target)

    size = target.stat().st_size
    logger.info("Stored blob %s (%d bytes)", storage_path, size)
    return {
        "name": original,
        "url": f"/files/{storage_path}",
        "type": "image" if ext in IMAGE_EXTENSIONS else "pdf",
        "path": storage_path,
        "size": size,
    }


def open_path(storage_path: str) -> Path:
    target = _resolve(storage_path)
    if not target.is_file():
        raise NotFound("File not found.")
    return target


def delete(storage_path: str | None) -> bool:
    """Remove a stored blob; missing blobs are not an error."""
    if not storage_path:
        return False
    target = _resolve(storage_path)
    try:
        os.remove(target)
    except FileNotFoundError:
        return False
    logger.info("Deleted blob %s", storage_path)
    return True


def delete_all(attachments: list[dict] | None) -> int:
    return sum(1 for a in attachments or [] if delete(a.get("path")))
