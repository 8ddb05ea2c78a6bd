"""Storage provider contract and the naming rules shared by every backend."""

import hashlib
import os
import re
import time
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

from models.errors import StorageError
from models.storage import CleanupReport, DeleteOutcome, ListResult, ObjectInfo, StorageStats, StoredObject
from models.upload import NormalizedFile, StorageKind

IMAGES_DIR = "images"
DOCUMENTS_DIR = "documents"
PROPERTIES_DIR = "properties"
PROFILES_DIR = "profiles"
GENERAL_DIR = "general"
TEMP_DIR = "temp"
QUARANTINE_DIR = "quarantine"
THUMBNAILS_DIR = "thumbnails"
TRASH_DIR = ".trash"
TRASH_SIDECAR_SUFFIX = ".meta.json"

STANDARD_DIRECTORIES = (IMAGES_DIR, DOCUMENTS_DIR, PROPERTIES_DIR, PROFILES_DIR, GENERAL_DIR, TEMP_DIR, QUARANTINE_DIR)

RELATED_MODEL_DIRECTORIES = {
    "property": PROPERTIES_DIR,
    "user": PROFILES_DIR,
}

DOCUMENT_MIME_MARKERS = ("pdf", "document", "msword", "spreadsheet", "excel", "presentation")

SORT_FIELDS = {"date", "size", "name"}
DEFAULT_PAGE_LIMIT = 20
TEMP_RETENTION_HOURS = 24
TRASH_RETENTION_HOURS = 30 * 24

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
MAX_BASE_NAME_LENGTH = 50


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def determine_directory(mime_type: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Pick the logical directory for a new object.

    Precedence: explicit ``directory`` metadata, MIME category, related
    entity type, then the general bucket.
    """
    metadata = metadata or {}
    if metadata.get("directory"):
        return validate_directory(str(metadata["directory"]))

    mime_type = (mime_type or "").lower()
    if mime_type.startswith("image/"):
        return IMAGES_DIR
    if any(marker in mime_type for marker in DOCUMENT_MIME_MARKERS):
        return DOCUMENTS_DIR

    related_model = str(metadata.get("related_model") or "").lower()
    if related_model in RELATED_MODEL_DIRECTORIES:
        return RELATED_MODEL_DIRECTORIES[related_model]

    return GENERAL_DIR


def validate_directory(directory: str) -> str:
    """Normalize a logical directory and refuse anything that escapes the root."""
    cleaned = (directory or "").replace("\\", "/").strip().strip("/")
    if not cleaned:
        raise StorageError("Directory must not be empty", directory=directory)
    path = PurePosixPath(cleaned)
    if path.is_absolute() or any(part in ("..", ".", "") for part in path.parts):
        raise StorageError(f"Invalid storage directory '{directory}'", directory=directory)
    return str(path)


def validate_filename(filename: str) -> str:
    if not filename or "/" in filename or "\\" in filename or filename in (".", "..") or "\x00" in filename:
        raise StorageError(f"Invalid storage filename '{filename}'", filename=filename)
    return filename


def generate_unique_filename(original_name: str, content_hash: str, timestamp: Optional[int] = None) -> str:
    """
    Build a collision-resistant storage name.

    The sanitized base name (at most 50 characters) is followed by the first
    eight hash characters and a millisecond timestamp; the original
    extension is kept lowercased.
    """
    base, ext = os.path.splitext(os.path.basename(original_name.replace("\\", "/")))
    safe_base = _UNSAFE_NAME_CHARS.sub("_", base)[:MAX_BASE_NAME_LENGTH] or "file"
    safe_ext = _UNSAFE_NAME_CHARS.sub("", ext.lstrip(".").lower())
    stamp = timestamp if timestamp is not None else timestamp_ms()
    name = f"{safe_base}_{content_hash[:8]}_{stamp}"
    return f"{name}.{safe_ext}" if safe_ext else name


def copy_filename(filename: str, timestamp: Optional[int] = None) -> str:
    base, ext = os.path.splitext(filename)
    stamp = timestamp if timestamp is not None else timestamp_ms()
    return f"{base}_copy_{stamp}{ext}"


def trash_filename(filename: str, timestamp: Optional[int] = None) -> str:
    stamp = timestamp if timestamp is not None else timestamp_ms()
    return f"{stamp}_{filename}"


def sort_and_paginate(files, sort_by: str, sort_order: str, page: int, limit: int) -> ListResult:
    if sort_by not in SORT_FIELDS:
        raise StorageError(f"Unsupported sort field '{sort_by}'")
    page = max(1, page)
    limit = max(1, limit)
    key_funcs = {
        "date": lambda info: info.modified_at,
        "size": lambda info: info.size,
        "name": lambda info: info.filename.lower(),
    }
    ordered = sorted(files, key=key_funcs[sort_by], reverse=sort_order.lower() != "asc")
    start = (page - 1) * limit
    return ListResult(files=ordered[start:start + limit], total=len(ordered), page=page, limit=limit)


class StorageProvider(ABC):
    """
    Persists raw bytes under a logical directory.

    Every backend shares the naming and directory rules of this module, so
    a descriptor produced by one provider reads the same as another's.
    """

    kind: StorageKind = StorageKind.LOCAL

    def content_hash(self, file: NormalizedFile, metadata: Optional[Dict[str, Any]] = None) -> str:
        if metadata and metadata.get("hash"):
            return str(metadata["hash"])
        return hashlib.sha256(file.content).hexdigest()

    @abstractmethod
    async def upload(self, file: NormalizedFile, metadata: Optional[Dict[str, Any]] = None) -> StoredObject:
        """Write the file under its resolved directory with a generated name."""

    @abstractmethod
    async def download(self, filename: str, directory: str) -> bytes:
        """Return the stored bytes; raises NotFoundError when absent."""

    @abstractmethod
    async def delete(self, filename: str, directory: str, hard: bool = False) -> DeleteOutcome:
        """Remove permanently (hard) or move to trash with a sidecar record (soft)."""

    @abstractmethod
    async def restore(self, trashed_name: str, directory: str) -> StoredObject:
        """Move a soft-deleted object back to its original location."""

    @abstractmethod
    async def list(
        self,
        directory: Optional[str] = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> ListResult:
        """List stored objects, sorted and paginated."""

    @abstractmethod
    async def exists(self, filename: str, directory: str) -> bool:
        """Probe for an object without reading it."""

    @abstractmethod
    async def get_info(self, filename: str, directory: str) -> ObjectInfo:
        """Size and timestamps of an object."""

    @abstractmethod
    async def move(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        """Relocate an object."""

    @abstractmethod
    async def copy(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        """Duplicate an object; the copy is named ``<base>_copy_<ts><ext>`` unless given."""

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        """Aggregate size and file count per first-level directory."""

    @abstractmethod
    async def cleanup(
        self, older_than_hours: int = TEMP_RETENTION_HOURS, trash_retention_hours: int = TRASH_RETENTION_HOURS
    ) -> CleanupReport:
        """Purge stale temporary files and expired trash."""
