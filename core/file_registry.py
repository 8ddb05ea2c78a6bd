"""In-memory file registry with a related-entity index."""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from models.errors import NotFoundError
from models.upload import FileRecord, PersistedFileDescriptor


class FileRegistry:
    """
    Tracks persisted files the way a database table of uploads would.

    This class provides:
    - Lookup by id
    - Related-entity indexes (property, user) for listing attached documents
    - Soft-delete flags mirroring the storage trash
    - Access counting for downloads
    """

    def __init__(self):
        self._records: Dict[str, FileRecord] = {}

        # Index for related-entity listings
        self._related_index: Dict[Tuple[str, str], Set[str]] = defaultdict(set)  # (model, id) -> ids

        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    def add(
        self, descriptor: PersistedFileDescriptor, uploaded_by: Optional[str] = None, channel: Optional[str] = None
    ) -> FileRecord:
        """
        Register a persisted file.

        Args:
            descriptor: Descriptor returned by the upload manager
            uploaded_by: Caller identity, falls back to the descriptor metadata
            channel: Upload channel whose storage holds the bytes

        Returns:
            FileRecord: The new registry entry; files are private by default
        """
        metadata = descriptor.metadata
        record = FileRecord(
            descriptor=descriptor,
            uploaded_by=uploaded_by or metadata.get("uploaded_by"),
            channel=channel,
            related_model=metadata.get("related_model"),
            related_id=str(metadata["related_id"]) if metadata.get("related_id") is not None else None,
            document_type=metadata.get("document_type"),
        )

        with self._lock:
            self._records[record.id] = record
            if record.related_model and record.related_id:
                self._related_index[(record.related_model.lower(), record.related_id)].add(record.id)

        self._logger.info(f"Registered file {record.id} ({descriptor.directory}/{descriptor.filename})")
        return record

    def get(self, file_id: str, include_deleted: bool = False) -> FileRecord:
        """
        Raises:
            NotFoundError: If no (live) record has this id
        """
        record = self._records.get(file_id)
        if record is None or (record.is_deleted and not include_deleted):
            raise NotFoundError(f"File record not found: {file_id}")
        return record

    def list_for_related(self, related_model: str, related_id: str) -> List[FileRecord]:
        ids = self._related_index.get((related_model.lower(), str(related_id)), set())
        records = [self._records[i] for i in ids if i in self._records and not self._records[i].is_deleted]
        return sorted(records, key=lambda record: record.descriptor.uploaded_at)

    def record_access(self, file_id: str) -> FileRecord:
        with self._lock:
            record = self.get(file_id)
            record.access_count += 1
            record.last_accessed = datetime.now(timezone.utc)
        return record

    def mark_deleted(self, file_id: str, trash_name: Optional[str] = None) -> FileRecord:
        """Flag a record as soft-deleted, remembering its trash entry for restore."""
        with self._lock:
            record = self.get(file_id, include_deleted=True)
            record.is_deleted = True
            record.deleted_at = datetime.now(timezone.utc)
            record.trash_name = trash_name
        self._logger.info(f"Marked file {file_id} as deleted")
        return record

    def mark_restored(self, file_id: str) -> FileRecord:
        with self._lock:
            record = self.get(file_id, include_deleted=True)
            record.is_deleted = False
            record.deleted_at = None
            record.trash_name = None
        return record

    def remove(self, file_id: str) -> bool:
        """Drop a record and its index entries; used after a hard delete."""
        with self._lock:
            record = self._records.pop(file_id, None)
            if record is None:
                return False
            if record.related_model and record.related_id:
                self._related_index[(record.related_model.lower(), record.related_id)].discard(file_id)

        self._logger.info(f"Removed file record {file_id}")
        return True

    def get_statistics(self) -> Dict[str, Any]:
        """Get statistics about the registry."""
        live = [record for record in self._records.values() if not record.is_deleted]
        by_mime: Dict[str, int] = defaultdict(int)
        for record in live:
            by_mime[record.descriptor.mime_type] += 1

        return {
            "total_files": len(live),
            "deleted_files": len(self._records) - len(live),
            "total_size_bytes": sum(record.descriptor.size for record in live),
            "files_by_mime_type": dict(by_mime),
            "total_downloads": sum(record.access_count for record in self._records.values()),
        }
