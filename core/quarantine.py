"""Quarantine store for rejected uploads."""

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from models.errors import StorageError
from models.upload import NormalizedFile, QuarantineRecord
from storage.base import timestamp_ms
from validation.validators import sanitize_display_name

QUARANTINE_LOG = "quarantine.log"

_UNSAFE_QUARANTINE_CHARS = re.compile(r"[^a-zA-Z0-9.\-_]")


class QuarantineStore:
    """
    Keeps the bytes of every rejected upload plus an append-only JSON-lines log.

    Quarantined files are written as ``<ms timestamp>_<sanitized name>`` so
    the original name can never address anything outside the folder.
    """

    def __init__(self, quarantine_dir: str):
        self.quarantine_dir = Path(quarantine_dir)
        self.quarantine_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.quarantine_dir / QUARANTINE_LOG
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    def quarantine(self, file: NormalizedFile, reason: str) -> QuarantineRecord:
        """
        Move a rejected file's bytes into quarantine and log the rejection.

        Args:
            file: The rejected upload
            reason: Why it was rejected

        Returns:
            QuarantineRecord: The logged entry

        Raises:
            StorageError: If the quarantine folder cannot be written
        """
        safe_name = _UNSAFE_QUARANTINE_CHARS.sub("_", sanitize_display_name(file.filename))
        path = self.quarantine_dir / f"{timestamp_ms()}_{file.unique_id[:8]}_{safe_name}"
        record = QuarantineRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            filename=file.filename,
            reason=reason,
            size=max(file.size, len(file.content)),
            mime_type=file.mime_type,
            quarantine_path=str(path),
        )

        try:
            path.write_bytes(file.content)
            with self._lock:
                with open(self.log_path, "a", encoding="utf-8") as log_file:
                    log_file.write(json.dumps(record.to_dict()) + "\n")
        except OSError as e:
            self._logger.error(f"Failed to quarantine {file.filename}: {e}")
            raise StorageError(f"Could not quarantine file: {e}", filename=file.filename) from e

        self._logger.warning(f"File quarantined: {file.filename} -> {path.name} ({reason})")
        return record

    def read_log(self, limit: Optional[int] = None) -> List[QuarantineRecord]:
        """Return logged quarantine records, oldest first."""
        if not self.log_path.exists():
            return []
        records = []
        with open(self.log_path, "r", encoding="utf-8") as log_file:
            for line in log_file:
                line = line.strip()
                if line:
                    records.append(QuarantineRecord(**json.loads(line)))
        return records[-limit:] if limit else records
