"""Return values of the storage providers."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class StoredObject:
    """Location of bytes written by a provider."""
    filename: str
    directory: str
    path: str
    url: str
    size: int


@dataclass
class ObjectInfo:
    filename: str
    directory: str
    path: str
    url: str
    size: int
    created_at: datetime
    modified_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["modified_at"] = self.modified_at.isoformat()
        return data


@dataclass
class ListResult:
    files: List[ObjectInfo]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": [info.to_dict() for info in self.files],
            "pagination": {"total": self.total, "page": self.page, "limit": self.limit, "pages": self.pages},
        }


@dataclass
class DeleteOutcome:
    filename: str
    directory: str
    hard: bool
    trash_path: Optional[str] = None
    already_absent: bool = False


@dataclass
class StorageStats:
    """Aggregate size and file count, overall and per first-level directory."""
    total_size: int = 0
    total_files: int = 0
    directories: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupReport:
    temp_files_removed: int = 0
    trash_files_removed: int = 0
    bytes_freed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
