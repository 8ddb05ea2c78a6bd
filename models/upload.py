"""Upload channel configuration and the value objects that flow through the pipeline."""

import hashlib
import os
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

from models.errors import ConfigurationError

# Executables, scripts, system files and archives
DEFAULT_BLOCKED_EXTENSIONS = frozenset({
    "exe", "dll", "bat", "cmd", "sh", "ps1", "vbs", "jar", "app", "deb", "rpm", "msi",
    "com", "scr", "hta", "cpl", "msc", "js", "jse", "ws", "wsf", "scf", "lnk", "inf",
    "reg", "sys", "drv", "vxd", "ocx", "pif", "gadget", "msp", "vb", "vbe", "wsc", "wsh",
    "ps1xml", "ps2", "ps2xml", "psc1", "psc2", "msh", "msh1", "msh2", "mshxml",
    "msh1xml", "msh2xml", "zip", "rar", "7z", "tar", "gz", "bz2", "xz",
})

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB
DEFAULT_MAX_FILES = 10


class StrategyKind(Enum):
    """Request-body parsing mechanisms an upload channel can use."""
    FORM = "form"
    TEMPFILE = "tempfile"
    STREAMING = "streaming"


class StorageKind(Enum):
    """Storage backends an upload channel can persist to."""
    LOCAL = "local"
    S3 = "s3"
    MINIO = "minio"
    GCS = "gcs"


class FieldMode(Enum):
    """How file parts are grouped by form field name."""
    SINGLE = "single"
    ARRAY = "array"
    FIELDS = "fields"
    ANY = "any"


@dataclass(frozen=True)
class FieldConfig:
    """Which form fields may carry files and how many each."""
    mode: FieldMode = FieldMode.ANY
    fields: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def single(cls, name: str = "file") -> "FieldConfig":
        return cls(FieldMode.SINGLE, {name: 1})

    @classmethod
    def array(cls, name: str = "files", max_count: int = DEFAULT_MAX_FILES) -> "FieldConfig":
        return cls(FieldMode.ARRAY, {name: max_count})

    def accepts(self, field_name: str) -> bool:
        return self.mode == FieldMode.ANY or field_name in self.fields

    def limit_for(self, field_name: str) -> Optional[int]:
        return self.fields.get(field_name)


@dataclass(frozen=True)
class CloudStorageSettings:
    """Connection settings shared by the S3-compatible providers."""
    bucket: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    prefix: str = "uploads"
    public_base_url: Optional[str] = None


@dataclass(frozen=True)
class UploadConfiguration:
    """Immutable settings of one upload channel.

    Instances are never mutated. ``with_strategy`` is the only supported way
    to derive a changed configuration and it returns a fresh copy.
    """
    name: str = "general"
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_files: int = DEFAULT_MAX_FILES
    allowed_mime_types: FrozenSet[str] = frozenset()
    blocked_extensions: FrozenSet[str] = DEFAULT_BLOCKED_EXTENSIONS
    enable_magic_number_check: bool = True
    enable_content_validation: bool = True
    enable_virus_scan: bool = False
    generate_thumbnails: bool = False
    storage_type: StorageKind = StorageKind.LOCAL
    upload_strategy: StrategyKind = StrategyKind.FORM
    hash_algorithm: str = "sha256"
    upload_root: str = "uploads"
    public_url_prefix: str = "/uploads"
    cloud: Optional[CloudStorageSettings] = None
    malicious_hashes: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ConfigurationError(f"Channel '{self.name}' needs a positive max_file_size")
        if self.max_files <= 0:
            raise ConfigurationError(f"Channel '{self.name}' needs a positive max_files")
        if self.hash_algorithm not in hashlib.algorithms_available:
            raise ConfigurationError(f"Unsupported hash algorithm '{self.hash_algorithm}'")
        # Accept ".exe" and "EXE" spellings from configuration
        normalized = frozenset(ext.lower().lstrip(".") for ext in self.blocked_extensions)
        object.__setattr__(self, "blocked_extensions", normalized)

    @property
    def quarantine_dir(self) -> Path:
        return Path(self.upload_root) / "quarantine"

    @property
    def temp_dir(self) -> Path:
        return Path(self.upload_root) / "temp"

    def with_strategy(self, kind: Union[str, StrategyKind]) -> "UploadConfiguration":
        """Return a copy that uses another parsing strategy, all other settings preserved."""
        try:
            strategy = StrategyKind(kind)
        except ValueError as e:
            raise ConfigurationError(f"Unknown upload strategy '{kind}'", error_code="INVALID_STRATEGY") from e
        return replace(self, upload_strategy=strategy)

    def is_mime_allowed(self, mime_type: Optional[str]) -> bool:
        """Exact or wildcard-prefix (``image/*``) match against the allow-list."""
        if not self.allowed_mime_types:
            return True
        if not mime_type:
            return False
        mime_type = mime_type.lower()
        for allowed in self.allowed_mime_types:
            if allowed.endswith("/*"):
                if mime_type.startswith(allowed[:-1]):
                    return True
            elif allowed == mime_type:
                return True
        return False


@dataclass
class NormalizedFile:
    """Strategy-agnostic in-memory representation of one uploaded file."""
    filename: str
    mime_type: str
    size: int
    content: bytes
    field_name: str = "file"
    # Oversized parts stop buffering at the ceiling; content then holds a prefix only
    truncated: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    unique_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename)[1].lower().lstrip(".")


# Post-persist hook: receives the descriptor, may be sync or async
PersistHook = Callable[["PersistedFileDescriptor"], Union[None, Awaitable[None]]]


@dataclass
class UploadOptions:
    """Per-call options for ``FileUploadManager.upload`` and ``middleware``."""
    directory: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    optimize: bool = False
    field_config: Optional[FieldConfig] = None
    post_persist_hook: Optional[PersistHook] = None


@dataclass
class PersistedFileDescriptor:
    """What a successful upload returns to the caller."""
    id: str
    filename: str
    original_name: str
    directory: str
    url: str
    size: int
    hash: str
    mime_type: str
    detected_mime_type: Optional[str]
    security_score: int
    uploaded_at: datetime
    storage_type: str = StorageKind.LOCAL.value
    thumbnail_url: Optional[str] = None
    warnings: list = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["uploaded_at"] = self.uploaded_at.isoformat()
        return data


@dataclass
class QuarantineRecord:
    """Append-only log entry for a rejected upload."""
    timestamp: str
    filename: str
    reason: str
    size: int
    mime_type: str
    quarantine_path: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UploadOutcome:
    """Result of one file inside a batch upload."""
    filename: str
    success: bool
    descriptor: Optional[PersistedFileDescriptor] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"filename": self.filename, "success": self.success}
        if self.success and self.descriptor is not None:
            data["file"] = self.descriptor.to_dict()
        else:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


@dataclass
class FileRecord:
    """Registry entry tying a persisted file to its uploader and related entity."""
    descriptor: PersistedFileDescriptor
    uploaded_by: Optional[str] = None
    channel: Optional[str] = None
    related_model: Optional[str] = None
    related_id: Optional[str] = None
    document_type: Optional[str] = None
    is_public: bool = False
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    trash_name: Optional[str] = None
    last_scanned_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.descriptor.id

    def to_dict(self) -> Dict[str, Any]:
        data = self.descriptor.to_dict()
        data.update({
            "uploaded_by": self.uploaded_by,
            "channel": self.channel,
            "related_model": self.related_model,
            "related_id": self.related_id,
            "document_type": self.document_type,
            "is_public": self.is_public,
            "is_deleted": self.is_deleted,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "access_count": self.access_count,
            "last_scanned_at": self.last_scanned_at.isoformat() if self.last_scanned_at else None,
        })
        return data
