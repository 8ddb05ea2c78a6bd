"""Error models and exception hierarchy for the upload pipeline."""

import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any


# --- Validation Rejection Hierarchy ---

class ValidationRejection(Exception):
    """Base exception for files rejected by the upload pipeline.

    Every rejection carries the offending filename so the batch middleware
    can report it, and the quarantine path when the bytes were preserved.
    """

    def __init__(self, message: str, filename: Optional[str] = None, score: Optional[int] = None):
        super().__init__(message)
        self.reason = message
        self.filename = filename
        self.score = score
        self.quarantine_path: Optional[str] = None


class FileSizeError(ValidationRejection):
    """File is empty or exceeds the channel size ceiling."""
    pass


class FilenameError(ValidationRejection):
    """Filename contains traversal sequences, control characters or spoofing tricks."""
    pass


class MimeTypeError(ValidationRejection):
    """File type or extension not allowed for the channel."""
    pass


class SecurityError(ValidationRejection):
    """File failed the security validator."""
    pass


class ContentValidationError(ValidationRejection):
    """File structure is malformed or carries active content."""
    pass


# --- Request and Storage Errors ---

class ExtractionError(Exception):
    """The upload strategy could not turn the request body into files."""

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class StorageError(Exception):
    """I/O failure while writing, reading or deleting stored bytes."""

    def __init__(self, message: str, filename: Optional[str] = None, directory: Optional[str] = None):
        super().__init__(message)
        self.filename = filename
        self.directory = directory


class NotFoundError(StorageError):
    """Requested object or metadata record is absent."""
    pass


# --- Error Handling Enums ---

class ErrorSeverity(Enum):
    """Enumeration for error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Enumeration for error categories."""
    VALIDATION = "validation"
    EXTRACTION = "extraction"
    STORAGE = "storage"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


# --- Error Context and Result Models ---

@dataclass
class ErrorContext:
    """Captures contextual information about an error occurrence."""
    error_id: str
    timestamp: datetime.datetime
    user_id: Optional[str]
    request_id: Optional[str]
    user_agent: Optional[str]
    endpoint: Optional[str]
    stack_trace: Optional[str]
    request_data: Dict[str, Any]


@dataclass
class ErrorResult:
    """Complete error processing result with context and user-friendly messages."""
    error_code: str
    severity: ErrorSeverity
    category: ErrorCategory
    technical_message: str
    user_message: str
    suggested_actions: List[str]
    context: ErrorContext
    recoverable: bool
    retry_after: Optional[int]


# --- Application Exception Hierarchy ---

class ApplicationError(Exception):
    """Base exception for application errors with enhanced metadata."""

    def __init__(
        self,
        message: str,
        error_code: str,
        severity: ErrorSeverity,
        user_message: Optional[str] = None,
        suggested_actions: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.severity = severity
        self.user_message = user_message or message
        self.suggested_actions = suggested_actions or []


class ConfigurationError(ApplicationError):
    """Invalid channel, strategy or storage selection."""

    def __init__(self, message: str, error_code: str = "CONFIGURATION_ERROR", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, error_code, **kwargs)


class PostPersistError(Exception):
    """The post-persist hook failed after the bytes were stored.

    Stored bytes are not rolled back; ``descriptor`` tells the caller what
    to reconcile.
    """

    def __init__(self, message: str, filename: Optional[str] = None, descriptor: Any = None):
        super().__init__(message)
        self.filename = filename
        self.descriptor = descriptor
