"""Request-body parsing strategies that yield normalized files."""

from .base import ParsedPart, UploadStrategy
from .factory import STRATEGIES, create_upload_strategy
from .form import FormUploadStrategy
from .multipart import StreamingUploadStrategy, TempFileUploadStrategy

__all__ = [
    "ParsedPart",
    "UploadStrategy",
    "FormUploadStrategy",
    "TempFileUploadStrategy",
    "StreamingUploadStrategy",
    "STRATEGIES",
    "create_upload_strategy",
]
