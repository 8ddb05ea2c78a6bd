"""Error handling and user feedback for the upload API."""

import datetime
import json
import logging
import re
import traceback
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from models.errors import (
    ConfigurationError,
    ContentValidationError,
    ErrorCategory,
    ErrorContext,
    ErrorResult,
    ErrorSeverity,
    ExtractionError,
    FilenameError,
    FileSizeError,
    MimeTypeError,
    NotFoundError,
    PostPersistError,
    SecurityError,
    StorageError,
    ValidationRejection,
)
from validation.validators import sanitize_display_name

_BASE64_PATTERN = re.compile(r"data:[^;]+;base64,[A-Za-z0-9+/]{50,}={0,2}|[A-Za-z0-9+/]{100,}={0,2}")
_LONG_STRING_PATTERN = re.compile(r"(?=.*[A-Za-z].*[A-Za-z].*[A-Za-z])\S{200,}")
MAX_TECHNICAL_MESSAGE_LENGTH = 500


class ErrorContextCapture:
    """Captures contextual information for error tracking and debugging."""

    async def capture_request_context(
        self,
        request: Optional[Request] = None,
        user_id: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """
        Capture context from a FastAPI request.

        Args:
            request: FastAPI Request object
            user_id: Caller identity set by the auth layer
            additional_data: Additional context data

        Returns:
            ErrorContext: Captured context information
        """
        request_data = additional_data or {}
        user_agent = None
        endpoint = None
        request_id = None

        if request:
            request_data.update({
                "method": request.method,
                "client_host": request.client.host if request.client else None,
                "content_type": request.headers.get("content-type"),
            })
            user_agent = request.headers.get("user-agent")
            endpoint = request.url.path
            request_id = request.headers.get("x-request-id")

        return ErrorContext(
            error_id=uuid.uuid4().hex,
            timestamp=datetime.datetime.now(),
            user_id=user_id,
            request_id=request_id,
            user_agent=user_agent,
            endpoint=endpoint,
            stack_trace=None,
            request_data=request_data
        )

    async def capture_exception_context(
        self,
        exception: Exception,
        user_id: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """Capture context from an exception with stack trace."""
        return ErrorContext(
            error_id=uuid.uuid4().hex,
            timestamp=datetime.datetime.now(),
            user_id=user_id,
            request_id=None,
            user_agent=None,
            endpoint=None,
            stack_trace=traceback.format_exc(),
            request_data=additional_data or {}
        )


class ErrorMessageTranslator:
    """Translates technical error messages to user-friendly messages with suggested actions."""

    def __init__(self):
        """Initialize the translator with predefined message mappings."""
        self._translation_rules = {
            # Upload rejections
            FileSizeError: {
                "user_message": "The file is empty or larger than this upload type allows.",
                "suggested_actions": [
                    "Compress the file before uploading",
                    "Check the size limit of the upload type you selected"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.VALIDATION
            },
            FilenameError: {
                "user_message": "The file name is not allowed.",
                "suggested_actions": [
                    "Rename the file using plain letters, digits, dashes and underscores",
                    "Remove any extra extensions from the name"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.VALIDATION
            },
            MimeTypeError: {
                "user_message": "This file type is not accepted for this upload.",
                "suggested_actions": [
                    "Check the list of supported file types",
                    "Convert your file to a supported format"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.VALIDATION
            },
            SecurityError: {
                "user_message": "This file failed the security check and was quarantined.",
                "suggested_actions": [
                    "Scan your file with antivirus software",
                    "Export the document again from its original application",
                    "Contact support with the error ID if you believe this is an error"
                ],
                "severity": ErrorSeverity.HIGH,
                "category": ErrorCategory.VALIDATION
            },
            ContentValidationError: {
                "user_message": "The file appears to be corrupted or contains active content.",
                "suggested_actions": [
                    "Re-save the file in the correct format",
                    "Remove scripts, macros or embedded objects and try again"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.VALIDATION
            },
            ValidationRejection: {
                "user_message": "The file was rejected.",
                "suggested_actions": ["Try uploading a different file"],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.VALIDATION
            },
            ExtractionError: {
                "user_message": "The upload request could not be read.",
                "suggested_actions": [
                    "Send the files as multipart/form-data",
                    "Check the number of files and their field names"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.EXTRACTION
            },

            # Storage errors
            NotFoundError: {
                "user_message": "The requested file was not found.",
                "suggested_actions": ["Check the file identifier", "The file may have been deleted"],
                "severity": ErrorSeverity.LOW,
                "category": ErrorCategory.NOT_FOUND
            },
            StorageError: {
                "user_message": "The file could not be stored or read. Please try again.",
                "suggested_actions": [
                    "Try again in a few moments",
                    "Contact support if the problem continues"
                ],
                "severity": ErrorSeverity.HIGH,
                "category": ErrorCategory.STORAGE
            },
            PostPersistError: {
                "user_message": "The file was stored but could not be attached to its record.",
                "suggested_actions": ["Contact support with the error ID"],
                "severity": ErrorSeverity.HIGH,
                "category": ErrorCategory.STORAGE
            },
            ConfigurationError: {
                "user_message": "There's a configuration issue. Please contact support.",
                "suggested_actions": [
                    "Contact technical support",
                    "Report this error with the error ID"
                ],
                "severity": ErrorSeverity.CRITICAL,
                "category": ErrorCategory.CONFIGURATION
            },

            # Generic errors
            Exception: {
                "user_message": "An unexpected error occurred. Please try again.",
                "suggested_actions": [
                    "Try your request again",
                    "Contact support with the error ID if needed"
                ],
                "severity": ErrorSeverity.MEDIUM,
                "category": ErrorCategory.SYSTEM
            }
        }

    def translate_error(
        self,
        exception: Exception,
        context: ErrorContext,
        fallback_message: Optional[str] = None
    ) -> ErrorResult:
        """
        Translate a technical error to a user-friendly error result.

        Args:
            exception: The exception to translate
            context: Error context information
            fallback_message: Optional fallback message if no rule matches

        Returns:
            ErrorResult: User-friendly error result
        """
        rule = self._get_translation_rule(exception)
        technical_message = self._sanitize_technical_message(str(exception))

        user_message = rule.get("user_message", fallback_message or technical_message)
        filename = getattr(exception, "filename", None)
        if filename and isinstance(exception, ValidationRejection):
            user_message = f"{sanitize_display_name(filename)}: {user_message}"

        recoverable = self._is_recoverable(exception)
        return ErrorResult(
            error_code=self._generate_error_code(exception),
            severity=getattr(exception, "severity", None) or rule.get("severity", ErrorSeverity.MEDIUM),
            category=rule.get("category", ErrorCategory.SYSTEM),
            technical_message=technical_message,
            user_message=user_message,
            suggested_actions=rule.get("suggested_actions", []),
            context=context,
            recoverable=recoverable,
            retry_after=self._get_retry_delay(exception) if recoverable else None
        )

    def _get_translation_rule(self, exception: Exception) -> Dict[str, Any]:
        """Get the most specific translation rule for an exception."""
        for exception_type in type(exception).__mro__:
            if exception_type in self._translation_rules:
                return self._translation_rules[exception_type]
        return self._translation_rules[Exception]

    def _generate_error_code(self, exception: Exception) -> str:
        """Use the exception's own code when it has one, else name plus timestamp."""
        error_code = getattr(exception, "error_code", None)
        if error_code:
            return error_code
        exception_name = type(exception).__name__
        timestamp = int(datetime.datetime.now().timestamp())
        return f"{exception_name}_{timestamp}"

    def _is_recoverable(self, exception: Exception) -> bool:
        """Storage hiccups can be retried; rejections and missing files cannot."""
        return isinstance(exception, StorageError) and not isinstance(exception, NotFoundError)

    def _get_retry_delay(self, exception: Exception) -> Optional[int]:
        """Get suggested retry delay in seconds."""
        if isinstance(exception, StorageError):
            return 5
        return None

    def _sanitize_technical_message(self, message: str) -> str:
        """
        Sanitize technical message to prevent logging of large content like base64 data.

        Args:
            message: Raw technical message from exception

        Returns:
            str: Sanitized message safe for logging
        """
        if _BASE64_PATTERN.search(message):
            message = _BASE64_PATTERN.sub("[BASE64_CONTENT_TRUNCATED]", message)

        if _LONG_STRING_PATTERN.search(message):
            message = _LONG_STRING_PATTERN.sub("[LONG_CONTENT_TRUNCATED]", message)

        if len(message) > MAX_TECHNICAL_MESSAGE_LENGTH:
            message = message[:MAX_TECHNICAL_MESSAGE_LENGTH] + "... [TRUNCATED]"

        return message


class ErrorHandler:
    """Main error handler that orchestrates error processing."""

    def __init__(self):
        self.context_capture = ErrorContextCapture()
        self.message_translator = ErrorMessageTranslator()

    async def handle_error(
        self,
        exception: Exception,
        request: Optional[Request] = None,
        user_id: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> ErrorResult:
        """
        Comprehensive error handling pipeline.

        Args:
            exception: The exception to handle
            request: FastAPI request object
            user_id: Caller identity
            additional_context: Additional context data

        Returns:
            ErrorResult: Complete error handling result
        """
        try:
            if request:
                context = await self.context_capture.capture_request_context(
                    request, user_id, additional_context
                )
            else:
                context = await self.context_capture.capture_exception_context(
                    exception, user_id, additional_context
                )

            error_result = self.message_translator.translate_error(exception, context)
            self._log_error(error_result)
            return error_result

        except Exception as handler_error:
            # If error handling itself fails, create minimal error result
            logging.error(f"Error handler failed: {handler_error}")
            return self._create_fallback_error_result(exception)

    def _log_error(self, error_result: ErrorResult) -> None:
        """Log error with appropriate level based on severity."""
        log_data = {
            "error_id": error_result.context.error_id,
            "error_code": error_result.error_code,
            "category": error_result.category.value,
            "severity": error_result.severity.value,
            "endpoint": error_result.context.endpoint,
            "user_id": error_result.context.user_id,
            "technical_message": error_result.technical_message
        }

        if error_result.severity == ErrorSeverity.CRITICAL:
            logging.critical(f"Critical error: {json.dumps(log_data)}")
        elif error_result.severity == ErrorSeverity.HIGH:
            logging.error(f"High severity error: {json.dumps(log_data)}")
        elif error_result.severity == ErrorSeverity.MEDIUM:
            logging.warning(f"Medium severity error: {json.dumps(log_data)}")
        else:
            logging.info(f"Low severity error: {json.dumps(log_data)}")

    def _create_fallback_error_result(self, exception: Exception) -> ErrorResult:
        """Create a minimal error result when error handling fails."""
        error_id = uuid.uuid4().hex
        context = ErrorContext(
            error_id=error_id,
            timestamp=datetime.datetime.now(),
            user_id=None,
            request_id=None,
            user_agent=None,
            endpoint=None,
            stack_trace=traceback.format_exc(),
            request_data={}
        )

        return ErrorResult(
            error_code=f"FALLBACK_{error_id}",
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.SYSTEM,
            technical_message=self.message_translator._sanitize_technical_message(str(exception)),
            user_message="A system error occurred. Please try again or contact support.",
            suggested_actions=["Try again", "Contact support"],
            context=context,
            recoverable=False,
            retry_after=None
        )


# Map categories to status codes
CATEGORY_STATUS_MAP = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.EXTRACTION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.STORAGE: 500,
    ErrorCategory.CONFIGURATION: 500,
    ErrorCategory.SYSTEM: 500
}


def create_error_response(error_result: ErrorResult) -> JSONResponse:
    """Create appropriate HTTP response for error result."""
    response_data = {
        "success": False,
        "error": True,
        "error_id": error_result.context.error_id,
        "error_code": error_result.error_code,
        "message": error_result.user_message,
        "suggested_actions": error_result.suggested_actions,
        "severity": error_result.severity.value,
        "category": error_result.category.value,
        "recoverable": error_result.recoverable
    }

    if error_result.retry_after:
        response_data["retry_after"] = error_result.retry_after

    return JSONResponse(
        status_code=CATEGORY_STATUS_MAP.get(error_result.category, 500),
        content=response_data
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware for centralized error handling."""

    def __init__(self, app, error_handler: ErrorHandler):
        super().__init__(app)
        self.error_handler = error_handler

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process requests and handle any errors that occur.

        Args:
            request: FastAPI request
            call_next: Next middleware or endpoint

        Returns:
            Response: HTTP response
        """
        try:
            response = await call_next(request)
            return response
        except Exception as e:
            user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id")
            error_result = await self.error_handler.handle_error(e, request, user_id)
            return create_error_response(error_result)
