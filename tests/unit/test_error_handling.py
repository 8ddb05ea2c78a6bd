"""
Unit tests for the error handling infrastructure.

Tests cover:
- Rejection hierarchy and the metadata it carries
- Error context capture
- Message translation, error codes and recoverability
- Status code mapping and the HTTP middleware
"""

import datetime
from unittest.mock import Mock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from error_handling.handlers import (
    CATEGORY_STATUS_MAP,
    ErrorContextCapture,
    ErrorHandler,
    ErrorHandlingMiddleware,
    ErrorMessageTranslator,
    create_error_response,
)
from models.errors import (
    ConfigurationError,
    ContentValidationError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    ExtractionError,
    FileSizeError,
    MimeTypeError,
    NotFoundError,
    PostPersistError,
    SecurityError,
    StorageError,
    ValidationRejection,
)


def make_context() -> ErrorContext:
    return ErrorContext(
        error_id="test-error-id",
        timestamp=datetime.datetime(2024, 1, 1, 12, 0, 0),
        user_id=None,
        request_id=None,
        user_agent=None,
        endpoint="/api/files/upload",
        stack_trace=None,
        request_data={},
    )


class TestExceptionHierarchy:
    """Test the rejection and storage exception types."""

    @pytest.mark.parametrize("error_class", [FileSizeError, MimeTypeError, SecurityError, ContentValidationError])
    def test_rejections_share_base(self, error_class):
        error = error_class("rejected", filename="deed.pdf", score=20)
        assert isinstance(error, ValidationRejection)
        assert error.reason == "rejected"
        assert error.filename == "deed.pdf"
        assert error.score == 20
        assert error.quarantine_path is None

    def test_not_found_is_storage_error(self):
        error = NotFoundError("missing", filename="deed.pdf", directory="documents")
        assert isinstance(error, StorageError)
        assert error.directory == "documents"

    def test_configuration_error_defaults(self):
        error = ConfigurationError("bad strategy")
        assert error.error_code == "CONFIGURATION_ERROR"
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.user_message == "bad strategy"

    def test_post_persist_error_keeps_descriptor(self):
        descriptor = object()
        error = PostPersistError("hook failed", filename="deed.pdf", descriptor=descriptor)
        assert error.descriptor is descriptor


class TestErrorContextCapture:
    """Test error context capture functionality."""

    @pytest.fixture
    def mock_request(self):
        request = Mock()
        request.url.path = "/api/files/upload"
        request.method = "POST"
        request.headers = {"user-agent": "Test/1.0", "content-type": "multipart/form-data", "x-request-id": "req-1"}
        request.client.host = "127.0.0.1"
        return request

    @pytest.mark.asyncio
    async def test_capture_request_context(self, mock_request):
        capture = ErrorContextCapture()

        with patch("error_handling.handlers.uuid.uuid4", return_value=Mock(hex="test-error-id")):
            context = await capture.capture_request_context(
                request=mock_request, user_id="admin-7", additional_data={"channel": "property"}
            )

        assert context.error_id == "test-error-id"
        assert context.user_id == "admin-7"
        assert context.request_id == "req-1"
        assert context.endpoint == "/api/files/upload"
        assert context.user_agent == "Test/1.0"
        assert context.request_data["channel"] == "property"
        assert context.request_data["method"] == "POST"
        assert context.request_data["client_host"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_capture_exception_context(self):
        capture = ErrorContextCapture()
        try:
            raise ValueError("boom")
        except ValueError as e:
            context = await capture.capture_exception_context(e)

        assert "ValueError: boom" in context.stack_trace
        assert context.endpoint is None


class TestErrorMessageTranslator:
    """Test translation of exceptions to user-facing results."""

    @pytest.fixture
    def translator(self):
        return ErrorMessageTranslator()

    def test_rejection_message_names_the_file(self, translator):
        result = translator.translate_error(FileSizeError("too big", filename="deed.pdf"), make_context())

        assert result.user_message.startswith("deed.pdf: ")
        assert result.category == ErrorCategory.VALIDATION
        assert result.recoverable is False
        assert result.retry_after is None

    def test_most_specific_rule_wins(self, translator):
        security = translator.translate_error(SecurityError("score"), make_context())
        not_found = translator.translate_error(NotFoundError("gone"), make_context())

        assert "security check" in security.user_message
        assert security.severity == ErrorSeverity.HIGH
        assert not_found.category == ErrorCategory.NOT_FOUND

    def test_storage_errors_are_recoverable(self, translator):
        result = translator.translate_error(StorageError("disk full"), make_context())
        assert result.recoverable is True
        assert result.retry_after == 5

    def test_not_found_is_not_recoverable(self, translator):
        assert translator.translate_error(NotFoundError("gone"), make_context()).recoverable is False

    def test_error_code_attribute_is_used(self, translator):
        result = translator.translate_error(
            ConfigurationError("bad", error_code="INVALID_STRATEGY"), make_context()
        )
        assert result.error_code == "INVALID_STRATEGY"
        assert result.category == ErrorCategory.CONFIGURATION

    def test_error_code_falls_back_to_class_name(self, translator):
        result = translator.translate_error(ExtractionError("no boundary"), make_context())
        assert result.error_code.startswith("ExtractionError_")
        assert result.category == ErrorCategory.EXTRACTION

    def test_unknown_error_uses_generic_rule(self, translator):
        result = translator.translate_error(RuntimeError("kaput"), make_context())
        assert result.category == ErrorCategory.SYSTEM
        assert result.technical_message == "kaput"

    def test_large_content_is_sanitized(self, translator):
        message = "payload " + "A" * 300
        result = translator.translate_error(ValueError(message), make_context())
        assert "A" * 300 not in result.technical_message
        assert "TRUNCATED" in result.technical_message


class TestErrorResponses:
    """Test HTTP mapping of error results."""

    @pytest.mark.asyncio
    async def test_handle_error_without_request(self):
        result = await ErrorHandler().handle_error(MimeTypeError("type", filename="a.exe"))
        assert result.context.stack_trace is not None
        assert result.category == ErrorCategory.VALIDATION

    @pytest.mark.parametrize(
        "category,status",
        [
            (ErrorCategory.VALIDATION, 400),
            (ErrorCategory.EXTRACTION, 400),
            (ErrorCategory.NOT_FOUND, 404),
            (ErrorCategory.STORAGE, 500),
        ],
    )
    def test_category_status(self, category, status):
        assert CATEGORY_STATUS_MAP[category] == status

    def test_create_error_response_body(self):
        result = ErrorMessageTranslator().translate_error(StorageError("disk full"), make_context())
        response = create_error_response(result)

        assert response.status_code == 500
        assert b'"retry_after":5' in response.body
        assert b'"error_id":"test-error-id"' in response.body

    def test_middleware_maps_exceptions(self):
        app = FastAPI()
        app.add_middleware(ErrorHandlingMiddleware, error_handler=ErrorHandler())

        @app.get("/missing")
        async def missing():
            raise NotFoundError("File not found: deed.pdf")

        @app.get("/garbled")
        async def garbled():
            raise ExtractionError("Malformed multipart body")

        client = TestClient(app)

        missing_response = client.get("/missing")
        assert missing_response.status_code == 404
        assert missing_response.json()["category"] == "not_found"

        garbled_response = client.get("/garbled")
        assert garbled_response.status_code == 400
        body = garbled_response.json()
        assert body["success"] is False
        assert body["category"] == "extraction"
        assert body["error_code"].startswith("ExtractionError_")
