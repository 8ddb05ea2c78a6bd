"""
Unit tests for the upload strategies.

Each strategy must turn the same multipart request into the same list of
NormalizedFile, enforce the per-part pre-checks and leave no temporary
files behind.
"""

import pytest
from starlette.requests import ClientDisconnect

from models.errors import ConfigurationError, ExtractionError
from models.upload import FieldConfig, StrategyKind, UploadConfiguration
from strategies import (
    FormUploadStrategy,
    StreamingUploadStrategy,
    TempFileUploadStrategy,
    create_upload_strategy,
)
from strategies.base import FIELDS_STATE_ATTR
from tests.utils.fixtures import make_png, make_text_content
from tests.utils.helpers import build_multipart, make_request

ALL_STRATEGIES = [FormUploadStrategy, StreamingUploadStrategy, TempFileUploadStrategy]


@pytest.fixture
def config(tmp_path) -> UploadConfiguration:
    return UploadConfiguration(upload_root=str(tmp_path / "uploads"), max_file_size=1024, max_files=3)


async def parse_and_extract(strategy, body: bytes, content_type: str, field_config=None, chunk_size: int = 4096):
    request = make_request(body, content_type, chunk_size=chunk_size)
    await strategy.parse_request(request, field_config)
    files = await strategy.extract_files(request)
    return request, files


class TestStrategyParity:
    """Behaviour every strategy shares."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_files_and_fields_in_submission_order(self, strategy_class, config):
        text = make_text_content()
        png = make_png((8, 8))
        body, content_type = build_multipart(
            [("files", "deed.txt", text, "text/plain"), ("files", "plan.png", png, "image/png")],
            fields={"relatedModel": "property"},
        )

        request, files = await parse_and_extract(strategy_class(config), body, content_type, chunk_size=64)

        assert [file.filename for file in files] == ["deed.txt", "plan.png"]
        assert [file.mime_type for file in files] == ["text/plain", "image/png"]
        assert files[0].content == text
        assert files[1].content == png
        assert files[1].size == len(png)
        assert all(file.field_name == "files" for file in files)
        assert getattr(request.state, FIELDS_STATE_ATTR) == {"relatedModel": "property"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_oversized_part_is_truncated_not_fatal(self, strategy_class, config):
        body, content_type = build_multipart(
            [
                ("files", "small.txt", b"a" * 10, "text/plain"),
                ("files", "large.txt", b"b" * 5000, "text/plain"),
            ]
        )

        _, files = await parse_and_extract(strategy_class(config), body, content_type, chunk_size=512)

        assert len(files) == 2
        assert files[0].truncated is False
        assert files[1].truncated is True
        assert files[1].size == 5000
        assert len(files[1].content) <= config.max_file_size

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_non_multipart_request_has_no_files(self, strategy_class, config):
        _, files = await parse_and_extract(strategy_class(config), b'{"a": 1}', "application/json")
        assert files == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_untouched_file_input_is_skipped(self, strategy_class, config):
        body, content_type = build_multipart([("file", "", b"", "application/octet-stream")])
        _, files = await parse_and_extract(strategy_class(config), body, content_type)
        assert files == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_traversal_filename_rejects_request(self, strategy_class, config):
        body, content_type = build_multipart([("file", "../../etc/passwd", b"root", "text/plain")])
        with pytest.raises(ExtractionError) as exc_info:
            await parse_and_extract(strategy_class(config), body, content_type)
        assert "path traversal" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_blocked_extension_rejects_request(self, strategy_class, config):
        body, content_type = build_multipart([("file", "setup.exe", b"MZ", "application/octet-stream")])
        with pytest.raises(ExtractionError, match="blocked"):
            await parse_and_extract(strategy_class(config), body, content_type)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_disallowed_type_rejects_request(self, strategy_class, tmp_path):
        config = UploadConfiguration(
            upload_root=str(tmp_path / "uploads"), allowed_mime_types=frozenset({"application/pdf"})
        )
        body, content_type = build_multipart([("file", "deed.txt", b"text", "text/plain")])
        with pytest.raises(ExtractionError, match="not allowed"):
            await parse_and_extract(strategy_class(config), body, content_type)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_too_many_files(self, strategy_class, config):
        parts = [("files", f"deed{i}.txt", b"deed", "text/plain") for i in range(4)]
        body, content_type = build_multipart(parts)
        with pytest.raises(ExtractionError, match="Too many files"):
            await parse_and_extract(strategy_class(config), body, content_type)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy_class", ALL_STRATEGIES)
    async def test_unexpected_field(self, strategy_class, config):
        body, content_type = build_multipart([("attachment", "deed.txt", b"deed", "text/plain")])
        with pytest.raises(ExtractionError, match="Unexpected file field"):
            await parse_and_extract(strategy_class(config), body, content_type, FieldConfig.single("file"))

    @pytest.mark.asyncio
    async def test_single_field_accepts_one_file(self, config):
        body, content_type = build_multipart(
            [("file", "a.txt", b"a", "text/plain"), ("file", "b.txt", b"b", "text/plain")]
        )
        with pytest.raises(ExtractionError, match="Too many files in field 'file'"):
            await parse_and_extract(FormUploadStrategy(config), body, content_type, FieldConfig.single("file"))


class TestMultipartStreamStrategies:
    """Behaviour specific to the strategies that drive the streaming parser."""

    @pytest.mark.asyncio
    async def test_missing_boundary(self, config):
        with pytest.raises(ExtractionError, match="boundary"):
            await parse_and_extract(StreamingUploadStrategy(config), b"--x--", "multipart/form-data")

    @pytest.mark.asyncio
    async def test_malformed_body(self, config):
        with pytest.raises(ExtractionError, match="Malformed multipart body"):
            await parse_and_extract(
                StreamingUploadStrategy(config), b"garbage without boundary", "multipart/form-data; boundary=abc"
            )

    @pytest.mark.asyncio
    async def test_tempfile_strategy_leaves_no_temp_files(self, config):
        strategy = TempFileUploadStrategy(config)
        body, content_type = build_multipart(
            [("files", "a.txt", b"a" * 100, "text/plain"), ("files", "b.txt", b"b" * 100, "text/plain")]
        )

        _, files = await parse_and_extract(strategy, body, content_type, chunk_size=32)

        assert [file.content for file in files] == [b"a" * 100, b"b" * 100]
        assert strategy.pending_temp_files() == ()
        assert list(config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_tempfile_strategy_cleans_up_on_rejection(self, config):
        strategy = TempFileUploadStrategy(config)
        body, content_type = build_multipart(
            [("files", "a.txt", b"a" * 100, "text/plain"), ("files", "evil.exe", b"MZ", "text/plain")]
        )

        with pytest.raises(ExtractionError):
            await parse_and_extract(strategy, body, content_type)

        assert strategy.pending_temp_files() == ()
        assert list(config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_tempfile_strategy_cleans_up_on_client_disconnect(self, config):
        strategy = TempFileUploadStrategy(config)
        body, content_type = build_multipart(
            [("files", "a.txt", b"a" * 600, "text/plain"), ("files", "b.txt", b"b" * 100, "text/plain")]
        )
        request = make_request(body, content_type, chunk_size=32, disconnect_after=8)

        with pytest.raises(ClientDisconnect):
            await strategy.parse_request(request)

        assert strategy.pending_temp_files() == ()
        assert list(config.temp_dir.iterdir()) == []


class TestStrategyFactory:
    """Test strategy selection."""

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (StrategyKind.FORM, FormUploadStrategy),
            (StrategyKind.TEMPFILE, TempFileUploadStrategy),
            (StrategyKind.STREAMING, StreamingUploadStrategy),
        ],
    )
    def test_creates_selected_strategy(self, kind, expected, config):
        strategy = create_upload_strategy(config.with_strategy(kind))
        assert isinstance(strategy, expected)
        assert strategy.kind == kind

    def test_with_strategy_rejects_unknown_kind(self, config):
        with pytest.raises(ConfigurationError) as exc_info:
            config.with_strategy("carrier-pigeon")
        assert exc_info.value.error_code == "INVALID_STRATEGY"

    def test_with_strategy_preserves_other_settings(self, config):
        switched = config.with_strategy("streaming")
        assert switched.upload_strategy == StrategyKind.STREAMING
        assert switched.max_file_size == config.max_file_size
        assert config.upload_strategy == StrategyKind.FORM
