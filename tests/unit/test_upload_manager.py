"""
Unit tests for the upload manager pipeline, its request middleware and the
per-channel registry.
"""

import hashlib
import json
from unittest.mock import AsyncMock, patch

import pytest

from core.quarantine import QUARANTINE_LOG
from core.upload_manager import (
    UPLOAD_RESULTS_STATE_ATTR,
    FileUploadManager,
    UploadManagerRegistry,
    VirusScanner,
    error_code_for,
)
from models.errors import (
    ConfigurationError,
    ContentValidationError,
    FileSizeError,
    PostPersistError,
    SecurityError,
    StorageError,
)
from models.upload import FieldConfig, StrategyKind, UploadConfiguration, UploadOptions
from strategies import StreamingUploadStrategy
from tests.utils.fixtures import make_png, make_text_content
from tests.utils.helpers import StaticSniffer, build_multipart, make_file, make_request
from validation.validators import SecurityValidator


class FlaggingScanner(VirusScanner):
    """Reports every file as infected."""

    async def scan(self, file):
        return "Eicar-Test-Signature"


def manager_for(config: UploadConfiguration, mime_type: str = "text/plain", **kwargs) -> FileUploadManager:
    validator = SecurityValidator(config, sniffer=StaticSniffer(mime_type))
    return FileUploadManager(config, security_validator=validator, **kwargs)


def quarantine_log(config: UploadConfiguration):
    log_path = config.quarantine_dir / QUARANTINE_LOG
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text().splitlines() if line.strip()]


class TestFileUploadManager:
    """Test the single-file pipeline."""

    @pytest.mark.asyncio
    async def test_clean_upload_is_persisted(self, channel_config, text_file):
        manager = manager_for(channel_config)

        descriptor = await manager.upload(text_file, UploadOptions(metadata={"document_type": "deed"}))

        assert descriptor.id == text_file.unique_id
        assert descriptor.original_name == "deed_summary.txt"
        assert descriptor.directory == "general"
        assert descriptor.url == f"/uploads/general/{descriptor.filename}"
        assert descriptor.hash == hashlib.sha256(text_file.content).hexdigest()
        assert descriptor.hash[:8] in descriptor.filename
        assert descriptor.security_score == 100
        assert descriptor.storage_type == "local"
        assert descriptor.metadata == {"document_type": "deed"}
        assert await manager.storage.download(descriptor.filename, "general") == text_file.content
        assert quarantine_log(channel_config) == []

    @pytest.mark.asyncio
    async def test_explicit_directory(self, channel_config, text_file):
        descriptor = await manager_for(channel_config).upload(text_file, UploadOptions(directory="properties/42"))
        assert descriptor.directory == "properties/42"

    @pytest.mark.asyncio
    async def test_configured_hash_algorithm(self, tmp_path, text_file):
        config = UploadConfiguration(upload_root=str(tmp_path), hash_algorithm="md5")
        descriptor = await manager_for(config).upload(text_file)
        assert descriptor.hash == hashlib.md5(text_file.content).hexdigest()

    @pytest.mark.asyncio
    async def test_oversized_file_is_quarantined(self, tmp_path):
        config = UploadConfiguration(upload_root=str(tmp_path), max_file_size=16)
        manager = manager_for(config)

        with pytest.raises(FileSizeError) as exc_info:
            await manager.upload(make_file("big.txt", b"x" * 64))

        error = exc_info.value
        assert error.filename == "big.txt"
        assert error.quarantine_path is not None
        records = quarantine_log(config)
        assert len(records) == 1
        assert records[0]["filename"] == "big.txt"
        assert records[0]["size"] == 64
        assert records[0]["quarantine_path"] == error.quarantine_path

    @pytest.mark.asyncio
    async def test_security_failure_is_quarantined_with_score(self, channel_config):
        manager = manager_for(channel_config, mime_type="application/x-dosexec")

        with pytest.raises(SecurityError) as exc_info:
            await manager.upload(make_file("plan.png", b"MZ\x90\x00payload", "image/png"))

        assert exc_info.value.score == 60
        assert len(quarantine_log(channel_config)) == 1
        stats = await manager.storage.get_stats()
        assert stats.directories["images"]["files"] == 0

    @pytest.mark.asyncio
    async def test_malformed_pdf_fails_structural_validation(self, channel_config):
        manager = manager_for(channel_config, mime_type="application/pdf")

        with pytest.raises(ContentValidationError):
            await manager.upload(make_file("deed.pdf", b"%PDF-1.4\nnot really a pdf", "application/pdf"))
        assert quarantine_log(channel_config)[0]["filename"] == "deed.pdf"

    @pytest.mark.asyncio
    async def test_structural_validation_can_be_disabled(self, tmp_path):
        config = UploadConfiguration(upload_root=str(tmp_path), enable_content_validation=False)
        manager = manager_for(config, mime_type="application/pdf")
        descriptor = await manager.upload(make_file("deed.pdf", b"%PDF-1.4\nnot really a pdf", "application/pdf"))
        assert descriptor.directory == "documents"

    @pytest.mark.asyncio
    async def test_virus_scanner_rejection(self, tmp_path, text_file):
        config = UploadConfiguration(upload_root=str(tmp_path), enable_virus_scan=True)
        manager = manager_for(config, virus_scanner=FlaggingScanner())

        with pytest.raises(SecurityError, match="Virus detected: Eicar-Test-Signature"):
            await manager.upload(text_file)
        assert len(quarantine_log(config)) == 1

    @pytest.mark.asyncio
    async def test_virus_scan_without_scanner_is_skipped(self, tmp_path, text_file):
        config = UploadConfiguration(upload_root=str(tmp_path), enable_virus_scan=True)
        descriptor = await manager_for(config).upload(text_file)
        assert descriptor.security_score == 100

    @pytest.mark.asyncio
    async def test_quarantine_failure_still_rejects(self, tmp_path):
        config = UploadConfiguration(upload_root=str(tmp_path), max_file_size=4)
        manager = manager_for(config)

        with patch.object(manager.quarantine, "quarantine", side_effect=StorageError("disk full")):
            with pytest.raises(FileSizeError) as exc_info:
                await manager.upload(make_file("big.txt", b"x" * 10))
        assert exc_info.value.quarantine_path is None

    @pytest.mark.asyncio
    async def test_sync_post_persist_hook(self, channel_config, text_file):
        seen = []
        descriptor = await manager_for(channel_config).upload(
            text_file, UploadOptions(post_persist_hook=seen.append)
        )
        assert seen == [descriptor]

    @pytest.mark.asyncio
    async def test_async_post_persist_hook(self, channel_config, text_file):
        hook = AsyncMock()
        descriptor = await manager_for(channel_config).upload(text_file, UploadOptions(post_persist_hook=hook))
        hook.assert_awaited_once_with(descriptor)

    @pytest.mark.asyncio
    async def test_failing_hook_keeps_stored_bytes(self, channel_config, text_file):
        manager = manager_for(channel_config)

        def broken_hook(descriptor):
            raise RuntimeError("database unavailable")

        with pytest.raises(PostPersistError) as exc_info:
            await manager.upload(text_file, UploadOptions(post_persist_hook=broken_hook))

        descriptor = exc_info.value.descriptor
        assert descriptor is not None
        assert await manager.storage.exists(descriptor.filename, descriptor.directory)
        assert error_code_for(exc_info.value) == "POST_PERSIST_FAILED"

    @pytest.mark.asyncio
    async def test_thumbnail_generation(self, tmp_path):
        config = UploadConfiguration(upload_root=str(tmp_path), generate_thumbnails=True)
        manager = manager_for(config, mime_type="image/png")

        descriptor = await manager.upload(make_file("plan.png", make_png((400, 200)), "image/png"))

        assert descriptor.directory == "images"
        assert descriptor.thumbnail_url.startswith("/uploads/thumbnails/thumb_plan_")
        assert descriptor.metadata["width"] == 400

    @pytest.mark.asyncio
    async def test_image_optimization_stores_jpeg(self, channel_config):
        manager = manager_for(channel_config, mime_type="image/png")
        original = make_png((300, 300), mode="RGBA")

        descriptor = await manager.upload(make_file("plan.png", original, "image/png"), UploadOptions(optimize=True))

        assert descriptor.mime_type == "image/jpeg"
        assert descriptor.filename.endswith(".jpg")
        stored = await manager.storage.download(descriptor.filename, descriptor.directory)
        assert stored.startswith(b"\xff\xd8\xff")
        assert descriptor.hash == hashlib.sha256(stored).hexdigest()


class TestUploadMiddleware:
    """Test the request-level handler built by ``middleware``."""

    @pytest.mark.asyncio
    async def test_batch_keeps_order_and_isolates_failures(self, tmp_path):
        config = UploadConfiguration(upload_root=str(tmp_path), max_file_size=256)
        manager = manager_for(config)
        body, content_type = build_multipart(
            [
                ("files", "deed1.txt", make_text_content(1), "text/plain"),
                ("files", "oversized.txt", b"x" * 2048, "text/plain"),
                ("files", "deed3.txt", make_text_content(2), "text/plain"),
            ]
        )
        request = make_request(body, content_type)

        outcomes = await manager.middleware(UploadOptions(field_config=FieldConfig.array("files")))(request)

        assert [outcome.filename for outcome in outcomes] == ["deed1.txt", "oversized.txt", "deed3.txt"]
        assert [outcome.success for outcome in outcomes] == [True, False, True]
        assert outcomes[1].error_code == "FILE_TOO_LARGE"
        assert "exceeds maximum allowed size" in outcomes[1].error
        assert getattr(request.state, UPLOAD_RESULTS_STATE_ATTR) == outcomes
        assert len(quarantine_log(config)) == 1

    @pytest.mark.asyncio
    async def test_hints_from_query_headers_and_form(self, channel_config):
        manager = manager_for(channel_config)
        body, content_type = build_multipart(
            [("file", "deed.txt", make_text_content(), "text/plain")],
            fields={"documentType": "title_deed", "relatedId": "from-form"},
        )
        request = make_request(
            body,
            content_type,
            headers={"X-Directory": "properties/42", "X-Related-Id": "42"},
            query={"relatedModel": "property"},
        )
        request.state.user_id = "admin-7"

        outcomes = await manager.middleware()(request)
        descriptor = outcomes[0].descriptor

        assert descriptor.directory == "properties/42"
        assert descriptor.metadata["related_model"] == "property"
        assert descriptor.metadata["related_id"] == "42"
        assert descriptor.metadata["document_type"] == "title_deed"
        assert descriptor.metadata["uploaded_by"] == "admin-7"

    @pytest.mark.asyncio
    async def test_no_files_gives_no_outcomes(self, channel_config):
        request = make_request(b"{}", "application/json")
        assert await manager_for(channel_config).middleware()(request) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_its_file(self, tmp_path):
        class UnreachableScanner(VirusScanner):
            async def scan(self, file):
                if file.filename == "deed2.txt":
                    raise ConnectionError("scanner daemon unreachable")
                return None

        config = UploadConfiguration(name="general", upload_root=str(tmp_path / "uploads"), enable_virus_scan=True)
        manager = manager_for(config, virus_scanner=UnreachableScanner())
        body, content_type = build_multipart(
            [("files", f"deed{i}.txt", make_text_content(lines=i), "text/plain") for i in (1, 2, 3)]
        )

        outcomes = await manager.middleware()(make_request(body, content_type))

        assert [outcome.filename for outcome in outcomes] == ["deed1.txt", "deed2.txt", "deed3.txt"]
        assert [outcome.success for outcome in outcomes] == [True, False, True]
        assert outcomes[1].error_code == "UPLOAD_FAILED"
        assert "scanner daemon unreachable" in outcomes[1].error
        assert outcomes[0].descriptor.directory == outcomes[2].descriptor.directory

    @pytest.mark.asyncio
    async def test_unexpected_storage_failure_becomes_outcome(self, channel_config):
        manager = manager_for(channel_config)
        body, content_type = build_multipart([("file", "deed.txt", make_text_content(), "text/plain")])
        request = make_request(body, content_type)

        with patch.object(manager.storage, "upload", side_effect=RuntimeError("boom")):
            outcomes = await manager.middleware()(request)

        assert outcomes[0].success is False
        assert outcomes[0].error_code == "UPLOAD_FAILED"

    @pytest.mark.asyncio
    async def test_storage_errors_become_outcomes(self, channel_config):
        manager = manager_for(channel_config)
        body, content_type = build_multipart([("file", "deed.txt", make_text_content(), "text/plain")])
        request = make_request(body, content_type)

        with patch.object(manager.storage, "upload", side_effect=StorageError("disk full")):
            outcomes = await manager.middleware()(request)
        assert outcomes[0].success is False
        assert outcomes[0].error_code == "STORAGE_ERROR"


class TestUploadManagerRegistry:
    """Test per-channel managers and strategy hot-swap."""

    @pytest.fixture
    def registry(self, tmp_path) -> UploadManagerRegistry:
        return UploadManagerRegistry.from_configs(
            {
                "general": UploadConfiguration(name="general", upload_root=str(tmp_path)),
                "image": UploadConfiguration(name="image", upload_root=str(tmp_path), max_file_size=1024),
            }
        )

    def test_channels(self, registry):
        assert registry.channels() == ["general", "image"]
        assert registry.get("image").config.max_file_size == 1024

    def test_unknown_channel(self, registry):
        with pytest.raises(ConfigurationError) as exc_info:
            registry.get("video")
        assert exc_info.value.error_code == "UNKNOWN_CHANNEL"

    def test_switch_strategy_replaces_manager(self, registry):
        before = registry.get("general")

        after = registry.switch_strategy("general", "streaming")

        assert registry.get("general") is after
        assert isinstance(after.strategy, StreamingUploadStrategy)
        assert after.config.upload_strategy == StrategyKind.STREAMING
        assert after.storage is before.storage
        assert after.quarantine is before.quarantine
        assert after.security_validator is before.security_validator
        # The old manager is untouched for requests already holding it
        assert before.config.upload_strategy == StrategyKind.FORM

    def test_switch_to_unknown_strategy(self, registry):
        with pytest.raises(ConfigurationError) as exc_info:
            registry.switch_strategy("general", "carrier-pigeon")
        assert exc_info.value.error_code == "INVALID_STRATEGY"
        assert registry.get("general").config.upload_strategy == StrategyKind.FORM

    def test_switch_unknown_channel(self, registry):
        with pytest.raises(ConfigurationError):
            registry.switch_strategy("video", "form")
