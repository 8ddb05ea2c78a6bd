"""Upload orchestration: validation, quarantine, processing and persistence."""

import asyncio
import inspect
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from fastapi import Request

from core.quarantine import QuarantineStore
from document_processing.processors import ImageProcessor, StructureReport, StructuralValidator
from models.errors import (
    ConfigurationError,
    ContentValidationError,
    FilenameError,
    FileSizeError,
    MimeTypeError,
    NotFoundError,
    PostPersistError,
    SecurityError,
    StorageError,
    ValidationRejection,
)
from models.upload import (
    NormalizedFile,
    PersistedFileDescriptor,
    StrategyKind,
    UploadConfiguration,
    UploadOptions,
    UploadOutcome,
)
from storage.base import THUMBNAILS_DIR, StorageProvider
from storage.factory import create_storage_provider
from strategies.base import FIELDS_STATE_ATTR, UploadStrategy
from strategies.factory import create_upload_strategy
from validation.validators import HashGenerator, PreUploadValidator, SecurityValidator, normalize_mime

UPLOAD_RESULTS_STATE_ATTR = "upload_results"

# Inbound hint names: (query parameter, header, form field, metadata key)
DIRECTORY_HINT = ("directory", "X-Directory", "directory", "directory")
METADATA_HINTS = (
    ("relatedModel", "X-Related-Model", "relatedModel", "related_model"),
    ("relatedId", "X-Related-Id", "relatedId", "related_id"),
    ("documentType", "X-Document-Type", "documentType", "document_type"),
)

ERROR_CODES = {
    FileSizeError: "FILE_TOO_LARGE",
    FilenameError: "INVALID_FILENAME",
    MimeTypeError: "INVALID_FILE_TYPE",
    SecurityError: "SECURITY_CHECK_FAILED",
    ContentValidationError: "INVALID_CONTENT",
    PostPersistError: "POST_PERSIST_FAILED",
    NotFoundError: "NOT_FOUND",
    StorageError: "STORAGE_ERROR",
}

OPTIMIZABLE_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/bmp", "image/tiff"}
THUMBNAIL_IMAGE_TYPES = OPTIMIZABLE_IMAGE_TYPES | {"image/gif"}


class VirusScanner(ABC):
    """Hook point for a virus-signature engine."""

    @abstractmethod
    async def scan(self, file: NormalizedFile) -> Optional[str]:
        """Return the detected threat name, or None when the file is clean."""


def error_code_for(error: BaseException) -> str:
    for error_class in type(error).__mro__:
        if error_class in ERROR_CODES:
            return ERROR_CODES[error_class]
    return "UPLOAD_FAILED"


def resolve_hint(
    request: Request,
    query_key: str,
    header_key: str,
    form_key: Optional[str] = None,
    form_fields: Optional[Dict[str, str]] = None,
    default: Optional[str] = None,
) -> Optional[str]:
    """Read an inbound hint with precedence query, header, form field, default."""
    value = request.query_params.get(query_key)
    if value:
        return value
    value = request.headers.get(header_key)
    if value:
        return value
    if form_key and form_fields and form_fields.get(form_key):
        return form_fields[form_key]
    return default


class FileUploadManager:
    """
    Runs every upload of one channel through the full pipeline.

    States: received, pre-validated, security-checked, quarantined or
    content-validated, processed, persisted. Every rejected file is
    quarantined exactly once before its ValidationRejection propagates.
    """

    def __init__(
        self,
        config: UploadConfiguration,
        storage: Optional[StorageProvider] = None,
        security_validator: Optional[SecurityValidator] = None,
        structural_validator: Optional[StructuralValidator] = None,
        quarantine: Optional[QuarantineStore] = None,
        virus_scanner: Optional[VirusScanner] = None,
        strategy: Optional[UploadStrategy] = None,
    ):
        self.config = config
        self.storage = storage or create_storage_provider(config)
        self.security_validator = security_validator or SecurityValidator(config)
        self.structural_validator = structural_validator or StructuralValidator()
        self.quarantine = quarantine or QuarantineStore(str(config.quarantine_dir))
        self.virus_scanner = virus_scanner
        self.strategy = strategy or create_upload_strategy(config)
        self.pre_validator = PreUploadValidator(config)
        self.hash_generator = HashGenerator(config.hash_algorithm)
        self.image_processor = ImageProcessor()
        self._logger = logging.getLogger(__name__)

    async def upload(self, file: NormalizedFile, options: Optional[UploadOptions] = None) -> PersistedFileDescriptor:
        """
        Validate, process and persist a single file.

        Args:
            file: The normalized upload; consumed by this call
            options: Target directory, caller metadata, optimization and hook

        Returns:
            PersistedFileDescriptor: Where and how the file was stored

        Raises:
            ValidationRejection: If the file is rejected; it has been quarantined
            StorageError: If persisting fails
            PostPersistError: If the post-persist hook fails after storing
        """
        options = options or UploadOptions()

        try:
            self.pre_validator.validate(file)
        except ValidationRejection as e:
            raise self._reject(file, e)

        result = self.security_validator.validate(file)
        if not result.safe:
            raise self._reject(file, SecurityError(result.reason, filename=file.filename, score=result.score))

        await self._scan_for_viruses(file)

        mime_type = normalize_mime(result.detected_mime_type or file.mime_type)
        report = StructureReport()
        if self.config.enable_content_validation:
            try:
                report = self.structural_validator.validate(file.content, mime_type, file.filename)
            except ContentValidationError as e:
                raise self._reject(file, e)

        processed, thumbnail = self._process(file, mime_type, options)

        file_hash = self.hash_generator.generate_hash(processed.content)
        storage_metadata = dict(options.metadata)
        storage_metadata["hash"] = file_hash
        if options.directory:
            storage_metadata["directory"] = options.directory
        stored = await self.storage.upload(processed, storage_metadata)
        thumbnail_url = await self._store_thumbnail(processed, thumbnail, file_hash)

        descriptor = PersistedFileDescriptor(
            id=file.unique_id,
            filename=stored.filename,
            original_name=file.filename,
            directory=stored.directory,
            url=stored.url,
            size=stored.size,
            hash=file_hash,
            mime_type=processed.mime_type,
            detected_mime_type=result.detected_mime_type,
            security_score=result.score,
            uploaded_at=datetime.now(timezone.utc),
            storage_type=self.storage.kind.value,
            thumbnail_url=thumbnail_url,
            warnings=result.warnings + report.warnings,
            metadata={**options.metadata, **report.metadata},
        )
        self._logger.info(
            f"Uploaded {file.filename} to {descriptor.directory}/{descriptor.filename} "
            f"on channel '{self.config.name}' (score {result.score})"
        )

        if options.post_persist_hook is not None:
            await self._run_post_persist_hook(options.post_persist_hook, descriptor)
        return descriptor

    def middleware(self, options: Optional[UploadOptions] = None) -> Callable[[Request], Awaitable[List[UploadOutcome]]]:
        """
        Build a request handler that uploads every file in the request body.

        The returned coroutine function parses and extracts with the active
        strategy, uploads the files concurrently and stores the ordered
        outcomes on ``request.state.upload_results``. It is usable as a
        FastAPI dependency.
        """
        base_options = options or UploadOptions()

        async def handle(request: Request) -> List[UploadOutcome]:
            await self.strategy.parse_request(request, base_options.field_config)
            form_fields = getattr(request.state, FIELDS_STATE_ATTR, None) or {}
            files = await self.strategy.extract_files(request)
            call_options = self._options_for_request(request, base_options, form_fields)

            results = await asyncio.gather(
                *(self.upload(file, call_options) for file in files), return_exceptions=True
            )
            outcomes = [self._outcome(file, result) for file, result in zip(files, results)]
            setattr(request.state, UPLOAD_RESULTS_STATE_ATTR, outcomes)
            return outcomes

        return handle

    # --- pipeline steps ---

    def _reject(self, file: NormalizedFile, error: ValidationRejection) -> ValidationRejection:
        if error.filename is None:
            error.filename = file.filename
        try:
            record = self.quarantine.quarantine(file, error.reason)
            error.quarantine_path = record.quarantine_path
        except StorageError as e:
            self._logger.error(f"Rejected file {file.filename} could not be quarantined: {e}")
        self._logger.warning(f"Upload rejected on channel '{self.config.name}': {file.filename}: {error.reason}")
        return error

    async def _scan_for_viruses(self, file: NormalizedFile) -> None:
        if not self.config.enable_virus_scan:
            return
        if self.virus_scanner is None:
            self._logger.info(f"Virus scanning enabled but no scanner installed; {file.filename} not scanned")
            return
        threat = await self.virus_scanner.scan(file)
        if threat:
            raise self._reject(file, SecurityError(f"Virus detected: {threat}", filename=file.filename, score=0))

    def _process(
        self, file: NormalizedFile, mime_type: str, options: UploadOptions
    ) -> Tuple[NormalizedFile, Optional[bytes]]:
        processed = file
        if options.optimize and mime_type in OPTIMIZABLE_IMAGE_TYPES:
            try:
                content = self.image_processor.optimize(file.content)
                base = os.path.splitext(file.filename)[0]
                processed = replace(
                    file, content=content, size=len(content), mime_type="image/jpeg", filename=f"{base}.jpg"
                )
            except (OSError, ValueError) as e:
                self._logger.warning(f"Image optimization failed for {file.filename}, storing original: {e}")

        thumbnail = None
        if self.config.generate_thumbnails and mime_type in THUMBNAIL_IMAGE_TYPES:
            try:
                thumbnail = self.image_processor.make_thumbnail(processed.content)
            except (OSError, ValueError) as e:
                self._logger.warning(f"Thumbnail generation failed for {file.filename}: {e}")
        return processed, thumbnail

    async def _store_thumbnail(self, file: NormalizedFile, thumbnail: Optional[bytes], file_hash: str) -> Optional[str]:
        if thumbnail is None:
            return None
        base = os.path.splitext(file.filename)[0]
        thumb_file = NormalizedFile(
            filename=f"thumb_{base}.jpg", mime_type="image/jpeg", size=len(thumbnail), content=thumbnail
        )
        try:
            stored = await self.storage.upload(thumb_file, {"directory": THUMBNAILS_DIR, "hash": file_hash})
        except StorageError as e:
            self._logger.warning(f"Thumbnail for {file.filename} could not be stored: {e}")
            return None
        return stored.url

    async def _run_post_persist_hook(self, hook, descriptor: PersistedFileDescriptor) -> None:
        try:
            result = hook(descriptor)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._logger.error(
                f"Post-persist hook failed for {descriptor.directory}/{descriptor.filename}; stored bytes kept: {e}"
            )
            raise PostPersistError(
                f"Post-persist hook failed: {e}", filename=descriptor.original_name, descriptor=descriptor
            ) from e

    # --- middleware helpers ---

    def _options_for_request(
        self, request: Request, options: UploadOptions, form_fields: Dict[str, str]
    ) -> UploadOptions:
        query_key, header_key, form_key, _ = DIRECTORY_HINT
        directory = options.directory or resolve_hint(request, query_key, header_key, form_key, form_fields)

        metadata: Dict[str, Any] = {}
        for query_key, header_key, form_key, metadata_key in METADATA_HINTS:
            value = resolve_hint(request, query_key, header_key, form_key, form_fields)
            if value:
                metadata[metadata_key] = value
        metadata.update(options.metadata)
        user_id = getattr(request.state, "user_id", None)
        if user_id and "uploaded_by" not in metadata:
            metadata["uploaded_by"] = user_id

        return replace(options, directory=directory, metadata=metadata)

    def _outcome(self, file: NormalizedFile, result: Union[PersistedFileDescriptor, BaseException]) -> UploadOutcome:
        if isinstance(result, PersistedFileDescriptor):
            return UploadOutcome(filename=file.filename, success=True, descriptor=result)
        if isinstance(result, (ValidationRejection, StorageError, PostPersistError)):
            return UploadOutcome(
                filename=file.filename, success=False, error=str(result), error_code=error_code_for(result)
            )
        if isinstance(result, Exception):
            self._logger.error(
                f"Unexpected failure uploading {file.filename} on channel '{self.config.name}': {result}",
                exc_info=result,
            )
            return UploadOutcome(
                filename=file.filename, success=False, error=str(result), error_code=error_code_for(result)
            )
        raise result


class UploadManagerRegistry:
    """
    One FileUploadManager per channel, with strategy hot-swap.

    Entries are replaced whole under a lock; a request that already holds a
    manager keeps using it until it finishes.
    """

    def __init__(self, managers: Optional[Dict[str, FileUploadManager]] = None):
        self._managers: Dict[str, FileUploadManager] = dict(managers or {})
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_configs(
        cls, configs: Dict[str, UploadConfiguration], virus_scanner: Optional[VirusScanner] = None
    ) -> "UploadManagerRegistry":
        managers = {
            name: FileUploadManager(config, virus_scanner=virus_scanner) for name, config in configs.items()
        }
        return cls(managers)

    def channels(self) -> List[str]:
        with self._lock:
            return list(self._managers.keys())

    def get(self, channel: str) -> FileUploadManager:
        """
        Raises:
            ConfigurationError: If the channel is unknown
        """
        with self._lock:
            manager = self._managers.get(channel)
        if manager is None:
            raise ConfigurationError(f"Unknown upload channel '{channel}'", error_code="UNKNOWN_CHANNEL")
        return manager

    def register(self, channel: str, manager: FileUploadManager) -> None:
        with self._lock:
            self._managers[channel] = manager

    def switch_strategy(self, channel: str, kind: Union[str, StrategyKind]) -> FileUploadManager:
        """
        Rebuild a channel's manager around another parsing strategy.

        The new manager shares the old one's storage provider, quarantine
        and validators; only the configuration copy and the strategy change.

        Raises:
            ConfigurationError: If the channel or strategy kind is unknown
        """
        with self._lock:
            current = self._managers.get(channel)
            if current is None:
                raise ConfigurationError(f"Unknown upload channel '{channel}'", error_code="UNKNOWN_CHANNEL")
            config = current.config.with_strategy(kind)
            manager = FileUploadManager(
                config,
                storage=current.storage,
                security_validator=current.security_validator,
                structural_validator=current.structural_validator,
                quarantine=current.quarantine,
                virus_scanner=current.virus_scanner,
            )
            self._managers[channel] = manager

        self._logger.info(f"Channel '{channel}' switched to the {config.upload_strategy.value} strategy")
        return manager
