"""Core configuration and utility functions."""

import logging
import os
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from core.storage_cleanup import CleanupPolicy
from core.upload_manager import UploadManagerRegistry
from error_handling.handlers import ErrorHandler, ErrorHandlingMiddleware
from models.errors import ConfigurationError
from models.upload import (
    DEFAULT_BLOCKED_EXTENSIONS,
    CloudStorageSettings,
    StorageKind,
    StrategyKind,
    UploadConfiguration,
)

# Load environment variables
load_dotenv()

# Upload configuration constants
UPLOAD_ROOT = "./uploads"
PUBLIC_URL_PREFIX = "/uploads"
STORAGE_TYPE = "local"  # property channel only; the other channels store locally
UPLOAD_STRATEGY = "form"
HASH_ALGORITHM = "sha256"
MAX_FILE_SIZE = 100 * 1024 * 1024  # 100MB, general channel
MAX_IMAGE_SIZE = 10 * 1024 * 1024  # 10MB
MAX_DOCUMENT_SIZE = 50 * 1024 * 1024  # 50MB
MAX_FILES_PER_REQUEST = 10

IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
})
PROPERTY_MIME_TYPES = frozenset({"application/pdf", "image/jpeg", "image/png"})

# Cloud storage defaults
S3_REGION = "us-east-1"
CLOUD_KEY_PREFIX = "uploads"
GCS_ENDPOINT_URL = "https://storage.googleapis.com"

# Cleanup configuration
TEMP_RETENTION_HOURS = 24
TRASH_RETENTION_DAYS = 30
QUARANTINE_RETENTION_DAYS = 90
CLEANUP_INTERVAL_MINUTES = 60

# Channels a request may select with uploadType / X-Upload-Type
CHANNELS = ("general", "image", "document", "property")
DEFAULT_CHANNEL = "general"


class AppConfig:
    """Application configuration settings."""

    def __init__(self):
        self.upload_root = os.getenv("UPLOAD_ROOT", UPLOAD_ROOT)
        self.public_url_prefix = os.getenv("PUBLIC_URL_PREFIX", PUBLIC_URL_PREFIX)
        self.storage_type = self._parse_storage_type(os.getenv("STORAGE_TYPE", STORAGE_TYPE))
        self.upload_strategy = self._parse_strategy(os.getenv("UPLOAD_STRATEGY", UPLOAD_STRATEGY))
        self.hash_algorithm = os.getenv("HASH_ALGORITHM", HASH_ALGORITHM)
        self.max_file_size = int(os.getenv("MAX_FILE_SIZE", MAX_FILE_SIZE))
        self.max_files_per_request = int(os.getenv("MAX_FILES_PER_REQUEST", MAX_FILES_PER_REQUEST))
        self.enable_virus_scan = os.getenv("ENABLE_VIRUS_SCAN", "false").lower() == "true"
        self.blocked_extensions = (
            self._parse_extensions(os.getenv("BLOCKED_EXTENSIONS", "")) or DEFAULT_BLOCKED_EXTENSIONS
        )
        self.malicious_hashes_file = os.getenv("MALICIOUS_HASHES_FILE")
        self.malicious_hashes = self._load_malicious_hashes(self.malicious_hashes_file)
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # Cloud storage configuration
        self.s3_bucket = os.getenv("S3_BUCKET")
        self.s3_region = os.getenv("S3_REGION", S3_REGION)
        self.s3_endpoint_url = os.getenv("S3_ENDPOINT_URL")
        self.aws_access_key_id = os.getenv("AWS_ACCESS_KEY_ID")
        self.aws_secret_access_key = os.getenv("AWS_SECRET_ACCESS_KEY")
        self.cloud_key_prefix = os.getenv("CLOUD_KEY_PREFIX", CLOUD_KEY_PREFIX)
        self.cloud_public_base_url = os.getenv("CLOUD_PUBLIC_BASE_URL")
        self.minio_endpoint = os.getenv("MINIO_ENDPOINT")
        self.minio_bucket = os.getenv("MINIO_BUCKET")
        self.minio_access_key = os.getenv("MINIO_ACCESS_KEY")
        self.minio_secret_key = os.getenv("MINIO_SECRET_KEY")
        self.gcs_bucket = os.getenv("GCS_BUCKET")
        self.gcs_hmac_access_key = os.getenv("GCS_HMAC_ACCESS_KEY")
        self.gcs_hmac_secret = os.getenv("GCS_HMAC_SECRET")

        # Cleanup configuration
        self.temp_retention_hours = int(os.getenv("TEMP_RETENTION_HOURS", TEMP_RETENTION_HOURS))
        self.trash_retention_days = int(os.getenv("TRASH_RETENTION_DAYS", TRASH_RETENTION_DAYS))
        self.quarantine_retention_days = int(os.getenv("QUARANTINE_RETENTION_DAYS", QUARANTINE_RETENTION_DAYS))
        self.cleanup_interval_minutes = int(os.getenv("CLEANUP_INTERVAL_MINUTES", CLEANUP_INTERVAL_MINUTES))

    def _parse_storage_type(self, value: str) -> StorageKind:
        try:
            return StorageKind(value.strip().lower())
        except ValueError as e:
            raise ConfigurationError(f"Unknown STORAGE_TYPE '{value}'", error_code="INVALID_STORAGE") from e

    def _parse_strategy(self, value: str) -> StrategyKind:
        try:
            return StrategyKind(value.strip().lower())
        except ValueError as e:
            raise ConfigurationError(f"Unknown UPLOAD_STRATEGY '{value}'", error_code="INVALID_STRATEGY") from e

    def _parse_extensions(self, extensions_str: str) -> Optional[FrozenSet[str]]:
        """Parse comma-separated file extensions from environment variable."""
        if not extensions_str:
            return None
        return frozenset(ext.strip().lower().lstrip(".") for ext in extensions_str.split(",") if ext.strip())

    def _load_malicious_hashes(self, path: Optional[str]) -> FrozenSet[str]:
        """Read one hex digest per line; blank lines and ``#`` comments are skipped."""
        if not path:
            return frozenset()
        hashes: Set[str] = set()
        try:
            with open(path, "r", encoding="utf-8") as hash_file:
                for line in hash_file:
                    line = line.split("#", 1)[0].strip().lower()
                    if line:
                        hashes.add(line)
        except OSError as e:
            raise ConfigurationError(f"Cannot read MALICIOUS_HASHES_FILE '{path}': {e}") from e
        logging.info(f"Loaded {len(hashes)} malicious hashes from {path}")
        return frozenset(hashes)

    def get_cloud_settings(self, storage_type: StorageKind) -> Optional[CloudStorageSettings]:
        """Cloud connection settings for a storage type, None for local or when unconfigured."""
        if storage_type == StorageKind.S3 and self.s3_bucket:
            return CloudStorageSettings(
                bucket=self.s3_bucket,
                region=self.s3_region,
                endpoint_url=self.s3_endpoint_url,
                access_key=self.aws_access_key_id,
                secret_key=self.aws_secret_access_key,
                prefix=self.cloud_key_prefix,
                public_base_url=self.cloud_public_base_url,
            )
        if storage_type == StorageKind.MINIO and self.minio_bucket:
            return CloudStorageSettings(
                bucket=self.minio_bucket,
                endpoint_url=self.minio_endpoint,
                access_key=self.minio_access_key,
                secret_key=self.minio_secret_key,
                prefix=self.cloud_key_prefix,
                public_base_url=self.cloud_public_base_url,
            )
        if storage_type == StorageKind.GCS and self.gcs_bucket:
            return CloudStorageSettings(
                bucket=self.gcs_bucket,
                region="auto",
                endpoint_url=GCS_ENDPOINT_URL,
                access_key=self.gcs_hmac_access_key,
                secret_key=self.gcs_hmac_secret,
                prefix=self.cloud_key_prefix,
                public_base_url=self.cloud_public_base_url,
            )
        return None

    def get_channel_configs(self) -> Dict[str, UploadConfiguration]:
        """Get the upload channel configurations."""
        common = dict(
            max_files=self.max_files_per_request,
            blocked_extensions=self.blocked_extensions,
            hash_algorithm=self.hash_algorithm,
            upload_root=self.upload_root,
            public_url_prefix=self.public_url_prefix,
            malicious_hashes=self.malicious_hashes,
        )
        return {
            "general": UploadConfiguration(
                name="general",
                max_file_size=self.max_file_size,
                enable_virus_scan=self.enable_virus_scan,
                upload_strategy=self.upload_strategy,
                **common,
            ),
            "image": UploadConfiguration(
                name="image",
                max_file_size=MAX_IMAGE_SIZE,
                allowed_mime_types=IMAGE_MIME_TYPES,
                generate_thumbnails=True,
                upload_strategy=self.upload_strategy,
                **common,
            ),
            "document": UploadConfiguration(
                name="document",
                max_file_size=MAX_DOCUMENT_SIZE,
                allowed_mime_types=DOCUMENT_MIME_TYPES,
                enable_virus_scan=True,
                upload_strategy=StrategyKind.TEMPFILE,
                **common,
            ),
            "property": UploadConfiguration(
                name="property",
                max_file_size=MAX_DOCUMENT_SIZE,
                allowed_mime_types=PROPERTY_MIME_TYPES,
                enable_virus_scan=True,
                upload_strategy=self.upload_strategy,
                storage_type=self.storage_type,
                cloud=self.get_cloud_settings(self.storage_type),
                **common,
            ),
        }

    def get_cleanup_policy(self) -> CleanupPolicy:
        """Get storage cleanup policy."""
        return CleanupPolicy(
            temp_retention_hours=self.temp_retention_hours,
            trash_retention_hours=self.trash_retention_days * 24,
            quarantine_retention_hours=self.quarantine_retention_days * 24,
            cleanup_interval_minutes=self.cleanup_interval_minutes,
        )


def create_fastapi_app() -> FastAPI:
    """Create and configure FastAPI application instance."""
    app = FastAPI(
        title="Deed Vault Uploads",
        description="File ingestion and content-security pipeline for title-deed documents",
        version="1.0.0",
    )

    return app


async def attach_caller_identity(request: Request, call_next):
    """Stand-in for the external auth layer: expose X-User-Id as request.state.user_id."""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        request.state.user_id = user_id
    return await call_next(request)


def setup_middleware(app: FastAPI, config: AppConfig) -> None:
    """Configure FastAPI middleware."""
    app.middleware("http")(attach_caller_identity)

    # Add error handling middleware
    error_handler = ErrorHandler()
    app.add_middleware(ErrorHandlingMiddleware, error_handler=error_handler)


def build_upload_registry(config: AppConfig) -> UploadManagerRegistry:
    """Create one upload manager per channel."""
    Path(config.upload_root).mkdir(parents=True, exist_ok=True)
    return UploadManagerRegistry.from_configs(config.get_channel_configs())


def validate_environment() -> None:
    """Validate that cloud storage selections come with their bucket settings."""
    # Skip validation in test environments
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("CI"):
        return

    required_vars = {
        "s3": ["S3_BUCKET"],
        "minio": ["MINIO_ENDPOINT", "MINIO_BUCKET"],
        "gcs": ["GCS_BUCKET", "GCS_HMAC_ACCESS_KEY", "GCS_HMAC_SECRET"],
    }.get(os.getenv("STORAGE_TYPE", STORAGE_TYPE).lower(), [])
    missing_vars = [var for var in required_vars if not os.getenv(var)]

    if missing_vars:
        raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    # Suppress some noisy loggers
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("python_multipart").setLevel(logging.WARNING)
