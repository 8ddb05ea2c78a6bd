"""Maps a channel's storage selector to a provider instance."""

import logging
from typing import Callable, Dict

from models.errors import ConfigurationError
from models.upload import StorageKind, UploadConfiguration
from storage.base import StorageProvider
from storage.cloud import GCSStorageProvider, MinioStorageProvider, S3StorageProvider
from storage.local import LocalStorageProvider


def _create_local(config: UploadConfiguration) -> StorageProvider:
    return LocalStorageProvider(config.upload_root, config.public_url_prefix)


def _cloud_factory(provider_class) -> Callable[[UploadConfiguration], StorageProvider]:
    def create(config: UploadConfiguration) -> StorageProvider:
        if config.cloud is None:
            raise ConfigurationError(
                f"Channel '{config.name}' selects {config.storage_type.value} storage without cloud settings",
                error_code="MISSING_CLOUD_SETTINGS",
            )
        return provider_class(config.cloud)

    return create


STORAGE_PROVIDERS: Dict[StorageKind, Callable[[UploadConfiguration], StorageProvider]] = {
    StorageKind.LOCAL: _create_local,
    StorageKind.S3: _cloud_factory(S3StorageProvider),
    StorageKind.MINIO: _cloud_factory(MinioStorageProvider),
    StorageKind.GCS: _cloud_factory(GCSStorageProvider),
}


def create_storage_provider(config: UploadConfiguration) -> StorageProvider:
    """
    Build the storage provider a channel configuration selects.

    Raises:
        ConfigurationError: If the selector is unknown or cloud settings are missing
    """
    factory = STORAGE_PROVIDERS.get(config.storage_type)
    if factory is None:
        raise ConfigurationError(f"Unknown storage type '{config.storage_type}'", error_code="INVALID_STORAGE")
    provider = factory(config)
    logging.info(f"Created {config.storage_type.value} storage provider for channel '{config.name}'")
    return provider
