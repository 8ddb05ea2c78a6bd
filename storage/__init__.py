"""Interchangeable storage backends."""

from .base import StorageProvider, determine_directory, generate_unique_filename
from .cloud import GCSStorageProvider, MinioStorageProvider, S3StorageProvider
from .factory import create_storage_provider
from .local import LocalStorageProvider

__all__ = [
    "StorageProvider",
    "LocalStorageProvider",
    "S3StorageProvider",
    "MinioStorageProvider",
    "GCSStorageProvider",
    "create_storage_provider",
    "determine_directory",
    "generate_unique_filename",
]
