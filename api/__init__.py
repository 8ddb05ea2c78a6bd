"""API endpoints and route handlers."""

from .endpoints import (
    delete_file,
    download_file,
    preview_file,
    restore_file,
    set_cleanup_managers,
    set_file_registry,
    set_upload_registry,
    upload_multiple,
    upload_property_documents,
    upload_single,
)

__all__ = [
    "upload_single",
    "upload_multiple",
    "upload_property_documents",
    "download_file",
    "preview_file",
    "delete_file",
    "restore_file",
    "set_upload_registry",
    "set_file_registry",
    "set_cleanup_managers",
]
