"""Core configuration and upload services."""

from .config import (
    AppConfig,
    build_upload_registry,
    create_fastapi_app,
    setup_middleware,
    validate_environment,
    setup_logging
)

__all__ = [
    'AppConfig',
    'build_upload_registry',
    'create_fastapi_app',
    'setup_middleware',
    'validate_environment',
    'setup_logging'
]
