"""
Deed Vault Uploads - file ingestion and content-security pipeline.

This is the main entry point for the FastAPI application.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI

from api.endpoints import (
    delete_file,
    download_file,
    get_cleanup_statistics,
    get_quarantine_log,
    get_storage_stats,
    list_files,
    list_property_documents,
    preview_file,
    rescan_file,
    restore_file,
    run_manual_cleanup,
    set_cleanup_managers,
    set_file_registry,
    set_upload_registry,
    switch_upload_strategy,
    upload_multiple,
    upload_property_documents,
    upload_single,
)
from core.config import (
    AppConfig,
    build_upload_registry,
    create_fastapi_app,
    setup_logging,
    setup_middleware,
    validate_environment,
)
from core.file_registry import FileRegistry
from core.storage_cleanup import StorageCleanupManager
from core.upload_manager import UploadManagerRegistry


def create_cleanup_managers(registry: UploadManagerRegistry, config: AppConfig) -> List[StorageCleanupManager]:
    """One cleanup manager per distinct storage backend across the channels."""
    managers: Dict[Tuple[str, Optional[str]], StorageCleanupManager] = {}
    for channel in registry.channels():
        upload_manager = registry.get(channel)
        channel_config = upload_manager.config
        location = channel_config.cloud.bucket if channel_config.cloud else channel_config.upload_root
        key = (channel_config.storage_type.value, location)
        if key not in managers:
            managers[key] = StorageCleanupManager(
                upload_manager.storage, upload_manager.quarantine, config.get_cleanup_policy()
            )
    return list(managers.values())


def schedule_cleanup(app: FastAPI, cleanup_managers: List[StorageCleanupManager]) -> None:
    """Run each cleanup manager's periodic loop between startup and shutdown."""
    state: Dict[str, Any] = {"stop": None, "tasks": []}

    @app.on_event("startup")
    async def start_cleanup():
        state["stop"] = asyncio.Event()
        state["tasks"] = [asyncio.create_task(manager.run_periodic(state["stop"])) for manager in cleanup_managers]

    @app.on_event("shutdown")
    async def stop_cleanup():
        if state["stop"] is not None:
            state["stop"].set()
            await asyncio.gather(*state["tasks"])
        state["tasks"] = []


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    # Validate environment before starting
    validate_environment()

    # Initialize configuration
    config = config or AppConfig()

    # Setup logging
    setup_logging(config.log_level)

    # Create FastAPI app
    app = create_fastapi_app()

    # Setup middleware
    setup_middleware(app, config)

    # Build upload services
    upload_registry = build_upload_registry(config)
    file_registry = FileRegistry()

    # Inject dependencies into endpoints
    set_upload_registry(upload_registry)
    set_file_registry(file_registry)
    cleanup_managers = create_cleanup_managers(upload_registry, config)
    set_cleanup_managers(cleanup_managers)

    # Schedule storage cleanup for the lifetime of the app
    if config.cleanup_interval_minutes > 0:
        schedule_cleanup(app, cleanup_managers)

    # Register upload routes
    app.post("/api/files/upload")(upload_single)
    app.post("/api/files/upload-multiple")(upload_multiple)
    app.post("/api/files/properties/{property_id}/documents")(upload_property_documents)
    app.get("/api/files/properties/{property_id}/documents")(list_property_documents)

    # Register file access routes
    app.get("/api/files/list")(list_files)
    app.get("/api/files/stats")(get_storage_stats)
    app.get("/api/files/{file_id}/download")(download_file)
    app.get("/api/files/{file_id}/preview")(preview_file)
    app.delete("/api/files/{file_id}")(delete_file)
    app.post("/api/files/{file_id}/restore")(restore_file)

    # Register administrative routes
    app.post("/api/files/admin/strategy")(switch_upload_strategy)
    app.post("/api/files/admin/scan/{file_id}")(rescan_file)
    app.get("/api/files/admin/quarantine")(get_quarantine_log)
    app.get("/api/files/admin/cleanup/statistics")(get_cleanup_statistics)
    app.post("/api/files/admin/cleanup/run")(run_manual_cleanup)

    logging.info("FastAPI application created and configured successfully")
    logging.info(
        f"Configuration: upload_root={config.upload_root}, property storage_type={config.storage_type.value} "
        f"(general, image and document channels are local), "
        f"strategy={config.upload_strategy.value}, virus_scan={config.enable_virus_scan}"
    )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Run the application
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
