"""FastAPI route handlers for file uploads, downloads and administration."""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

from fastapi import HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from core.file_access import FileAccessService
from core.file_registry import FileRegistry
from core.storage_cleanup import StorageCleanupManager
from core.upload_manager import FileUploadManager, UploadManagerRegistry, resolve_hint
from models.errors import ConfigurationError
from models.upload import FieldConfig, FileRecord, NormalizedFile, UploadOptions, UploadOutcome
from storage.base import PROPERTIES_DIR

DEFAULT_CHANNEL = "general"
PROPERTY_CHANNEL = "property"
PROPERTY_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

SAFE_PREVIEW_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
}
PREVIEW_CSP = "default-src 'none'; img-src 'self'; style-src 'unsafe-inline'; sandbox"

# Outcome error codes answered with a server error instead of a client error
SERVER_ERROR_CODES = {"STORAGE_ERROR", "POST_PERSIST_FAILED"}

# Services are injected from main.py
upload_registry: Optional[UploadManagerRegistry] = None
file_registry: Optional[FileRegistry] = None
cleanup_managers: List[StorageCleanupManager] = []


def set_upload_registry(registry_instance: UploadManagerRegistry):
    """Set the upload manager registry."""
    global upload_registry
    upload_registry = registry_instance


def set_file_registry(registry_instance: FileRegistry):
    """Set the file registry."""
    global file_registry
    file_registry = registry_instance


def set_cleanup_managers(manager_instances: List[StorageCleanupManager]):
    """Set the storage cleanup managers, one per distinct storage backend."""
    global cleanup_managers
    cleanup_managers = list(manager_instances)


def _select_channel(request: Request, default: str = DEFAULT_CHANNEL) -> str:
    channel = resolve_hint(request, "uploadType", "X-Upload-Type", default=default)
    if channel not in upload_registry.channels():
        raise HTTPException(status_code=400, detail=f"Unknown upload type '{channel}'")
    return channel


def _registering_hook(channel: str):
    def register(descriptor):
        file_registry.add(descriptor, channel=channel)

    return register


def _failure_status(outcome: UploadOutcome) -> int:
    return 500 if outcome.error_code in SERVER_ERROR_CODES else 400


def _batch_response(outcomes: List[UploadOutcome], channel: str) -> JSONResponse:
    if not outcomes:
        raise HTTPException(status_code=400, detail="No files uploaded")

    uploaded = [outcome.descriptor.to_dict() for outcome in outcomes if outcome.success]
    failed = [
        {"filename": outcome.filename, "error": outcome.error, "error_code": outcome.error_code}
        for outcome in outcomes
        if not outcome.success
    ]
    return JSONResponse(
        status_code=200 if uploaded else 400,
        content={
            "success": bool(uploaded),
            "upload_type": channel,
            "data": {
                "uploaded": uploaded,
                "failed": failed,
                "results": [outcome.to_dict() for outcome in outcomes],
                "summary": {"total": len(outcomes), "successful": len(uploaded), "failed": len(failed)},
            },
        },
    )


def _manager_for(record: FileRecord) -> FileUploadManager:
    return upload_registry.get(record.channel or DEFAULT_CHANNEL)


def _access_for(manager: FileUploadManager) -> FileAccessService:
    return FileAccessService(manager.storage, manager.config.public_url_prefix)


def _content_disposition(kind: str, filename: str) -> str:
    ascii_name = filename.encode("ascii", errors="ignore").decode().replace('"', "") or "download"
    return f"{kind}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


async def upload_single(request: Request):
    """
    Upload one file from the ``file`` form field.

    The channel comes from ``uploadType`` / ``X-Upload-Type``; the target
    directory and related-entity metadata from their query, header or form hints.

    Returns:
        JSONResponse with the persisted file descriptor
    """
    channel = _select_channel(request)
    manager = upload_registry.get(channel)
    handle = manager.middleware(
        UploadOptions(field_config=FieldConfig.single("file"), post_persist_hook=_registering_hook(channel))
    )
    outcomes = await handle(request)
    if not outcomes:
        raise HTTPException(status_code=400, detail="No file uploaded")

    outcome = outcomes[0]
    if not outcome.success:
        return JSONResponse(
            status_code=_failure_status(outcome),
            content={
                "success": False,
                "filename": outcome.filename,
                "error": outcome.error,
                "error_code": outcome.error_code,
            },
        )

    return JSONResponse(
        status_code=201,
        content={"success": True, "upload_type": channel, "data": outcome.descriptor.to_dict()},
    )


async def upload_multiple(request: Request):
    """
    Upload several files from the ``files`` form field.

    Each file succeeds or fails on its own; the response lists both, in
    submission order.
    """
    channel = _select_channel(request)
    manager = upload_registry.get(channel)
    handle = manager.middleware(
        UploadOptions(
            field_config=FieldConfig.array("files", manager.config.max_files),
            post_persist_hook=_registering_hook(channel),
        )
    )
    outcomes = await handle(request)
    return _batch_response(outcomes, channel)


async def upload_property_documents(property_id: str, request: Request):
    """
    Upload title-deed documents attached to a property.

    Files land under ``properties/<property_id>`` on the property channel
    and carry the related-entity metadata; the document type comes from
    the ``documentType`` hint.
    """
    if not PROPERTY_ID_PATTERN.match(property_id):
        raise HTTPException(status_code=400, detail="Invalid property id")

    manager = upload_registry.get(PROPERTY_CHANNEL)
    metadata: Dict[str, str] = {"related_model": "property", "related_id": property_id}
    handle = manager.middleware(
        UploadOptions(
            directory=f"{PROPERTIES_DIR}/{property_id}",
            metadata=metadata,
            post_persist_hook=_registering_hook(PROPERTY_CHANNEL),
        )
    )
    outcomes = await handle(request)
    return _batch_response(outcomes, PROPERTY_CHANNEL)


async def list_property_documents(property_id: str):
    """List the live documents attached to a property, oldest first."""
    records = file_registry.list_for_related("property", property_id)
    return JSONResponse(content={"success": True, "data": [record.to_dict() for record in records]})


async def download_file(file_id: str):
    """
    Download a stored file as an attachment.

    Falls back to the directory encoded in the file URL when the recorded
    directory no longer holds it.
    """
    record = file_registry.get(file_id)
    descriptor = record.descriptor
    content, _ = await _access_for(_manager_for(record)).download(
        descriptor.filename, descriptor.directory, descriptor.url
    )
    file_registry.record_access(file_id)

    return Response(
        content=content,
        media_type=descriptor.mime_type,
        headers={
            "Content-Disposition": _content_disposition("attachment", descriptor.original_name),
            "X-Content-Type-Options": "nosniff",
        },
    )


async def preview_file(file_id: str):
    """Serve a file inline, only for types that are safe to render in a browser."""
    record = file_registry.get(file_id)
    descriptor = record.descriptor
    if descriptor.mime_type not in SAFE_PREVIEW_MIME_TYPES:
        return JSONResponse(
            status_code=415,
            content={"success": False, "error": f"Preview not available for {descriptor.mime_type}"},
        )

    content, _ = await _access_for(_manager_for(record)).download(
        descriptor.filename, descriptor.directory, descriptor.url
    )
    file_registry.record_access(file_id)

    return Response(
        content=content,
        media_type=descriptor.mime_type,
        headers={
            "Content-Disposition": _content_disposition("inline", descriptor.original_name),
            "X-Content-Type-Options": "nosniff",
            "Content-Security-Policy": PREVIEW_CSP,
            "Cache-Control": "private, max-age=3600",
        },
    )


async def delete_file(file_id: str, hard: bool = Query(False)):
    """
    Delete a file; soft by default, permanently with ``?hard=true``.

    A soft delete of bytes that are already gone still succeeds.
    """
    record = file_registry.get(file_id, include_deleted=hard)
    if record.is_deleted:
        # Bytes already sit in the trash and expire with the trash retention
        file_registry.remove(file_id)
        return JSONResponse(
            content={
                "success": True,
                "message": "File record removed",
                "data": {"id": file_id, "hard": True, "already_absent": True},
            }
        )

    descriptor = record.descriptor
    outcome = await _access_for(_manager_for(record)).delete(
        descriptor.filename, descriptor.directory, hard=hard, url=descriptor.url
    )

    if hard:
        file_registry.remove(file_id)
    else:
        trash_name = outcome.trash_path.rsplit("/", 1)[-1] if outcome.trash_path else None
        file_registry.mark_deleted(file_id, trash_name=trash_name)

    return JSONResponse(
        content={
            "success": True,
            "message": "File permanently deleted" if hard else "File moved to trash",
            "data": {"id": file_id, "hard": hard, "already_absent": outcome.already_absent},
        }
    )


async def restore_file(file_id: str):
    """Restore a soft-deleted file from the trash."""
    record = file_registry.get(file_id, include_deleted=True)
    if not record.is_deleted or not record.trash_name:
        return JSONResponse(status_code=409, content={"success": False, "error": "File is not in the trash"})

    stored = await _access_for(_manager_for(record)).restore(record.trash_name, record.descriptor.directory)
    file_registry.mark_restored(file_id)
    return JSONResponse(content={"success": True, "data": {"id": file_id, "url": stored.url}})


async def list_files(
    request: Request,
    directory: Optional[str] = None,
    sort_by: str = Query("date"),
    sort_order: str = Query("desc"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """List stored objects of a channel's storage, sorted and paginated."""
    manager = upload_registry.get(_select_channel(request))
    result = await manager.storage.list(directory, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit)
    return JSONResponse(content={"success": True, "data": result.to_dict()})


async def get_storage_stats(request: Request):
    """Storage usage per first-level directory plus registry totals."""
    manager = upload_registry.get(_select_channel(request))
    stats = await manager.storage.get_stats()
    return JSONResponse(
        content={"success": True, "data": {"storage": stats.to_dict(), "registry": file_registry.get_statistics()}}
    )


async def switch_upload_strategy(request: Request):
    """
    Switch a channel to another parsing strategy.

    Body: ``{"uploadType": "<channel>", "strategy": "form|tempfile|streaming"}``
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"success": False, "error": "Request body must be valid JSON"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"success": False, "error": "Request body must be a JSON object"})

    channel = body.get("uploadType") or DEFAULT_CHANNEL
    strategy = body.get("strategy")
    if not strategy:
        return JSONResponse(status_code=400, content={"success": False, "error": "strategy is required"})

    try:
        manager = upload_registry.switch_strategy(channel, strategy)
    except ConfigurationError as e:
        return JSONResponse(
            status_code=400, content={"success": False, "error": str(e), "error_code": e.error_code}
        )

    return JSONResponse(
        content={
            "success": True,
            "message": "Upload strategy switched",
            "data": {"uploadType": channel, "strategy": manager.config.upload_strategy.value},
        }
    )


async def rescan_file(file_id: str):
    """Run the security validator again over a stored file and record the new score."""
    record = file_registry.get(file_id)
    descriptor = record.descriptor
    manager = _manager_for(record)
    content, _ = await _access_for(manager).download(descriptor.filename, descriptor.directory, descriptor.url)

    result = manager.security_validator.validate(
        NormalizedFile(
            filename=descriptor.original_name,
            mime_type=descriptor.mime_type,
            size=descriptor.size,
            content=content,
        )
    )
    descriptor.security_score = result.score
    record.last_scanned_at = datetime.now(timezone.utc)
    if not result.safe:
        logging.warning(f"Re-scan flagged stored file {file_id}: {result.reason}")

    return JSONResponse(
        content={
            "success": True,
            "data": {
                "id": file_id,
                "safe": result.safe,
                "score": result.score,
                "status": result.status.value,
                "warnings": result.warnings,
                "errors": result.errors,
            },
        }
    )


async def get_quarantine_log(limit: int = Query(50, ge=1, le=1000)):
    """Most recent quarantine records."""
    quarantine = upload_registry.get(DEFAULT_CHANNEL).quarantine
    records = quarantine.read_log(limit)
    return JSONResponse(content={"success": True, "data": [record.to_dict() for record in records]})


async def get_cleanup_statistics():
    """
    Get storage cleanup statistics and recommendations.

    Returns:
        JSONResponse with cleanup statistics
    """
    if not cleanup_managers:
        return JSONResponse(content={"error": "Cleanup manager not available"}, status_code=501)

    stats = [await manager.get_cleanup_statistics() for manager in cleanup_managers]
    return JSONResponse(content={"success": True, "data": stats})


async def run_manual_cleanup():
    """
    Manually trigger storage cleanup.

    Returns:
        JSONResponse with cleanup results
    """
    if not cleanup_managers:
        return JSONResponse(content={"error": "Cleanup manager not available"}, status_code=501)

    results = [await manager.run_full_cleanup() for manager in cleanup_managers]
    return JSONResponse(content={"success": True, "data": results})
