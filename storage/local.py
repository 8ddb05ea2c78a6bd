"""Local filesystem storage provider."""

import json
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from models.errors import NotFoundError, StorageError
from models.storage import CleanupReport, DeleteOutcome, ListResult, ObjectInfo, StorageStats, StoredObject
from models.upload import NormalizedFile, StorageKind
from storage.base import (
    DEFAULT_PAGE_LIMIT,
    QUARANTINE_DIR,
    STANDARD_DIRECTORIES,
    TEMP_DIR,
    TEMP_RETENTION_HOURS,
    TRASH_DIR,
    TRASH_RETENTION_HOURS,
    TRASH_SIDECAR_SUFFIX,
    StorageProvider,
    copy_filename,
    determine_directory,
    generate_unique_filename,
    sort_and_paginate,
    trash_filename,
    validate_directory,
    validate_filename,
)

# Blocking filesystem calls without an aiofiles counterpart run in the default executor
move_file = aiofiles.os.wrap(shutil.move)
copy_file = aiofiles.os.wrap(shutil.copy2)
touch = aiofiles.os.wrap(os.utime)


class LocalStorageProvider(StorageProvider):
    """
    Stores uploads under a root directory on local disk.

    Layout: one first-level folder per category (images, documents,
    properties, profiles, general), a temp staging folder, the quarantine
    folder and a hidden .trash tree mirroring the main layout. File I/O goes
    through aiofiles.
    """

    kind = StorageKind.LOCAL

    def __init__(self, root: str, public_url_prefix: str = "/uploads"):
        self.root = Path(root).resolve()
        self.public_url_prefix = public_url_prefix.rstrip("/")
        self._logger = logging.getLogger(__name__)
        for directory in STANDARD_DIRECTORIES + (TRASH_DIR,):
            (self.root / directory).mkdir(parents=True, exist_ok=True)

    # --- path helpers ---

    def _directory_path(self, directory: str, trash: bool = False) -> Path:
        directory = validate_directory(directory)
        base = self.root / TRASH_DIR if trash else self.root
        path = (base / directory).resolve()
        if not path.is_relative_to(self.root):
            raise StorageError(f"Directory '{directory}' escapes the storage root", directory=directory)
        return path

    def _object_path(self, filename: str, directory: str, trash: bool = False) -> Path:
        return self._directory_path(directory, trash) / validate_filename(filename)

    def _url(self, directory: str, filename: str) -> str:
        return f"{self.public_url_prefix}/{directory}/{filename}"

    def _stored(self, path: Path, directory: str, size: int) -> StoredObject:
        return StoredObject(
            filename=path.name,
            directory=directory,
            path=str(path),
            url=self._url(directory, path.name),
            size=size,
        )

    def _info(self, path: Path, directory: str, stat: os.stat_result) -> ObjectInfo:
        return ObjectInfo(
            filename=path.name,
            directory=directory,
            path=str(path),
            url=self._url(directory, path.name),
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    # --- contract ---

    async def upload(self, file: NormalizedFile, metadata: Optional[Dict[str, Any]] = None) -> StoredObject:
        metadata = metadata or {}
        directory = determine_directory(file.mime_type, metadata)
        filename = generate_unique_filename(file.filename, self.content_hash(file, metadata))
        target_dir = self._directory_path(directory)
        path = target_dir / filename
        try:
            await aiofiles.os.makedirs(target_dir, exist_ok=True)
            async with aiofiles.open(path, "wb") as handle:
                await handle.write(file.content)
        except OSError as e:
            self._logger.error(f"Failed to write {filename} to {directory}: {e}")
            raise StorageError(f"Failed to store file: {e}", filename=filename, directory=directory) from e

        self._logger.info(f"Stored {file.filename} as {directory}/{filename} ({len(file.content)} bytes)")
        return self._stored(path, directory, len(file.content))

    async def download(self, filename: str, directory: str) -> bytes:
        path = self._object_path(filename, directory)
        if not await aiofiles.os.path.isfile(path):
            raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory)
        try:
            async with aiofiles.open(path, "rb") as handle:
                return await handle.read()
        except OSError as e:
            raise StorageError(f"Failed to read file: {e}", filename=filename, directory=directory) from e

    async def delete(self, filename: str, directory: str, hard: bool = False) -> DeleteOutcome:
        directory = validate_directory(directory)
        path = self._object_path(filename, directory)
        if not await aiofiles.os.path.isfile(path):
            raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory)

        try:
            if hard:
                await aiofiles.os.remove(path)
                self._logger.info(f"Permanently deleted {directory}/{filename}")
                return DeleteOutcome(filename=filename, directory=directory, hard=True)

            trash_dir = self._directory_path(directory, trash=True)
            await aiofiles.os.makedirs(trash_dir, exist_ok=True)
            trash_path = trash_dir / trash_filename(filename)
            await aiofiles.os.replace(path, trash_path)
            await touch(trash_path)
            sidecar = {
                "original_path": f"{directory}/{filename}",
                "deleted_at": datetime.now(timezone.utc).isoformat(),
                "filename": filename,
                "directory": directory,
            }
            async with aiofiles.open(str(trash_path) + TRASH_SIDECAR_SUFFIX, "w") as handle:
                await handle.write(json.dumps(sidecar, indent=2))
        except OSError as e:
            self._logger.error(f"Failed to delete {directory}/{filename}: {e}")
            raise StorageError(f"Failed to delete file: {e}", filename=filename, directory=directory) from e

        self._logger.info(f"Moved {directory}/{filename} to trash as {trash_path.name}")
        return DeleteOutcome(filename=filename, directory=directory, hard=False, trash_path=str(trash_path))

    async def restore(self, trashed_name: str, directory: str) -> StoredObject:
        trash_path = self._object_path(trashed_name, directory, trash=True)
        sidecar_path = Path(str(trash_path) + TRASH_SIDECAR_SUFFIX)
        if not await aiofiles.os.path.isfile(trash_path) or not await aiofiles.os.path.isfile(sidecar_path):
            raise NotFoundError(f"Trashed file not found: {directory}/{trashed_name}", filename=trashed_name)

        try:
            async with aiofiles.open(sidecar_path) as handle:
                sidecar = json.loads(await handle.read())
            original_directory = sidecar["directory"]
            original_filename = sidecar["filename"]
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"Unreadable trash metadata for {trashed_name}: {e}", filename=trashed_name) from e

        target = self._object_path(original_filename, original_directory)
        if await aiofiles.os.path.exists(target):
            raise StorageError(
                f"Cannot restore over existing file {original_directory}/{original_filename}", filename=target.name
            )

        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            await aiofiles.os.replace(trash_path, target)
            await aiofiles.os.remove(sidecar_path)
            size = await aiofiles.os.path.getsize(target)
        except OSError as e:
            self._logger.error(f"Failed to restore {trashed_name}: {e}")
            raise StorageError(f"Failed to restore file: {e}", filename=trashed_name, directory=directory) from e

        self._logger.info(f"Restored {trashed_name} to {original_directory}/{original_filename}")
        return self._stored(target, validate_directory(original_directory), size)

    async def list(
        self,
        directory: Optional[str] = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> ListResult:
        base = self._directory_path(directory) if directory else None
        files = await aiofiles.os.wrap(self._scan)(base)
        return sort_and_paginate(files, sort_by, sort_order, page, limit)

    def _scan(self, base: Optional[Path]) -> List[ObjectInfo]:
        files: List[ObjectInfo] = []
        if base is not None:
            candidates = base.iterdir() if base.is_dir() else []
        else:
            candidates = self.root.rglob("*")

        for path in candidates:
            relative = path.relative_to(self.root)
            if not path.is_file() or any(part.startswith(".") for part in relative.parts):
                continue
            if base is None and relative.parts[0] in (TEMP_DIR, QUARANTINE_DIR):
                continue
            files.append(self._info(path, relative.parent.as_posix(), path.stat()))
        return files

    async def exists(self, filename: str, directory: str) -> bool:
        try:
            return await aiofiles.os.path.isfile(self._object_path(filename, directory))
        except StorageError:
            return False

    async def get_info(self, filename: str, directory: str) -> ObjectInfo:
        path = self._object_path(filename, directory)
        if not await aiofiles.os.path.isfile(path):
            raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory)
        return self._info(path, validate_directory(directory), await aiofiles.os.stat(path))

    async def move(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        source = self._object_path(filename, from_directory)
        if not await aiofiles.os.path.isfile(source):
            raise NotFoundError(f"File not found: {from_directory}/{filename}", filename=filename)
        to_directory = validate_directory(to_directory)
        target = self._object_path(new_filename or filename, to_directory)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            await move_file(str(source), str(target))
            size = await aiofiles.os.path.getsize(target)
        except OSError as e:
            self._logger.error(f"Failed to move {from_directory}/{filename} to {to_directory}: {e}")
            raise StorageError(f"Failed to move file: {e}", filename=filename, directory=to_directory) from e

        self._logger.info(f"Moved {from_directory}/{filename} to {to_directory}/{target.name}")
        return self._stored(target, to_directory, size)

    async def copy(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        source = self._object_path(filename, from_directory)
        if not await aiofiles.os.path.isfile(source):
            raise NotFoundError(f"File not found: {from_directory}/{filename}", filename=filename)
        to_directory = validate_directory(to_directory)
        target = self._object_path(new_filename or copy_filename(filename), to_directory)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            await copy_file(str(source), str(target))
            size = await aiofiles.os.path.getsize(target)
        except OSError as e:
            raise StorageError(f"Failed to copy file: {e}", filename=filename, directory=to_directory) from e
        return self._stored(target, to_directory, size)

    async def get_stats(self) -> StorageStats:
        return await aiofiles.os.wrap(self._measure)()

    def _measure(self) -> StorageStats:
        stats = StorageStats()
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            size = 0
            count = 0
            for path in entry.rglob("*"):
                if path.is_file():
                    size += path.stat().st_size
                    count += 1
            stats.directories[entry.name] = {"size": size, "files": count}
            stats.total_size += size
            stats.total_files += count
        return stats

    async def cleanup(
        self, older_than_hours: int = TEMP_RETENTION_HOURS, trash_retention_hours: int = TRASH_RETENTION_HOURS
    ) -> CleanupReport:
        report = await aiofiles.os.wrap(self._sweep)(older_than_hours, trash_retention_hours)
        self._logger.info(
            f"Storage cleanup removed {report.temp_files_removed} temp and "
            f"{report.trash_files_removed} trashed files ({report.bytes_freed} bytes)"
        )
        return report

    def _sweep(self, older_than_hours: int, trash_retention_hours: int) -> CleanupReport:
        report = CleanupReport()
        now = time.time()

        for path in (self.root / TEMP_DIR).rglob("*"):
            if path.is_file() and now - path.stat().st_mtime > older_than_hours * 3600:
                if self._purge(path, report):
                    report.temp_files_removed += 1

        for path in (self.root / TRASH_DIR).rglob("*"):
            if not path.is_file() or path.name.endswith(TRASH_SIDECAR_SUFFIX):
                continue
            if now - path.stat().st_mtime > trash_retention_hours * 3600:
                if self._purge(path, report):
                    report.trash_files_removed += 1
                sidecar = Path(str(path) + TRASH_SIDECAR_SUFFIX)
                if sidecar.exists():
                    self._purge(sidecar, report)
        return report

    def _purge(self, path: Path, report: CleanupReport) -> bool:
        try:
            size = path.stat().st_size
            path.unlink()
        except OSError as e:
            self._logger.error(f"Failed to remove {path}: {e}")
            report.errors.append(f"{path.name}: {e}")
            return False
        report.bytes_freed += size
        return True
