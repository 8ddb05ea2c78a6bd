"""S3-compatible object storage providers (AWS S3, MinIO, Google Cloud Storage)."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from models.errors import ConfigurationError, NotFoundError, StorageError
from models.storage import CleanupReport, DeleteOutcome, ListResult, ObjectInfo, StorageStats, StoredObject
from models.upload import CloudStorageSettings, NormalizedFile, StorageKind
from storage.base import (
    DEFAULT_PAGE_LIMIT,
    QUARANTINE_DIR,
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

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3StorageProvider(StorageProvider):
    """
    Stores uploads as objects keyed ``<prefix>/<directory>/<filename>``.

    boto3 is synchronous, so every call runs in the default executor.
    Soft delete copies the object under ``<prefix>/.trash/`` next to a JSON
    sidecar and removes the original.
    """

    kind = StorageKind.S3

    def __init__(self, settings: CloudStorageSettings, client=None):
        if not settings.bucket:
            raise ConfigurationError("Object storage requires a bucket name", error_code="MISSING_BUCKET")
        self.settings = settings
        self.bucket = settings.bucket
        self.prefix = settings.prefix.strip("/")
        self._logger = logging.getLogger(__name__)
        self.client = client or self._create_client()

    def _create_client(self):
        client_kwargs: Dict[str, Any] = {
            "region_name": self.settings.region,
            "endpoint_url": self.settings.endpoint_url,
            "aws_access_key_id": self.settings.access_key,
            "aws_secret_access_key": self.settings.secret_key,
            "config": self._client_config(),
        }
        return boto3.client("s3", **{k: v for k, v in client_kwargs.items() if v is not None})

    def _client_config(self) -> Optional[BotoConfig]:
        return None

    # --- key helpers ---

    def _key(self, directory: str, filename: str, trash: bool = False) -> str:
        parts = [self.prefix] if self.prefix else []
        if trash:
            parts.append(TRASH_DIR)
        parts.extend([validate_directory(directory), validate_filename(filename)])
        return "/".join(parts)

    def _root_prefix(self) -> str:
        return f"{self.prefix}/" if self.prefix else ""

    def _split_key(self, key: str):
        relative = key[len(self._root_prefix()):]
        directory, _, filename = relative.rpartition("/")
        return directory, filename

    def public_url(self, key: str) -> str:
        if self.settings.public_base_url:
            return f"{self.settings.public_base_url.rstrip('/')}/{quote(key)}"
        return f"https://{self.bucket}.s3.{self.settings.region}.amazonaws.com/{quote(key)}"

    async def _call(self, method: str, **kwargs) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(getattr(self.client, method), **kwargs))

    def _is_not_found(self, error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES

    def _storage_error(self, action: str, key: str, error: Exception) -> StorageError:
        self._logger.error(f"Object storage {action} failed for {key}: {error}")
        return StorageError(f"Object storage {action} failed: {error}", filename=key)

    def _iter_objects(self, prefix: str) -> Iterator[Dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            yield from page.get("Contents", [])

    async def _list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: list(self._iter_objects(prefix)))
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("list", prefix, e) from e

    def _info(self, key: str, size: int, modified: datetime) -> ObjectInfo:
        directory, filename = self._split_key(key)
        return ObjectInfo(
            filename=filename,
            directory=directory,
            path=key,
            url=self.public_url(key),
            size=size,
            created_at=modified,
            modified_at=modified,
        )

    # --- contract ---

    async def upload(self, file: NormalizedFile, metadata: Optional[Dict[str, Any]] = None) -> StoredObject:
        metadata = metadata or {}
        directory = determine_directory(file.mime_type, metadata)
        filename = generate_unique_filename(file.filename, self.content_hash(file, metadata))
        key = self._key(directory, filename)
        try:
            await self._call(
                "put_object",
                Bucket=self.bucket,
                Key=key,
                Body=file.content,
                ContentType=file.mime_type or "application/octet-stream",
                Metadata={"original-name": quote(file.filename)},
            )
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("upload", key, e) from e

        self._logger.info(f"Stored {file.filename} as s3://{self.bucket}/{key}")
        return StoredObject(
            filename=filename, directory=directory, path=key, url=self.public_url(key), size=len(file.content)
        )

    async def download(self, filename: str, directory: str) -> bytes:
        key = self._key(directory, filename)
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=key)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, response["Body"].read)
        except ClientError as e:
            if self._is_not_found(e):
                raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory) from e
            raise self._storage_error("download", key, e) from e
        except BotoCoreError as e:
            raise self._storage_error("download", key, e) from e

    async def exists(self, filename: str, directory: str) -> bool:
        try:
            key = self._key(directory, filename)
        except StorageError:
            return False
        try:
            await self._call("head_object", Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise self._storage_error("head", key, e) from e
        except BotoCoreError as e:
            raise self._storage_error("head", key, e) from e

    async def get_info(self, filename: str, directory: str) -> ObjectInfo:
        key = self._key(directory, filename)
        try:
            response = await self._call("head_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._is_not_found(e):
                raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory) from e
            raise self._storage_error("head", key, e) from e
        except BotoCoreError as e:
            raise self._storage_error("head", key, e) from e
        return self._info(key, response["ContentLength"], response["LastModified"])

    async def _copy_key(self, source_key: str, target_key: str) -> None:
        await self._call(
            "copy_object",
            Bucket=self.bucket,
            Key=target_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )

    async def delete(self, filename: str, directory: str, hard: bool = False) -> DeleteOutcome:
        directory = validate_directory(directory)
        if not await self.exists(filename, directory):
            raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory)

        key = self._key(directory, filename)
        try:
            if hard:
                await self._call("delete_object", Bucket=self.bucket, Key=key)
                self._logger.info(f"Permanently deleted s3://{self.bucket}/{key}")
                return DeleteOutcome(filename=filename, directory=directory, hard=True)

            trash_key = self._key(directory, trash_filename(filename), trash=True)
            await self._copy_key(key, trash_key)
            sidecar = {
                "original_path": f"{directory}/{filename}",
                "deleted_at": datetime.now(timezone.utc).isoformat(),
                "filename": filename,
                "directory": directory,
            }
            await self._call(
                "put_object",
                Bucket=self.bucket,
                Key=trash_key + TRASH_SIDECAR_SUFFIX,
                Body=json.dumps(sidecar).encode("utf-8"),
                ContentType="application/json",
            )
            await self._call("delete_object", Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("delete", key, e) from e

        self._logger.info(f"Moved s3://{self.bucket}/{key} to trash")
        return DeleteOutcome(filename=filename, directory=directory, hard=False, trash_path=trash_key)

    async def restore(self, trashed_name: str, directory: str) -> StoredObject:
        trash_key = self._key(directory, trashed_name, trash=True)
        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=trash_key + TRASH_SIDECAR_SUFFIX)
            loop = asyncio.get_running_loop()
            sidecar = json.loads(await loop.run_in_executor(None, response["Body"].read))
        except ClientError as e:
            if self._is_not_found(e):
                raise NotFoundError(f"Trashed file not found: {directory}/{trashed_name}", filename=trashed_name) from e
            raise self._storage_error("restore", trash_key, e) from e

        target_key = self._key(sidecar["directory"], sidecar["filename"])
        if await self.exists(sidecar["filename"], sidecar["directory"]):
            raise StorageError(f"Cannot restore over existing file {sidecar['original_path']}", filename=sidecar["filename"])
        try:
            await self._copy_key(trash_key, target_key)
            await self._call("delete_object", Bucket=self.bucket, Key=trash_key)
            await self._call("delete_object", Bucket=self.bucket, Key=trash_key + TRASH_SIDECAR_SUFFIX)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("restore", trash_key, e) from e

        info = await self.get_info(sidecar["filename"], sidecar["directory"])
        return StoredObject(
            filename=info.filename, directory=info.directory, path=info.path, url=info.url, size=info.size
        )

    async def list(
        self,
        directory: Optional[str] = None,
        sort_by: str = "date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> ListResult:
        prefix = self._root_prefix()
        if directory:
            prefix += validate_directory(directory) + "/"

        files = []
        for obj in await self._list_objects(prefix):
            key = obj["Key"]
            obj_directory, filename = self._split_key(key)
            segments = obj_directory.split("/")
            if any(segment.startswith(".") for segment in segments):
                continue
            if directory and obj_directory != validate_directory(directory):
                continue
            if not directory and segments[0] in (TEMP_DIR, QUARANTINE_DIR):
                continue
            files.append(self._info(key, obj["Size"], obj["LastModified"]))

        return sort_and_paginate(files, sort_by, sort_order, page, limit)

    async def move(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        stored = await self.copy(filename, from_directory, to_directory, new_filename or filename)
        source_key = self._key(from_directory, filename)
        try:
            await self._call("delete_object", Bucket=self.bucket, Key=source_key)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("move", source_key, e) from e
        return stored

    async def copy(
        self, filename: str, from_directory: str, to_directory: str, new_filename: Optional[str] = None
    ) -> StoredObject:
        if not await self.exists(filename, from_directory):
            raise NotFoundError(f"File not found: {from_directory}/{filename}", filename=filename)
        to_directory = validate_directory(to_directory)
        target_name = new_filename or copy_filename(filename)
        source_key = self._key(from_directory, filename)
        target_key = self._key(to_directory, target_name)
        try:
            await self._copy_key(source_key, target_key)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error("copy", source_key, e) from e
        info = await self.get_info(target_name, to_directory)
        return StoredObject(filename=target_name, directory=to_directory, path=target_key, url=info.url, size=info.size)

    async def get_stats(self) -> StorageStats:
        stats = StorageStats()
        for obj in await self._list_objects(self._root_prefix()):
            directory, _ = self._split_key(obj["Key"])
            top = directory.split("/")[0] if directory else ""
            if not top or top.startswith("."):
                continue
            bucket_stats = stats.directories.setdefault(top, {"size": 0, "files": 0})
            bucket_stats["size"] += obj["Size"]
            bucket_stats["files"] += 1
            stats.total_size += obj["Size"]
            stats.total_files += 1
        return stats

    async def cleanup(
        self, older_than_hours: int = TEMP_RETENTION_HOURS, trash_retention_hours: int = TRASH_RETENTION_HOURS
    ) -> CleanupReport:
        report = CleanupReport()
        now = datetime.now(timezone.utc)
        targets = [
            (self._root_prefix() + TEMP_DIR + "/", now - timedelta(hours=older_than_hours), "temp"),
            (self._root_prefix() + TRASH_DIR + "/", now - timedelta(hours=trash_retention_hours), "trash"),
        ]
        for prefix, cutoff, label in targets:
            for obj in await self._list_objects(prefix):
                if obj["LastModified"] >= cutoff:
                    continue
                try:
                    await self._call("delete_object", Bucket=self.bucket, Key=obj["Key"])
                except (ClientError, BotoCoreError) as e:
                    self._logger.error(f"Failed to remove {obj['Key']}: {e}")
                    report.errors.append(f"{obj['Key']}: {e}")
                    continue
                report.bytes_freed += obj["Size"]
                if label == "temp":
                    report.temp_files_removed += 1
                elif not obj["Key"].endswith(TRASH_SIDECAR_SUFFIX):
                    report.trash_files_removed += 1
        self._logger.info(
            f"Object storage cleanup removed {report.temp_files_removed} temp and "
            f"{report.trash_files_removed} trashed objects"
        )
        return report


class MinioStorageProvider(S3StorageProvider):
    """MinIO speaks the S3 API but needs path-style addressing and an explicit endpoint."""

    kind = StorageKind.MINIO

    def __init__(self, settings: CloudStorageSettings, client=None):
        if not settings.endpoint_url:
            raise ConfigurationError("MinIO storage requires an endpoint URL", error_code="MISSING_ENDPOINT")
        super().__init__(settings, client)

    def _client_config(self) -> Optional[BotoConfig]:
        return BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"})

    def public_url(self, key: str) -> str:
        if self.settings.public_base_url:
            return super().public_url(key)
        return f"{self.settings.endpoint_url.rstrip('/')}/{self.bucket}/{quote(key)}"


GCS_XML_ENDPOINT = "https://storage.googleapis.com"


class GCSStorageProvider(S3StorageProvider):
    """Google Cloud Storage through its S3-interoperable XML API with HMAC keys."""

    kind = StorageKind.GCS

    def __init__(self, settings: CloudStorageSettings, client=None):
        if not settings.endpoint_url:
            settings = CloudStorageSettings(
                bucket=settings.bucket,
                region=settings.region if settings.region != "us-east-1" else "auto",
                endpoint_url=GCS_XML_ENDPOINT,
                access_key=settings.access_key,
                secret_key=settings.secret_key,
                prefix=settings.prefix,
                public_base_url=settings.public_base_url,
            )
        super().__init__(settings, client)

    def _client_config(self) -> Optional[BotoConfig]:
        return BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"})

    def public_url(self, key: str) -> str:
        if self.settings.public_base_url:
            return super().public_url(key)
        return f"{GCS_XML_ENDPOINT}/{self.bucket}/{quote(key)}"
