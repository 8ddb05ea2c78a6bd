"""Caller-level access to stored files: directory fallback and tolerant deletes."""

import logging
import re
from typing import Optional, Tuple

from models.errors import NotFoundError
from models.storage import DeleteOutcome, StoredObject
from storage.base import StorageProvider, validate_directory


def directory_from_url(url: Optional[str], public_url_prefix: str = "/uploads") -> Optional[str]:
    """
    Re-derive the logical directory from a public URL.

    ``/uploads/properties/42/deed_ab12cd34_1700000000000.pdf`` yields
    ``properties/42``.
    """
    if not url:
        return None
    prefix = re.escape("/" + public_url_prefix.strip("/"))
    match = re.search(prefix + r"/(.+)/[^/]+$", url.split("?", 1)[0])
    return match.group(1) if match else None


class FileAccessService:
    """Resolves where a recorded file actually lives before reading or deleting it."""

    def __init__(self, storage: StorageProvider, public_url_prefix: str = "/uploads"):
        self.storage = storage
        self.public_url_prefix = public_url_prefix
        self._logger = logging.getLogger(__name__)

    async def resolve_directory(self, filename: str, directory: str, url: Optional[str] = None) -> str:
        """
        Return the directory holding ``filename``.

        Falls back to the directory encoded in ``url`` when the recorded one
        does not hold the object.

        Raises:
            NotFoundError: If neither location holds the object
        """
        directory = validate_directory(directory)
        if await self.storage.exists(filename, directory):
            return directory

        fallback = directory_from_url(url, self.public_url_prefix)
        if fallback and fallback != directory:
            fallback = validate_directory(fallback)
            if await self.storage.exists(filename, fallback):
                self._logger.warning(
                    f"{filename} not found in recorded directory '{directory}', using '{fallback}' from its URL"
                )
                return fallback

        raise NotFoundError(f"File not found: {directory}/{filename}", filename=filename, directory=directory)

    async def download(self, filename: str, directory: str, url: Optional[str] = None) -> Tuple[bytes, str]:
        """Read a file, returning its bytes and the directory it was found in."""
        resolved = await self.resolve_directory(filename, directory, url)
        return await self.storage.download(filename, resolved), resolved

    async def delete(
        self, filename: str, directory: str, hard: bool = False, url: Optional[str] = None
    ) -> DeleteOutcome:
        """
        Delete a file, soft by default.

        A soft delete of an object that is already gone succeeds with
        ``already_absent`` set; a hard delete of a missing object raises.

        Raises:
            NotFoundError: On a hard delete of a missing object
        """
        try:
            resolved = await self.resolve_directory(filename, directory, url)
            return await self.storage.delete(filename, resolved, hard=hard)
        except NotFoundError:
            if hard:
                raise
            self._logger.info(f"Soft delete of {directory}/{filename}: already absent")
            return DeleteOutcome(filename=filename, directory=directory, hard=False, already_absent=True)

    async def restore(self, trashed_name: str, directory: str) -> StoredObject:
        return await self.storage.restore(trashed_name, validate_directory(directory))
