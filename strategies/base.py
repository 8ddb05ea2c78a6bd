"""Upload strategy contract: request body in, normalized files out."""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import Request

from models.errors import ExtractionError
from models.upload import FieldConfig, NormalizedFile, StrategyKind, UploadConfiguration
from validation.validators import find_path_injection, split_extensions

PARTS_STATE_ATTR = "upload_parts"
FIELDS_STATE_ATTR = "upload_form_fields"
FIELD_CONFIG_STATE_ATTR = "upload_field_config"

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class ParsedPart:
    """A file part as a parser produced it, before normalization."""
    field_name: str
    filename: str
    content_type: str
    size: int = 0
    content: bytes = b""
    temp_file_id: Optional[str] = None
    truncated: bool = False


class UploadStrategy(ABC):
    """
    Turns an inbound request into a flat list of NormalizedFile.

    ``parse_request`` runs the underlying parser once and leaves its parts on
    ``request.state``; ``extract_files`` checks and normalizes them. Callers
    never see how a parser groups fields.
    """

    kind: StrategyKind

    def __init__(self, config: UploadConfiguration):
        self.config = config
        self._logger = logging.getLogger(__name__)

    @abstractmethod
    async def parse_request(self, request: Request, field_config: Optional[FieldConfig] = None) -> None:
        """Populate the parsed representation; a request without files is a no-op."""

    async def extract_files(self, request: Request) -> List[NormalizedFile]:
        """
        Pre-check and normalize the parts left by ``parse_request``.

        Raises:
            ExtractionError: If any part fails its pre-checks; no files are returned then
        """
        parts: List[ParsedPart] = getattr(request.state, PARTS_STATE_ATTR, None) or []
        field_config: Optional[FieldConfig] = getattr(request.state, FIELD_CONFIG_STATE_ATTR, None)
        setattr(request.state, PARTS_STATE_ATTR, [])

        try:
            self.check_file_count(parts, field_config)
            for part in parts:
                self.precheck_part(part.filename, part.content_type)

            files = []
            for part in parts:
                files.append(
                    NormalizedFile(
                        filename=part.filename,
                        mime_type=part.content_type or DEFAULT_CONTENT_TYPE,
                        size=part.size,
                        content=self.load_content(part),
                        field_name=part.field_name,
                        truncated=part.truncated,
                    )
                )
        finally:
            self.release(parts)

        self._logger.info(f"Extracted {len(files)} file(s) with the {self.kind.value} strategy")
        return files

    def check_file_count(self, parts: List[ParsedPart], field_config: Optional[FieldConfig]) -> None:
        if len(parts) > self.config.max_files:
            raise ExtractionError(f"Too many files: {len(parts)} exceeds the limit of {self.config.max_files}")
        if field_config is None:
            return
        per_field = Counter(part.field_name for part in parts)
        for field_name, count in per_field.items():
            if not field_config.accepts(field_name):
                raise ExtractionError(f"Unexpected file field '{field_name}'")
            limit = field_config.limit_for(field_name)
            if limit is not None and count > limit:
                raise ExtractionError(f"Too many files in field '{field_name}': {count} exceeds {limit}")

    def precheck_part(self, filename: Optional[str], content_type: Optional[str]) -> None:
        """
        Reject path injection, blocked extensions and disallowed types for one part.

        Raises:
            ExtractionError: On the first violation
        """
        reason = find_path_injection(filename or "")
        if reason:
            raise ExtractionError(reason, filename=filename)

        extensions = split_extensions(filename)
        if extensions and extensions[-1] in self.config.blocked_extensions:
            raise ExtractionError(f"File extension '.{extensions[-1]}' is blocked", filename=filename)

        if not self.config.is_mime_allowed(content_type or DEFAULT_CONTENT_TYPE):
            raise ExtractionError(f"File type '{content_type}' is not allowed", filename=filename)

    def load_content(self, part: ParsedPart) -> bytes:
        return part.content

    def release(self, parts: List[ParsedPart]) -> None:
        """Free parser resources held by parts; nothing to do for in-memory parts."""

    def store_parts(
        self,
        request: Request,
        parts: List[ParsedPart],
        fields: Dict[str, str],
        field_config: Optional[FieldConfig],
    ) -> None:
        setattr(request.state, PARTS_STATE_ATTR, parts)
        setattr(request.state, FIELDS_STATE_ATTR, fields)
        setattr(request.state, FIELD_CONFIG_STATE_ATTR, field_config)
