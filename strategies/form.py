"""Upload strategy backed by Starlette's form parser."""

from typing import Dict, List, Optional

from fastapi import HTTPException, Request
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException

from models.errors import ExtractionError
from models.upload import FieldConfig, StrategyKind
from strategies.base import DEFAULT_CONTENT_TYPE, ParsedPart, UploadStrategy

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


class FormUploadStrategy(UploadStrategy):
    """
    Parses the body with ``Request.form()``.

    Starlette spools each file part to a SpooledTemporaryFile; parts over
    the channel ceiling are never read into memory and reach the pipeline
    with their true size and empty content.
    """

    kind = StrategyKind.FORM

    async def parse_request(self, request: Request, field_config: Optional[FieldConfig] = None) -> None:
        content_type = request.headers.get("content-type", "").lower()
        if not content_type.startswith(FORM_CONTENT_TYPES):
            self.store_parts(request, [], {}, field_config)
            return

        try:
            form = await request.form()
        except (MultiPartException, HTTPException) as e:
            detail = getattr(e, "message", None) or getattr(e, "detail", None) or str(e)
            raise ExtractionError(f"Malformed multipart body: {detail}") from e

        parts: List[ParsedPart] = []
        fields: Dict[str, str] = {}
        for field_name, value in form.multi_items():
            if not isinstance(value, UploadFile):
                fields.setdefault(field_name, value)
                continue
            # Browsers send an empty, nameless part for an untouched file input
            if not value.filename and not value.size:
                continue
            parts.append(await self._read_part(field_name, value))

        self.store_parts(request, parts, fields, field_config)

    async def _read_part(self, field_name: str, upload: UploadFile) -> ParsedPart:
        part = ParsedPart(
            field_name=field_name,
            filename=upload.filename or "",
            content_type=upload.content_type or DEFAULT_CONTENT_TYPE,
        )
        try:
            if upload.size is not None and upload.size > self.config.max_file_size:
                part.size = upload.size
                part.truncated = True
            else:
                part.content = await upload.read(self.config.max_file_size + 1)
                part.size = upload.size if upload.size is not None else len(part.content)
                if len(part.content) > self.config.max_file_size:
                    part.content = b""
                    part.truncated = True
        finally:
            await upload.close()
        return part
