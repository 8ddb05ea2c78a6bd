"""
Test helper functions for the upload pipeline.

This module provides utilities for building raw multipart requests,
deterministic MIME sniffing and small async fakes.
"""

import uuid
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

from starlette.requests import Request

from models.upload import NormalizedFile
from validation.validators import ContentSniffer

# (field name, filename, content, content type)
FilePart = Tuple[str, str, bytes, str]


def build_multipart(files: Iterable[FilePart], fields: Optional[Dict[str, str]] = None) -> Tuple[bytes, str]:
    """
    Encode files and plain fields as a multipart/form-data body.

    Returns:
        Tuple of (body, content-type header value)
    """
    boundary = f"----deedvault{uuid.uuid4().hex}"
    chunks: List[bytes] = []
    for name, value in (fields or {}).items():
        chunks.append(
            f"--{boundary}\r\nContent-Disposition: form-data; name=\"{name}\"\r\n\r\n{value}\r\n".encode("utf-8")
        )
    for field_name, filename, content, content_type in files:
        header = (
            f"--{boundary}\r\n"
            f"Content-Disposition: form-data; name=\"{field_name}\"; filename=\"{filename}\"\r\n"
            f"Content-Type: {content_type}\r\n\r\n"
        )
        chunks.append(header.encode("utf-8") + content + b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


def make_request(
    body: bytes = b"",
    content_type: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    query: Optional[Dict[str, str]] = None,
    chunk_size: int = 4096,
    disconnect_after: Optional[int] = None,
) -> Request:
    """
    Build a Starlette request whose body arrives in ``chunk_size`` pieces.

    Args:
        body: Raw request body
        content_type: Content-Type header value
        headers: Extra headers
        query: Query string parameters
        chunk_size: Size of each ASGI body message
        disconnect_after: Number of body messages sent before the client disconnects

    Returns:
        Request: Ready for ``parse_request``
    """
    raw_headers = []
    if content_type:
        raw_headers.append((b"content-type", content_type.encode("latin-1")))
    raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode("latin-1"), value.encode("latin-1")))

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/upload",
        "raw_path": b"/upload",
        "root_path": "",
        "query_string": urlencode(query or {}).encode("latin-1"),
        "headers": raw_headers,
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }

    pieces = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)] or [b""]
    messages = [
        {"type": "http.request", "body": piece, "more_body": index < len(pieces) - 1}
        for index, piece in enumerate(pieces)
    ]
    if disconnect_after is not None:
        messages = [dict(message, more_body=True) for message in messages[:disconnect_after]]

    async def receive():
        if messages:
            return messages.pop(0)
        return {"type": "http.disconnect"}

    return Request(scope, receive)


def make_file(filename: str, content: bytes, mime_type: str = "text/plain", size: Optional[int] = None) -> NormalizedFile:
    return NormalizedFile(
        filename=filename,
        mime_type=mime_type,
        size=len(content) if size is None else size,
        content=content,
    )


class StaticSniffer(ContentSniffer):
    """Content sniffer that always reports the same MIME type."""

    def __init__(self, mime_type: str):
        self.mime_type = mime_type
        self.calls = 0

    def detect(self, content: bytes) -> str:
        self.calls += 1
        return self.mime_type
