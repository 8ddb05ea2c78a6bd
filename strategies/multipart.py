"""Upload strategies that drive python-multipart's streaming parser directly."""

import io
from typing import Dict, List, Optional, Tuple

from fastapi import Request
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from document_processing.processors import TemporaryFileManager
from models.errors import ExtractionError
from models.upload import FieldConfig, StrategyKind
from strategies.base import DEFAULT_CONTENT_TYPE, ParsedPart, UploadStrategy

MAX_FIELD_SIZE = 1024 * 1024


class _PartCollector:
    """Accumulates headers and data handed over by MultipartParser callbacks."""

    def __init__(self, strategy: "MultipartStreamStrategy", field_config: Optional[FieldConfig]):
        self.strategy = strategy
        self.field_config = field_config
        self.parts: List[ParsedPart] = []
        self.fields: Dict[str, str] = {}
        self._headers: Dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._current: Optional[ParsedPart] = None
        self._field_name: Optional[str] = None
        self._field_data = bytearray()
        self._sink = None

    def callbacks(self) -> dict:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
        }

    def on_part_begin(self) -> None:
        self._headers = {}
        self._current = None
        self._field_name = None
        self._field_data = bytearray()
        self._sink = None

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        _, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        name = options.get(b"name", b"").decode("utf-8", errors="replace")
        filename = options.get(b"filename")
        if filename is None:
            self._field_name = name
            return

        filename = filename.decode("utf-8", errors="replace")
        content_type = self._headers.get(b"content-type", b"").decode("latin-1").strip() or DEFAULT_CONTENT_TYPE
        if not filename:
            # Untouched file input
            self._field_name = None
            return

        self.strategy.precheck_part(filename, content_type)
        if len(self.parts) >= self.strategy.config.max_files:
            raise ExtractionError(f"Too many files: more than {self.strategy.config.max_files} submitted")
        if self.field_config is not None and not self.field_config.accepts(name):
            raise ExtractionError(f"Unexpected file field '{name}'")

        self._current = ParsedPart(field_name=name, filename=filename, content_type=content_type)
        self._sink = self.strategy.open_sink(self._current)
        self.parts.append(self._current)

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        chunk = data[start:end]
        if self._current is not None:
            part = self._current
            part.size += len(chunk)
            if part.size > self.strategy.config.max_file_size:
                # Stop buffering; the size check downstream rejects this file alone
                part.truncated = True
                return
            self._sink.write(chunk)
        elif self._field_name is not None:
            self._field_data.extend(chunk)
            if len(self._field_data) > MAX_FIELD_SIZE:
                raise ExtractionError(f"Form field '{self._field_name}' exceeds {MAX_FIELD_SIZE} bytes")

    def on_part_end(self) -> None:
        if self._current is not None:
            self.strategy.close_sink(self._current, self._sink)
        elif self._field_name is not None:
            self.fields.setdefault(self._field_name, self._field_data.decode("utf-8", errors="replace"))
        self._current = None
        self._sink = None

    def abort(self) -> None:
        """Close the sink of a part interrupted mid-body."""
        if self._sink is not None:
            self._sink.close()
            self._sink = None
        self._current = None


class MultipartStreamStrategy(UploadStrategy):
    """Feeds ``request.stream()`` chunks through MultipartParser."""

    async def parse_request(self, request: Request, field_config: Optional[FieldConfig] = None) -> None:
        content_type, params = parse_options_header(request.headers.get("content-type", ""))
        if content_type != b"multipart/form-data":
            self.store_parts(request, [], {}, field_config)
            return

        boundary = params.get(b"boundary")
        if not boundary:
            raise ExtractionError("Multipart request is missing its boundary")

        collector = _PartCollector(self, field_config)
        parser = MultipartParser(boundary, callbacks=collector.callbacks())
        try:
            async for chunk in request.stream():
                if chunk:
                    parser.write(chunk)
            parser.finalize()
        except MultipartParseError as e:
            collector.abort()
            self.release(collector.parts)
            raise ExtractionError(f"Malformed multipart body: {e}") from e
        except Exception:
            collector.abort()
            self.release(collector.parts)
            raise

        self.store_parts(request, collector.parts, collector.fields, field_config)

    def open_sink(self, part: ParsedPart):
        raise NotImplementedError

    def close_sink(self, part: ParsedPart, sink) -> None:
        raise NotImplementedError


class StreamingUploadStrategy(MultipartStreamStrategy):
    """Buffers each file part in memory as it streams in."""

    kind = StrategyKind.STREAMING

    def open_sink(self, part: ParsedPart) -> io.BytesIO:
        return io.BytesIO()

    def close_sink(self, part: ParsedPart, sink: io.BytesIO) -> None:
        part.content = sink.getvalue()


class TempFileUploadStrategy(MultipartStreamStrategy):
    """
    Buffers each file part to a temporary file under the channel temp folder.

    Temp files are read back and deleted during ``extract_files``, on every
    path including failures.
    """

    kind = StrategyKind.TEMPFILE

    def __init__(self, config):
        super().__init__(config)
        self.temp_files = TemporaryFileManager(temp_dir=str(config.temp_dir), prefix="upload_")

    def open_sink(self, part: ParsedPart):
        file_id, handle = self.temp_files.create_temp_file(suffix=".part")
        part.temp_file_id = file_id
        return handle

    def close_sink(self, part: ParsedPart, sink) -> None:
        sink.close()

    def load_content(self, part: ParsedPart) -> bytes:
        if part.temp_file_id is None:
            return part.content
        content = self.temp_files.read_and_cleanup(part.temp_file_id)
        part.temp_file_id = None
        return content

    def release(self, parts: List[ParsedPart]) -> None:
        for part in parts:
            if part.temp_file_id is not None:
                self.temp_files.cleanup_temp_file(part.temp_file_id)
                part.temp_file_id = None

    def pending_temp_files(self) -> Tuple[str, ...]:
        return tuple(self.temp_files.temp_files.values())
