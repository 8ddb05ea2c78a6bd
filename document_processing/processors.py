"""Structural validation and processing of uploaded documents and images."""

import io
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image, ImageOps, UnidentifiedImageError

from models.errors import ContentValidationError

MAX_IMAGE_DIMENSION = 10000
OPTIMIZED_MAX_SIZE = (2048, 2048)
OPTIMIZED_QUALITY = 85
THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_QUALITY = 80


@dataclass
class StructureReport:
    """Outcome of structural validation: computed metadata plus soft warnings."""
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class TemporaryFileManager:
    """Temporary files for parsers that buffer to disk, always removed after reading."""

    def __init__(self, temp_dir: Optional[str] = None, prefix: str = "upload_"):
        self.temp_dir = temp_dir
        self.prefix = prefix
        self.temp_files: Dict[str, str] = {}
        if temp_dir:
            os.makedirs(temp_dir, exist_ok=True)

    def create_temp_file(self, suffix: Optional[str] = None) -> Tuple[str, io.BufferedWriter]:
        """
        Create a temporary file opened for binary writing.

        Returns:
            Tuple of (file_id, writable handle)
        """
        file_id = uuid.uuid4().hex
        handle = tempfile.NamedTemporaryFile(
            delete=False, suffix=suffix, prefix=self.prefix, dir=self.temp_dir, mode="wb"
        )
        self.temp_files[file_id] = handle.name
        logging.debug(f"Created temporary file: {file_id} -> {handle.name}")
        return file_id, handle

    def read_and_cleanup(self, file_id: str) -> bytes:
        """Read a temporary file fully into memory and delete it."""
        path = self.temp_files[file_id]
        try:
            with open(path, "rb") as handle:
                return handle.read()
        finally:
            self.cleanup_temp_file(file_id)

    def cleanup_temp_file(self, file_id: str) -> bool:
        path = self.temp_files.pop(file_id, None)
        if path is None:
            return False
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        logging.debug(f"Cleaned up temporary file: {file_id}")
        return True


class PDFInspector:
    """Opens PDFs with PyMuPDF to detect malformed files and active content."""

    def inspect(self, content: bytes, filename: str = "") -> StructureReport:
        """
        Open the PDF and collect page count, forms and scripting markers.

        Args:
            content: PDF file content bytes
            filename: Original filename for messages

        Returns:
            StructureReport with page count and PDF metadata

        Raises:
            ContentValidationError: If the PDF is malformed or carries JavaScript
        """
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ContentValidationError(f"Malformed PDF: {e}", filename=filename) from e

        try:
            if not doc.is_pdf or doc.page_count == 0:
                raise ContentValidationError("Malformed PDF: no pages found", filename=filename)

            report = StructureReport()
            report.metadata = {
                "pages": doc.page_count,
                "pdf_version": self._get_pdf_version(doc),
                "is_encrypted": doc.is_encrypted,
                "title": (doc.metadata or {}).get("title", ""),
            }

            if self._has_javascript(doc):
                raise ContentValidationError("PDF contains embedded JavaScript", filename=filename)
            if doc.is_form_pdf:
                report.warnings.append("PDF contains interactive forms")
            if doc.embfile_count() > 0:
                report.warnings.append("PDF contains embedded files")
            return report
        finally:
            doc.close()

    def _has_javascript(self, doc) -> bool:
        if doc.is_encrypted:
            return False
        for xref in range(1, doc.xref_length()):
            try:
                obj = doc.xref_object(xref, compressed=False)
            except RuntimeError:
                continue
            if "/JavaScript" in obj or "/JS " in obj or "/JS(" in obj or "/JS<" in obj:
                return True
        return False

    def _get_pdf_version(self, doc) -> str:
        fmt = (doc.metadata or {}).get("format") or ""
        return fmt.replace("PDF ", "") if fmt else "unknown"


class ImageProcessor:
    """Verifies, resizes and thumbnails images with Pillow."""

    def inspect(self, content: bytes, filename: str = "") -> StructureReport:
        """
        Decode the image header and verify the pixel data.

        Raises:
            ContentValidationError: If the image cannot be decoded or is oversized
        """
        try:
            with Image.open(io.BytesIO(content)) as image:
                width, height = image.size
                image_format = image.format
                mode = image.mode
                image.verify()
        except Image.DecompressionBombError as e:
            raise ContentValidationError(f"Image dimensions too large: {e}", filename=filename) from e
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise ContentValidationError(f"Malformed image: {e}", filename=filename) from e

        if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
            raise ContentValidationError(
                f"Image dimensions {width}x{height} exceed {MAX_IMAGE_DIMENSION} pixels", filename=filename
            )

        report = StructureReport(metadata={"width": width, "height": height, "format": image_format, "mode": mode})
        if mode in ("I;16", "I;16B", "I;16L", "I", "F"):
            report.warnings.append(f"Unusual image bit depth ({mode})")
        return report

    def optimize(self, content: bytes) -> bytes:
        """Fit inside 2048x2048 and re-encode as progressive JPEG."""
        with Image.open(io.BytesIO(content)) as original:
            image = ImageOps.exif_transpose(original)
            image = self._to_rgb(image)
            image.thumbnail(OPTIMIZED_MAX_SIZE, Image.Resampling.LANCZOS)
            output = io.BytesIO()
            image.save(output, format="JPEG", quality=OPTIMIZED_QUALITY, progressive=True, optimize=True)
            return output.getvalue()

    def make_thumbnail(self, content: bytes) -> bytes:
        """Cover-crop to 300x300 JPEG."""
        with Image.open(io.BytesIO(content)) as original:
            image = self._to_rgb(ImageOps.exif_transpose(original))
            thumbnail = ImageOps.fit(image, THUMBNAIL_SIZE, Image.Resampling.LANCZOS)
            output = io.BytesIO()
            thumbnail.save(output, format="JPEG", quality=THUMBNAIL_QUALITY)
            return output.getvalue()

    def _to_rgb(self, image: Image.Image) -> Image.Image:
        if image.mode in ("RGBA", "LA", "P"):
            image = image.convert("RGBA")
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[-1])
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image


class StructuralValidator:
    """Dispatches content-type specific structural checks."""

    def __init__(self):
        self.pdf_inspector = PDFInspector()
        self.image_processor = ImageProcessor()

    def validate(self, content: bytes, mime_type: str, filename: str = "") -> StructureReport:
        """
        Validate document structure for the formats that have one.

        Args:
            content: File content bytes
            mime_type: Sniffed (or declared) MIME type
            filename: Original filename

        Returns:
            StructureReport: Empty report for formats without structural checks
        """
        if mime_type == "application/pdf":
            return self.pdf_inspector.inspect(content, filename)
        if mime_type.startswith("image/") and mime_type != "image/svg+xml":
            return self.image_processor.inspect(content, filename)
        return StructureReport()
