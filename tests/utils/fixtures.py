"""
Builders for realistic upload payloads.

Images are produced with Pillow and PDFs with PyMuPDF so that libmagic and
the structural validators see genuine files.
"""

import io
import zipfile
from typing import Tuple

import fitz  # PyMuPDF
from PIL import Image

# The standard antivirus test string; its sha256 is on the built-in blocklist
EICAR_CONTENT = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!H+H*"

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def make_text_content(lines: int = 3) -> bytes:
    """Plain deed notes without anything the content scanner would flag."""
    body = "\n".join(f"Title deed note {i}: parcel registered to the pledging owner." for i in range(1, lines + 1))
    return (body + "\n").encode("utf-8")


def _gradient(size: Tuple[int, int], mode: str = "RGB") -> Image.Image:
    width, height = size
    image = Image.new("RGB", size)
    pixels = image.load()
    for x in range(width):
        for y in range(height):
            pixels[x, y] = (x * 255 // max(width - 1, 1), y * 255 // max(height - 1, 1), 128)
    return image.convert(mode) if mode != "RGB" else image


def make_jpeg(size: Tuple[int, int] = (64, 48)) -> bytes:
    output = io.BytesIO()
    _gradient(size).save(output, format="JPEG", quality=90)
    return output.getvalue()


def make_png(size: Tuple[int, int] = (64, 48), mode: str = "RGB") -> bytes:
    output = io.BytesIO()
    _gradient(size, mode).save(output, format="PNG")
    return output.getvalue()


def make_pdf(text: str = "Title deed - parcel 42", pages: int = 1) -> bytes:
    """A minimal valid PDF with one line of text per page."""
    doc = fitz.open()
    try:
        for number in range(pages):
            page = doc.new_page()
            page.insert_text((72, 72), f"{text} (page {number + 1})")
        return doc.tobytes()
    finally:
        doc.close()


def make_docx(with_macros: bool = False) -> bytes:
    """A zip container laid out like a Word document, optionally carrying a VBA project."""
    output = io.BytesIO()
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", '<?xml version="1.0"?><Types/>')
        archive.writestr("word/document.xml", '<?xml version="1.0"?><w:document/>')
        if with_macros:
            archive.writestr("word/vbaProject.bin", b"\xd0\xcf\x11\xe0 fake vba")
    return output.getvalue()
