"""Structural validation and image processing for uploads."""

from .processors import (
    ImageProcessor,
    PDFInspector,
    StructuralValidator,
    StructureReport,
    TemporaryFileManager,
)

__all__ = [
    "StructureReport",
    "TemporaryFileManager",
    "PDFInspector",
    "ImageProcessor",
    "StructuralValidator",
]
