"""File validation components and security scanning."""

import hashlib
import io
import logging
import math
import os
import zipfile
from collections import Counter
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import magic

from models.errors import FileSizeError, FilenameError, MimeTypeError
from models.upload import NormalizedFile, UploadConfiguration
from models.validation import SAFETY_FLOOR, ValidationResult
from validation.rules import (
    BASE64_EXECUTABLE_SIGNATURES,
    BIDI_OVERRIDE_PATTERN,
    BUILTIN_MALICIOUS_HASHES,
    CONTROL_CHAR_PATTERN,
    DANGEROUS_CONTENT_PATTERNS,
    DOUBLE_EXTENSION_BAIT,
    EXECUTABLE_EXTENSIONS,
    HOMOGRAPH_PATTERN,
    IMAGE_HEADERS,
    MIME_ALIASES,
    MIME_COMPATIBILITY_GROUPS,
    OFFICE_EXTERNAL_PATTERN,
    OFFICE_MACRO_PATTERN,
    OFFICE_ZIP_EXTENSIONS,
    OFFICE_ZIP_MIME_TYPES,
    PDF_REJECT_MARKERS,
    PDF_WARNING_MARKERS,
    POLYGLOT_EMBEDDED,
    POLYGLOT_PREFIXES,
    RESERVED_DEVICE_NAME,
    TEXTUAL_MIME_TYPES,
    TRUSTED_EXTENSION_TYPES,
    UNDETECTABLE_MIME_TYPES,
)

TEXT_SAMPLE_SIZE = 1000
PRINTABLE_RATIO = 0.95
HIGH_ENTROPY_THRESHOLD = 7.5
SIZE_TOLERANCE = 1024


def normalize_mime(mime_type: Optional[str]) -> str:
    """Lowercase, drop parameters and resolve known aliases."""
    if not mime_type:
        return ""
    base = mime_type.split(";", 1)[0].strip().lower()
    return MIME_ALIASES.get(base, base)


def is_textual_mime(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in TEXTUAL_MIME_TYPES


def mime_types_match(declared: Optional[str], detected: Optional[str]) -> bool:
    """
    Compare a declared MIME type with the one sniffed from content.

    Text subtypes are treated as one family since libmagic classifies plain
    text heuristically (a note containing markup sniffs as text/html).
    """
    declared, detected = normalize_mime(declared), normalize_mime(detected)
    if not declared or not detected:
        return False
    if declared == detected:
        return True
    if is_textual_mime(declared) and is_textual_mime(detected):
        return True
    return any(declared in group and detected in group for group in MIME_COMPATIBILITY_GROUPS)


def looks_like_text(content: bytes, sample_size: int = TEXT_SAMPLE_SIZE) -> bool:
    """Sample the leading bytes for a high printable ratio and no embedded NUL."""
    sample = content[:sample_size]
    if not sample or b"\x00" in sample:
        return False
    printable = sum(1 for byte in sample if 32 <= byte < 127 or byte in (9, 10, 13) or byte >= 128)
    return printable / len(sample) >= PRINTABLE_RATIO


def split_extensions(filename: str) -> List[str]:
    """All dot-separated suffixes of a filename, lowercased."""
    parts = Path(filename).name.lower().split(".")
    return parts[1:] if len(parts) > 1 else []


def find_path_injection(filename: str) -> Optional[str]:
    """
    Check a client-supplied filename for path injection before it is normalized.

    Returns:
        Optional[str]: Reason the name is unsafe, or None
    """
    if not filename or not filename.strip():
        return "Filename is empty"
    if ".." in filename or "/" in filename or "\\" in filename:
        return f"Filename '{filename}' contains path traversal sequences"
    if "\x00" in filename:
        return "Filename contains a NUL byte"
    stem = filename.split(".", 1)[0].strip()
    if RESERVED_DEVICE_NAME.match(stem):
        return f"Filename '{filename}' uses a reserved device name"
    return None


class HashGenerator:
    """Generates cryptographic hashes for blocklist lookup and deduplication."""

    def __init__(self, algorithm: str = "sha256"):
        self.algorithm = algorithm

    def generate_hash(self, content: bytes) -> str:
        return hashlib.new(self.algorithm, content).hexdigest()


class ContentSniffer:
    """Detects the real MIME type of a buffer with libmagic."""

    def detect(self, content: bytes) -> str:
        """
        Detect MIME type of file content.

        Args:
            content: File content as bytes

        Returns:
            str: Detected MIME type, application/octet-stream when undetectable
        """
        if not content:
            return "application/x-empty"
        try:
            mime_type = magic.from_buffer(content, mime=True)
        except magic.MagicException as e:
            logging.warning(f"Magic MIME detection failed: {e}")
            return "application/octet-stream"
        logging.debug(f"Detected MIME type using magic: {mime_type}")
        return normalize_mime(mime_type)


class FilenameInspector:
    """Flags filenames built to trick a human or a filesystem."""

    def __init__(self, blocked_extensions: Iterable[str] = ()):
        self.blocked_extensions = frozenset(blocked_extensions) | EXECUTABLE_EXTENSIONS

    def inspect(self, filename: str) -> Optional[str]:
        """
        Inspect a filename for spoofing and traversal tricks.

        Args:
            filename: Original client filename

        Returns:
            Optional[str]: Rejection reason, or None when the name is safe
        """
        if not filename or not filename.strip():
            return "Filename is empty"
        if ".." in filename:
            return "Filename contains path traversal sequence '..'"
        if "//" in filename or "\\\\" in filename:
            return "Filename contains doubled path separators"
        if BIDI_OVERRIDE_PATTERN.search(filename):
            return "Filename contains a right-to-left override character"
        if CONTROL_CHAR_PATTERN.search(filename):
            return "Filename contains control characters"
        if HOMOGRAPH_PATTERN.search(filename):
            return "Filename contains look-alike non-Latin characters"
        if self.has_disguised_extension(filename):
            return f"Filename '{filename}' hides an executable behind a document extension"
        return None

    def has_disguised_extension(self, filename: str) -> bool:
        extensions = split_extensions(filename)
        for trusted, actual in zip(extensions, extensions[1:]):
            if trusted in DOUBLE_EXTENSION_BAIT and actual in self.blocked_extensions:
                return True
        return False


class ContentAnalyzer:
    """Scans file bytes for active content."""

    def analyze(self, file: NormalizedFile, detected_mime: Optional[str]) -> Tuple[List[str], List[str]]:
        """
        Run text, PDF and office-document checks that apply to the file.

        Returns:
            Tuple of (errors, warnings)
        """
        errors: List[str] = []
        warnings: List[str] = []
        content = file.content
        declared = normalize_mime(file.mime_type)
        detected = normalize_mime(detected_mime)

        if is_textual_mime(declared) or looks_like_text(content):
            errors.extend(self.scan_text(content))

        if content.startswith(b"%PDF") or "application/pdf" in (declared, detected):
            pdf_errors, pdf_warnings = self.scan_pdf(content)
            errors.extend(pdf_errors)
            warnings.extend(pdf_warnings)

        if content.startswith(b"PK\x03\x04") and (
            declared in OFFICE_ZIP_MIME_TYPES or detected in OFFICE_ZIP_MIME_TYPES or file.extension in OFFICE_ZIP_EXTENSIONS
        ):
            errors.extend(self.scan_office_archive(content))

        return errors, warnings

    def scan_text(self, content: bytes) -> List[str]:
        found = []
        for label, pattern in DANGEROUS_CONTENT_PATTERNS:
            if pattern.search(content) and label not in found:
                found.append(label)
        errors = [f"Dangerous content detected: {label}" for label in found]
        for signature, label in BASE64_EXECUTABLE_SIGNATURES:
            if signature in content:
                errors.append(f"Encoded {label} embedded in text content")
        return errors

    def scan_pdf(self, content: bytes) -> Tuple[List[str], List[str]]:
        errors = []
        if any(marker.search(content) for marker in PDF_REJECT_MARKERS):
            errors.append("PDF contains embedded JavaScript")
        warnings = [message for marker, message in PDF_WARNING_MARKERS if marker.search(content)]
        return errors, warnings

    def scan_office_archive(self, content: bytes) -> List[str]:
        try:
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                member_blob = "\n".join(archive.namelist()).encode("utf-8")
        except zipfile.BadZipFile:
            # Truncated archives still get the raw-byte scan below
            member_blob = b""

        haystack = member_blob + content[:5000]
        errors = []
        if OFFICE_MACRO_PATTERN.search(haystack):
            errors.append("Office document contains macros")
        if OFFICE_EXTERNAL_PATTERN.search(haystack):
            errors.append("Office document contains external object references")
        return errors


class PolyglotDetector:
    """Detects files crafted to parse as an image and as markup."""

    def detect(self, content: bytes) -> Optional[str]:
        for prefix, label in POLYGLOT_PREFIXES:
            if content.startswith(prefix):
                return label
        if any(content.startswith(header) for header in IMAGE_HEADERS):
            for pattern in POLYGLOT_EMBEDDED:
                if pattern.search(content):
                    return "Image contains embedded script"
        return None


def shannon_entropy(content: bytes) -> float:
    """Shannon entropy in bits per byte."""
    if not content:
        return 0.0
    total = len(content)
    entropy = 0.0
    for count in Counter(content).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy


class SecurityValidator:
    """
    Scores an uploaded file and decides whether it is safe to persist.

    Checks run in order and stop at the first hard failure: filename safety,
    hash blocklist, magic number, content analysis, polyglot signatures,
    entropy and size consistency. Soft findings subtract from the score and
    a score under the safety floor is unsafe on its own.
    """

    FILENAME_PENALTY = 30
    MAGIC_NUMBER_PENALTY = 40
    CONTENT_PENALTY = 50
    WARNING_PENALTY = 5
    ENTROPY_PENALTY = 10
    SIZE_MISMATCH_PENALTY = 5

    def __init__(
        self,
        config: UploadConfiguration,
        sniffer: Optional[ContentSniffer] = None,
        malicious_hashes: Optional[Iterable[str]] = None,
    ):
        self.config = config
        self.sniffer = sniffer or ContentSniffer()
        self.filename_inspector = FilenameInspector(config.blocked_extensions)
        self.content_analyzer = ContentAnalyzer()
        self.polyglot_detector = PolyglotDetector()
        self.hash_generator = HashGenerator("sha256")
        self.malicious_hashes = set(BUILTIN_MALICIOUS_HASHES) | set(config.malicious_hashes)
        if malicious_hashes:
            self.malicious_hashes |= {h.lower() for h in malicious_hashes}

    def validate(self, file: NormalizedFile) -> ValidationResult:
        """
        Run the full check battery against one file.

        Args:
            file: The normalized upload

        Returns:
            ValidationResult: safe flag, 0..100 score, warnings, errors and reason
        """
        result = ValidationResult()
        content = file.content

        reason = self.filename_inspector.inspect(file.filename)
        if reason:
            result.fail(reason, penalty=self.FILENAME_PENALTY)
            return self._finish(file, result)

        result.file_hash = self.hash_generator.generate_hash(content)
        if result.file_hash in self.malicious_hashes:
            result.fail("File matches a known malicious hash", zero_score=True)
            return self._finish(file, result)

        if self.config.enable_magic_number_check and content:
            reason = self._check_magic_number(file, result)
            if reason:
                result.fail(reason, penalty=self.MAGIC_NUMBER_PENALTY)
                return self._finish(file, result)

        errors, warnings = self.content_analyzer.analyze(file, result.detected_mime_type)
        for warning in warnings:
            result.warn(warning, penalty=self.WARNING_PENALTY)
        if errors:
            result.fail(errors[0], penalty=self.CONTENT_PENALTY)
            result.errors.extend(errors[1:])
            return self._finish(file, result)

        polyglot = self.polyglot_detector.detect(content)
        if polyglot:
            result.fail(f"Polyglot file detected: {polyglot}", zero_score=True)
            return self._finish(file, result)

        entropy = shannon_entropy(content)
        if entropy > HIGH_ENTROPY_THRESHOLD:
            result.warn(f"High entropy content ({entropy:.2f} bits/byte)", penalty=self.ENTROPY_PENALTY)

        if not content:
            result.fail("Empty files are not accepted")
            return self._finish(file, result)
        if abs(file.size - len(content)) > SIZE_TOLERANCE:
            result.warn(
                f"Declared size {file.size} differs from actual size {len(content)}",
                penalty=self.SIZE_MISMATCH_PENALTY,
            )

        return self._finish(file, result)

    def _check_magic_number(self, file: NormalizedFile, result: ValidationResult) -> Optional[str]:
        detected = self.sniffer.detect(file.content)
        result.detected_mime_type = detected
        if detected in UNDETECTABLE_MIME_TYPES:
            return "Could not determine file type from content"
        if not mime_types_match(file.mime_type, detected):
            return f"Declared type '{file.mime_type}' does not match detected type '{detected}'"
        expected = TRUSTED_EXTENSION_TYPES.get(file.extension)
        if expected and not any(mime_types_match(candidate, detected) for candidate in expected):
            return f"Extension '.{file.extension}' does not match detected type '{detected}'"
        return None

    def _finish(self, file: NormalizedFile, result: ValidationResult) -> ValidationResult:
        result.apply_floor(SAFETY_FLOOR)
        if result.safe:
            logging.info(f"Security check passed for {file.filename} (score {result.score})")
        else:
            logging.warning(f"Security check failed for {file.filename}: {result.reason} (score {result.score})")
        return result


class PreUploadValidator:
    """Cheap checks that run before any content is inspected."""

    def __init__(self, config: UploadConfiguration):
        self.config = config
        self.filename_inspector = FilenameInspector(config.blocked_extensions)

    def validate(self, file: NormalizedFile) -> None:
        """
        Enforce the size ceiling, filename safety, extension blocklist and allow-list.

        Raises:
            FileSizeError: If the file exceeds the channel ceiling
            FilenameError: If the name is unsafe
            MimeTypeError: If the extension is blocked or the type not allowed
        """
        size = max(file.size, len(file.content))
        if size > self.config.max_file_size:
            raise FileSizeError(
                f"File size {size} bytes exceeds maximum allowed size {self.config.max_file_size} bytes",
                filename=file.filename,
            )

        reason = find_path_injection(file.filename) or self.filename_inspector.inspect(file.filename)
        if reason:
            raise FilenameError(reason, filename=file.filename)

        if file.extension in self.config.blocked_extensions:
            raise MimeTypeError(f"File extension '.{file.extension}' is blocked", filename=file.filename)

        if not self.config.is_mime_allowed(file.mime_type):
            raise MimeTypeError(f"File type '{file.mime_type}' is not allowed", filename=file.filename)


def sanitize_display_name(filename: str) -> str:
    """Basename of a client filename, safe to echo back in messages and logs."""
    name = os.path.basename(filename.replace("\\", "/")) if filename else ""
    return CONTROL_CHAR_PATTERN.sub("", name) or "unnamed"
