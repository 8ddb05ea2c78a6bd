"""Signature and pattern catalogues used by the security validator."""

import re

# Extensions whose expected content type is known; the sniffed type must be one of these
TRUSTED_EXTENSION_TYPES = {
    "jpg": {"image/jpeg"},
    "jpeg": {"image/jpeg"},
    "png": {"image/png"},
    "gif": {"image/gif"},
    "webp": {"image/webp"},
    "pdf": {"application/pdf"},
    "doc": {"application/msword", "application/cdfv2", "application/x-ole-storage"},
    "docx": {
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/zip",
    },
    "xls": {"application/vnd.ms-excel", "application/cdfv2", "application/x-ole-storage"},
    "xlsx": {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/zip",
    },
    "txt": {"text/plain"},
    "csv": {"text/csv", "text/plain"},
}

# Extensions a disguised executable typically hides behind
DOUBLE_EXTENSION_BAIT = {"jpg", "jpeg", "png", "gif", "pdf", "doc", "docx", "xls", "xlsx", "txt"}

EXECUTABLE_EXTENSIONS = frozenset({
    "exe", "dll", "bat", "cmd", "com", "scr", "pif", "msi", "hta", "cpl", "jar",
    "js", "jse", "vbs", "vbe", "wsf", "wsh", "ps1", "sh", "lnk", "reg",
})

# Known benign aliases between declared and sniffed MIME types
MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "text/xml": "application/xml",
    "application/csv": "text/csv",
    "application/x-pdf": "application/pdf",
    "application/x-zip-compressed": "application/zip",
}

# Declared types that libmagic reports under a shared container type
MIME_COMPATIBILITY_GROUPS = [
    {
        "application/zip",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    },
    {
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
        "application/cdfv2",
        "application/x-ole-storage",
    },
]

TEXTUAL_MIME_TYPES = {"application/json", "application/xml", "text/csv"}

OFFICE_ZIP_MIME_TYPES = MIME_COMPATIBILITY_GROUPS[0] - {"application/zip"}
OFFICE_ZIP_EXTENSIONS = {"docx", "xlsx", "pptx", "docm", "xlsm", "pptm"}

UNDETECTABLE_MIME_TYPES = {"application/octet-stream", "application/x-empty", "inode/x-empty"}

# (label, compiled pattern) pairs scanned in text-like content
DANGEROUS_CONTENT_PATTERNS = [
    ("server-side script", re.compile(rb"<\?php", re.IGNORECASE)),
    ("script execution call", re.compile(rb"\b(eval|system|exec|shell_exec|passthru)\s*\(", re.IGNORECASE)),
    ("request superglobal access", re.compile(rb"\$_(POST|GET|REQUEST|COOKIE)\s*\[", re.IGNORECASE)),
    ("script tag", re.compile(rb"<script", re.IGNORECASE)),
    ("javascript URL", re.compile(rb"javascript\s*:", re.IGNORECASE)),
    (
        "inline event handler",
        re.compile(rb"\bon(load|error|click|mouseover|focus|blur|submit|change|keydown|keyup)\s*=", re.IGNORECASE),
    ),
    ("SQL injection", re.compile(rb"\bunion\s+(all\s+)?select\b", re.IGNORECASE)),
    ("SQL injection", re.compile(rb"\bdrop\s+table\b", re.IGNORECASE)),
    ("SQL injection", re.compile(rb"\binsert\s+into\b", re.IGNORECASE)),
    ("SQL injection", re.compile(rb"\bselect\s+\*\s+from\b", re.IGNORECASE)),
    ("XML external entity", re.compile(rb"<!DOCTYPE[^>]*\[", re.IGNORECASE)),
    ("XML external entity", re.compile(rb"<!ENTITY", re.IGNORECASE)),
    ("XML external entity", re.compile(rb"SYSTEM\s+[\"']file:", re.IGNORECASE)),
    ("server-side include", re.compile(rb"<!--\s*#\s*(include|exec)", re.IGNORECASE)),
    ("encoded path traversal", re.compile(rb"%2e%2e(/|%2f|%5c)", re.IGNORECASE)),
    ("path traversal", re.compile(rb"\.\./")),
]

# Base64 prefixes of executables and containers embedded in text
BASE64_EXECUTABLE_SIGNATURES = [
    (b"TVqQAAMAAAAEAAAA", "Windows executable"),
    (b"f0VMRgI", "ELF binary"),
    (b"UEsDBBQ", "ZIP archive"),
    (b"0M8R4KGxGuE", "OLE compound document"),
    (b"IyEvYmluL", "shell script"),
]

PDF_REJECT_MARKERS = [re.compile(rb"/JavaScript\b"), re.compile(rb"/JS\b")]
PDF_WARNING_MARKERS = [
    (re.compile(rb"/Launch\b"), "PDF contains launch actions"),
    (re.compile(rb"/OpenAction\b"), "PDF contains auto-open actions"),
    (re.compile(rb"/EmbeddedFiles?\b"), "PDF contains embedded files"),
    (re.compile(rb"/AcroForm\b"), "PDF contains interactive forms"),
]

OFFICE_MACRO_PATTERN = re.compile(rb"vbaProject|VBProject|macros/", re.IGNORECASE)
OFFICE_EXTERNAL_PATTERN = re.compile(rb"externalLink|oleObject", re.IGNORECASE)

IMAGE_HEADERS = [b"\xff\xd8\xff", b"\x89PNG\r\n\x1a\n", b"GIF87a", b"GIF89a"]

# Leading bytes that read as an image to one parser and markup to another
POLYGLOT_PREFIXES = [
    (b"\xff\xd8\xff<", "JPEG header followed by markup"),
    (b"GIF8<", "GIF header followed by markup"),
    (b"\x89PNG<", "PNG header followed by markup"),
]
POLYGLOT_EMBEDDED = [re.compile(rb"<script", re.IGNORECASE), re.compile(rb"<\?php", re.IGNORECASE)]

# Homograph ranges: Greek and Cyrillic letters that mimic Latin ones
HOMOGRAPH_PATTERN = re.compile("[\u0370-\u03ff\u0400-\u04ff]")
BIDI_OVERRIDE_PATTERN = re.compile("[\u202a-\u202e\u2066-\u2069]")
CONTROL_CHAR_PATTERN = re.compile("[\x00-\x1f\x7f]")
RESERVED_DEVICE_NAME = re.compile(r"^(con|prn|aux|nul|com\d|lpt\d)$", re.IGNORECASE)

# sha256 digests of known-malicious payloads (EICAR test file)
BUILTIN_MALICIOUS_HASHES = frozenset({
    "275a021bbfb6489e54d471899f7db9d1663fc695ec2fe2a2c4538aabf651fd0f",
})
