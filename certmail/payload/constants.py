"""Size limits and signatures for encoded documents.

Size Limits:
    Decoded documents smaller than MIN_DOCUMENT_SIZE cannot be a real
    certificate. The default ceiling (DEFAULT_MAX_DOCUMENT_SIZE, 10MB) matches
    the common email attachment limit; diagnostic call sites use
    DIAGNOSTIC_MAX_DOCUMENT_SIZE (50MB) instead.
"""

MIN_DOCUMENT_SIZE = 1000

DEFAULT_MAX_DOCUMENT_SIZE = 10 * 1024 * 1024

DIAGNOSTIC_MAX_DOCUMENT_SIZE = 50 * 1024 * 1024

PDF_MEDIA_TYPE = "application/pdf"

SUPPORTED_MEDIA_TYPES: frozenset[str] = frozenset({PDF_MEDIA_TYPE})

BASE64_ENCODING = "base64"

# Share of characters that may be whitespace before the payload is considered
# mangled in transit
MAX_WHITESPACE_RATIO = 0.05

# Magic bytes (file signatures) per media type
MAGIC_BYTES: dict[str, list[bytes]] = {
    PDF_MEDIA_TYPE: [b"%PDF"],
}

# Number of base64 characters decoded for the signature check (6 bytes)
MAGIC_PREFIX_CHARS = 8
