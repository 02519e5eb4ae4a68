"""Encoded document handling for certificate delivery.

This package parses data URLs into EncodedDocument values and validates the
base64 payload before anything is sent.

Example:
    >>> from certmail.payload import EncodedDocument, validate
    >>> document = EncodedDocument.from_data_url(certificate_url)
    >>> result = validate(document)
    >>> result.ok, result.decoded_size_bytes
"""

from certmail.payload.constants import (
    DEFAULT_MAX_DOCUMENT_SIZE,
    DIAGNOSTIC_MAX_DOCUMENT_SIZE,
    MIN_DOCUMENT_SIZE,
    PDF_MEDIA_TYPE,
)
from certmail.payload.document import EncodedDocument, InvalidDataUrlError
from certmail.payload.validation import (
    ValidationResult,
    clean_base64,
    estimate_decoded_size,
    validate,
)

__all__ = [
    "DEFAULT_MAX_DOCUMENT_SIZE",
    "DIAGNOSTIC_MAX_DOCUMENT_SIZE",
    "EncodedDocument",
    "InvalidDataUrlError",
    "MIN_DOCUMENT_SIZE",
    "PDF_MEDIA_TYPE",
    "ValidationResult",
    "clean_base64",
    "estimate_decoded_size",
    "validate",
]
