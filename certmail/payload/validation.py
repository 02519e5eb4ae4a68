"""Integrity checks for base64 encoded documents.

Every check runs even when an earlier one fails, so a single verdict lists all
problems with a payload. A signature mismatch is reported as a warning rather
than an error because some generators wrap the PDF header unusually.

Example:
    >>> from certmail.payload import EncodedDocument, validate
    >>> result = validate(EncodedDocument.from_data_url(certificate_url))
    >>> if not result.ok:
    ...     print(result.errors)
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field

import puremagic

from certmail.errors import ValidationFailed
from certmail.payload.constants import (
    DEFAULT_MAX_DOCUMENT_SIZE,
    MAGIC_BYTES,
    MAGIC_PREFIX_CHARS,
    MAX_WHITESPACE_RATIO,
    MIN_DOCUMENT_SIZE,
    SUPPORTED_MEDIA_TYPES,
)
from certmail.payload.document import EncodedDocument

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_BASE64_TEXT = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of validate().

    Attributes:
        ok: True when no hard check failed.
        errors: Hard failures, empty iff ok.
        warnings: Soft findings such as a signature mismatch.
        decoded_size_bytes: Estimated size of the decoded document.
        cleaned_data: The whitespace-free base64 text. This is the only
            representation the MIME builder may put on the wire.
        original_length: Length of the encoded text as received.
    """

    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    decoded_size_bytes: int = 0
    cleaned_data: str = field(default="", repr=False)
    original_length: int = 0

    @property
    def cleaned_length(self) -> int:
        return len(self.cleaned_data)

    def raise_for_errors(self) -> None:
        """Raise ValidationFailed if the verdict is negative."""
        if not self.ok:
            raise ValidationFailed(self.errors)


def clean_base64(text: str) -> str:
    """Remove all whitespace (spaces, tabs, CR, LF) from base64 text."""
    return _WHITESPACE.sub("", text)


def estimate_decoded_size(cleaned: str) -> int:
    """Estimate the decoded byte count of whitespace-free base64 text."""
    pad_count = len(cleaned) - len(cleaned.rstrip("="))
    return max(len(cleaned) * 3 // 4 - pad_count, 0)


def _describe_content(prefix: bytes) -> str:
    """Best-effort name of what the decoded prefix looks like."""
    try:
        detected = puremagic.magic_string(prefix)
    except (puremagic.PureError, ValueError):
        return "unrecognized content"
    mime_types = sorted({match.mime_type for match in detected if match.mime_type})
    return ", ".join(mime_types) or "unrecognized content"


def _check_signature(
    cleaned: str, media_type: str, errors: list[str], warnings: list[str]
) -> None:
    signatures = MAGIC_BYTES.get(media_type)
    if not signatures:
        return

    usable = min(len(cleaned), MAGIC_PREFIX_CHARS)
    usable -= usable % 4
    if usable == 0:
        # Nothing decodable, the format and size checks already report this
        return

    try:
        prefix = base64.b64decode(cleaned[:usable], validate=True)
    except (binascii.Error, ValueError) as e:
        # ValueError covers non-ASCII input, which binascii never sees
        errors.append(f"Base64 decode test failed: {e}")
        return

    if any(prefix.startswith(signature) for signature in signatures):
        return

    expected = ", ".join(signature.hex() for signature in signatures)
    warnings.append(
        f"Decoded content does not start with the {media_type} signature "
        f"(expected [{expected}], got {prefix[:8].hex()}, looks like: {_describe_content(prefix)})"
    )


def validate(
    document: EncodedDocument,
    *,
    min_bytes: int = MIN_DOCUMENT_SIZE,
    max_bytes: int = DEFAULT_MAX_DOCUMENT_SIZE,
    check_magic: bool = True,
) -> ValidationResult:
    """Validate an encoded document without decoding all of it.

    Args:
        document: The encoded document to inspect.
        min_bytes: Smallest acceptable decoded size.
        max_bytes: Largest acceptable decoded size.
        check_magic: Whether to compare the decoded prefix against the
            signature of the declared media type.

    Returns:
        A ValidationResult listing every problem found.
    """
    errors: list[str] = []
    warnings: list[str] = []
    original = document.data or ""

    if not original:
        errors.append("Payload is empty")

    if document.media_type not in SUPPORTED_MEDIA_TYPES:
        errors.append(
            f"Unsupported media type '{document.media_type}', "
            f"expected one of: {', '.join(sorted(SUPPORTED_MEDIA_TYPES))}"
        )

    cleaned = clean_base64(original)
    removed = len(original) - len(cleaned)
    if original and removed > len(original) * MAX_WHITESPACE_RATIO:
        errors.append(
            f"Significant data loss while stripping whitespace "
            f"({removed} of {len(original)} characters removed), payload is likely corrupted"
        )

    if not _BASE64_TEXT.match(cleaned):
        errors.append("Invalid base64 characters found")
    if len(cleaned) % 4 != 0:
        errors.append(f"Invalid base64 length {len(cleaned)} - not a multiple of 4")

    decoded_size = estimate_decoded_size(cleaned)
    if decoded_size < min_bytes:
        errors.append(
            f"Estimated file size {decoded_size} bytes is below the minimum of {min_bytes} bytes"
        )
    if decoded_size > max_bytes:
        errors.append(
            f"Estimated file size {decoded_size} bytes exceeds the maximum of {max_bytes} bytes"
        )

    if check_magic:
        _check_signature(cleaned, document.media_type, errors, warnings)

    if errors:
        logger.debug("Payload validation failed: %s", errors)

    return ValidationResult(
        ok=not errors,
        errors=errors,
        warnings=warnings,
        decoded_size_bytes=decoded_size,
        cleaned_data=cleaned,
        original_length=len(original),
    )
