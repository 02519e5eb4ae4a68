"""Encoded documents as handed over by the certificate generator."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from certmail.payload.constants import BASE64_ENCODING

_DATA_URL_PATTERN = re.compile(r"^data:(?P<media_type>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.S)


class InvalidDataUrlError(ValueError):
    """Raised when a string is not a ``data:<type>;base64,<payload>`` URL."""


@dataclass(frozen=True)
class EncodedDocument:
    """A base64 payload tagged with its media type.

    Attributes:
        media_type: Declared media type, e.g. 'application/pdf'.
        data: The base64 text exactly as received (may contain whitespace).
        encoding: Always 'base64'.

    Example:
        >>> document = EncodedDocument.from_data_url("data:application/pdf;base64,JVBERi0x")
        >>> document.media_type
        'application/pdf'
    """

    media_type: str
    data: str = field(repr=False)
    encoding: str = BASE64_ENCODING

    def __post_init__(self) -> None:
        if self.encoding != BASE64_ENCODING:
            raise ValueError(f"Unsupported encoding '{self.encoding}', only base64 is supported")

    @classmethod
    def from_data_url(cls, url: str) -> EncodedDocument:
        """Parse a data URL into an EncodedDocument.

        Raises:
            InvalidDataUrlError: If the string is not a base64 data URL.
        """
        match = _DATA_URL_PATTERN.match(url or "")
        if match is None:
            raise InvalidDataUrlError(
                "Invalid data URL format - must look like data:<media type>;base64,<payload>"
            )
        return cls(media_type=match.group("media_type").lower(), data=match.group("data"))

    def __len__(self) -> int:
        return len(self.data)
