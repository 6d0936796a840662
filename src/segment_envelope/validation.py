"""
Input validation for public segment APIs.

Asset ids end up in envelope headers, CDN paths, policy locators and playlist
query strings, so they are restricted to a conservative character set.
"""

from __future__ import annotations

import math
import string
from urllib.parse import urlparse

from .crypto import MAX_SEGMENT_SIZE
from .errors import InvalidInputError

ASSET_ID_MAX_LENGTH: int = 256
MAX_SEGMENT_INDEX: int = 0xFFFFFFFF  # u32 on the wire
MAX_PLAYLIST_SEGMENTS: int = 10000

_ASSET_ID_CHARS = frozenset(string.ascii_letters + string.digits + "-_")
_URL_SCHEMES = ("http", "https", "tdf3")


def validate_asset_id(asset_id: str) -> str:
    """
    Validate an asset identifier.

    Raises:
        InvalidInputError: If empty, too long or containing characters
            outside ASCII alphanumerics, '-' and '_'
    """
    if not isinstance(asset_id, str) or not asset_id:
        raise InvalidInputError("assetID cannot be empty")
    if len(asset_id) > ASSET_ID_MAX_LENGTH:
        raise InvalidInputError(
            f"assetID exceeds maximum length of {ASSET_ID_MAX_LENGTH} characters"
        )
    if not set(asset_id) <= _ASSET_ID_CHARS:
        raise InvalidInputError("assetID contains invalid characters")
    return asset_id


def validate_segment_index(segment_index: int) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(segment_index, bool) or not isinstance(segment_index, int):
        raise InvalidInputError(f"Segment index must be an integer, got {type(segment_index).__name__}")
    if not 0 <= segment_index <= MAX_SEGMENT_INDEX:
        raise InvalidInputError(f"Segment index out of range: {segment_index}")
    return segment_index


def validate_duration(duration: float) -> float:
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        raise InvalidInputError("Segment duration must be a number")
    if not math.isfinite(duration) or duration <= 0:
        raise InvalidInputError(f"Segment duration must be positive, got {duration}")
    return float(duration)


def validate_segment_size(data: bytes) -> None:
    if len(data) > MAX_SEGMENT_SIZE:
        raise InvalidInputError(
            f"Segment too large: {len(data)} bytes (maximum {MAX_SEGMENT_SIZE})"
        )


def validate_url(url: str, schemes: tuple = _URL_SCHEMES) -> str:
    """
    Validate a URL and its scheme.

    Returns:
        The URL with any trailing slash removed

    Raises:
        InvalidInputError: If the URL has no host or an unsupported scheme
    """
    parsed = urlparse(url) if isinstance(url, str) else None
    if parsed is None or parsed.scheme not in schemes or not parsed.netloc:
        raise InvalidInputError(f"Invalid URL: {url}")
    return url.rstrip("/")
