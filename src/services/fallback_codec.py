"""Offline fallback codec: distress signals as SMS-sized text.

When the device cannot reach the dispatch service, the SOS is packed into
a single text message and relayed through a low-bandwidth gateway::

    GA1*<case_ref>*<reporter_id>*<lat>*<lon>*<crc>

* ``GA1`` is the format version tag.
* ``case_ref`` and ``reporter_id`` are percent-escaped so they never
  contain ``*``, ``%``, whitespace or non-ASCII characters.
* Coordinates use exactly six decimal places (about 0.1 m).
* ``crc`` is four upper-case hex digits: the low 16 bits of CRC-32 over
  everything before the final ``*``.

Decoding tolerates text around the token, since carriers and people
add greetings, signatures and line breaks.
"""

from __future__ import annotations

import math
import re
import secrets
import zlib
from typing import Final
from urllib.parse import quote, unquote

import structlog

from src.models.dispatch import FallbackPayload, GeoPoint
from src.services.errors import MalformedPayload, PayloadTooLarge

logger = structlog.get_logger(__name__)

VERSION_TAG: Final[str] = "GA1"
SEPARATOR: Final[str] = "*"
DEFAULT_MAX_CHARS: Final[int] = 140

# Version tag, four escaped fields, then the checksum.
_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"(?<![0-9A-Za-z])(GA[0-9A-Za-z]*(?:\*[A-Za-z0-9._~%\-]*){4}\*[0-9A-Fa-f]{4})(?![0-9A-Za-z])"
)
_COORD_RE: Final[re.Pattern[str]] = re.compile(r"-?\d{1,3}\.\d{6}")


def _checksum(body: str) -> str:
    return f"{zlib.crc32(body.encode('ascii')) & 0xFFFF:04X}"


def _escape(value: str) -> str:
    return quote(value, safe="")


def _unescape(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"Field {value!r} is not valid percent-encoded UTF-8") from exc


def _coordinate(raw: str, limit: float, name: str) -> float:
    if not _COORD_RE.fullmatch(raw):
        raise MalformedPayload(f"{name} {raw!r} is not a fixed six-decimal number")
    value = float(raw)
    if not math.isfinite(value) or abs(value) > limit:
        raise MalformedPayload(f"{name} {raw!r} is out of range")
    return value


def new_placeholder_id() -> str:
    """Case reference for an SOS raised before the device ever got a case id."""
    return f"p{secrets.token_hex(5)}"


def encode(
    case_ref: str,
    reporter_id: str,
    location: GeoPoint,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """Pack a distress signal into a single SMS-safe ASCII token.

    The output depends only on the arguments, so re-sending the same SOS
    produces the same text.

    Parameters
    ----------
    case_ref:
        The case id if the device has one, else a value from
        :func:`new_placeholder_id`.
    reporter_id:
        Id of the person in distress.
    location:
        Resolved GPS fix; only latitude and longitude are carried.
    max_chars:
        Upper bound on the encoded length.

    Raises
    ------
    PayloadTooLarge
        The ids are too long to fit in *max_chars*.
    """
    if not case_ref or not reporter_id:
        raise ValueError("case_ref and reporter_id must be non-empty")

    body = SEPARATOR.join(
        (
            VERSION_TAG,
            _escape(case_ref),
            _escape(reporter_id),
            f"{location.latitude:.6f}",
            f"{location.longitude:.6f}",
        )
    )
    payload = f"{body}{SEPARATOR}{_checksum(body)}"
    if len(payload) > max_chars:
        raise PayloadTooLarge(len(payload), max_chars)
    return payload


def find_token(text: str) -> str:
    """Return the bare payload token inside *text*."""
    match = _TOKEN_RE.search(text or "")
    if match is None:
        raise MalformedPayload("No fallback payload found in message")
    return match.group(1)


def decode(text: str) -> FallbackPayload:
    """Parse a fallback payload out of an incoming message.

    Raises
    ------
    MalformedPayload
        No token was found, or the version, field count, checksum or
        coordinates do not check out.
    """
    token = find_token(text)
    fields = token.split(SEPARATOR)
    if len(fields) != 6:
        raise MalformedPayload(f"Expected 6 fields, got {len(fields)}")

    version, raw_case_ref, raw_reporter_id, raw_lat, raw_lon, crc = fields
    if version != VERSION_TAG:
        raise MalformedPayload(f"Unsupported payload version {version!r}")

    body = token[: token.rfind(SEPARATOR)]
    if crc.upper() != _checksum(body):
        raise MalformedPayload("Checksum mismatch")

    case_ref = _unescape(raw_case_ref)
    reporter_id = _unescape(raw_reporter_id)
    if not case_ref or not reporter_id:
        raise MalformedPayload("case_ref and reporter_id must be non-empty")

    return FallbackPayload(
        version=version,
        case_ref=case_ref,
        reporter_id=reporter_id,
        latitude=_coordinate(raw_lat, 90.0, "latitude"),
        longitude=_coordinate(raw_lon, 180.0, "longitude"),
    )
