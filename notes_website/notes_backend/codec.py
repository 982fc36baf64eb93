"""
Note identifier codec.

Notes are stored under UUID ids. Clients see the canonical external form: the
16 UUID bytes in unpadded base64url (22 characters). Older clients stored ids
compressed with LZ-String; those are recognised by length and converted on read.
"""

import base64
import binascii
import re
from typing import Optional

from lzstring import LZString

from .domain import NotFoundError

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$")
BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# Shortest length of a base64-encoded 36 character UUID string, minus one.
# Canonical ids are far shorter, so anything longer is assumed LZ-String.
LEGACY_ID_THRESHOLD = (4 * 36) // 3 - 1

_lz = LZString()


class LegacyIdError(ValueError):
    """An id that looked LZ-String compressed could not be decompressed."""
    pass


def encode_note_id(internal: str) -> str:
    """Return the canonical external form of an internal UUID id."""
    raw = bytes.fromhex(internal.replace("-", ""))
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_note_id(external: Optional[str]) -> Optional[str]:
    """Return the internal UUID for an external id, or None if malformed or non-canonical."""
    if not external or not BASE64URL_PATTERN.match(external):
        return None
    padded = external + "=" * (-len(external) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 16:
        return None
    hexed = raw.hex()
    internal = f"{hexed[:8]}-{hexed[8:12]}-{hexed[12:16]}-{hexed[16:20]}-{hexed[20:]}"
    # the last character carries 4 unused bits; only the canonical spelling is accepted
    if encode_note_id(internal) != external:
        return None
    return internal


def check_note_id_valid(internal: Optional[str]) -> bool:
    """Internal ids are lowercase UUID strings."""
    return bool(internal) and UUID_PATTERN.match(internal) is not None


def looks_legacy_encoded(external: str) -> bool:
    return len(external) > LEGACY_ID_THRESHOLD


def decompress_legacy_id(external: str) -> str:
    """Decompress an LZ-String base64 id, raising LegacyIdError on failure."""
    try:
        value = _lz.decompressFromBase64(external)
    except Exception as e:  # lzstring fails in many ways on bad input
        raise LegacyIdError(f"cannot decompress {external!r}: {e!r}") from e
    if not value:
        raise LegacyIdError(f"cannot decompress {external!r}: empty result")
    return value


def require_note_id(external: Optional[str]) -> str:
    """Decode an id supplied by a client, raising NotFoundError if malformed."""
    internal = decode_note_id(external)
    if internal is None:
        raise NotFoundError("Note not found")
    return internal
