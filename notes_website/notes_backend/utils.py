import hashlib
import hmac
import os
import time
import uuid
from datetime import datetime, UTC

# scrypt cost parameters for password hashing
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def make_id(prefix: str) -> str:
    """Generate a unique ID with a given prefix."""
    return f"{prefix}_{uuid.uuid4()}"


def make_note_id() -> str:
    """Generate a bare UUID4 string for a note (the codec expects UUIDs)."""
    return str(uuid.uuid4())


def time_now() -> str:
    """Return the current time in ISO format (UTC, no microseconds)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def hash_password(password: str) -> str:
    """Hash a password with scrypt, returning "salt$digest" in hex."""
    salt = os.urandom(16)
    digest = hashlib.scrypt(password.encode(), salt=salt, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a value produced by hash_password."""
    try:
        salt_hex, digest_hex = password_hash.split("$", 1)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    digest = hashlib.scrypt(password.encode(), salt=salt, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return hmac.compare_digest(digest.hex(), digest_hex)
