"""
core/codes.py -- Room codes, viewer hashes, and opaque tokens.

Everything here draws from the `secrets` module (OS CSPRNG). Nothing in the
package may mint an identifier with `random`.

Room codes:
  6 characters from a 32-symbol alphabet with 0/O and 1/I removed so codes
  survive being read aloud or typed from a screen. 32**6 is ~1.07e9 codes.
  Uniqueness among active rooms is NOT decided here -- rooms/store.py claims
  the code atomically and rooms/service.py retries on collision.

Viewer hashes:
  SHA-256 over room id, nickname, a timestamp, and 16 random bytes. The random
  component dominates: two joins with identical inputs at the same instant
  still produce different hashes. The hash is a bearer credential, so every
  trust boundary calls is_valid_hash_format() before touching storage.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import datetime

from core.clock import utcnow

ROOM_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
ROOM_CODE_LENGTH = 6

_CODE_RE = re.compile(r"[A-Z0-9]{6}")
_HASH_RE = re.compile(r"[a-f0-9]{64}")

# 128 bits
_VIEWER_SALT_BYTES = 16


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_valid_code_format(code: object) -> bool:
    """Return True if code looks like a room code (case-insensitive).

    Accepts the full [A-Z0-9] range rather than only the generation alphabet:
    a user who types an O for a 0 should get "room not found", not "bad format".
    """
    if not isinstance(code, str) or not code:
        return False
    return bool(_CODE_RE.fullmatch(normalize_code(code)))


def generate_viewer_hash(room_id: str, nickname: str, now: datetime | None = None) -> str:
    stamp = (now or utcnow()).isoformat()
    salt = secrets.token_hex(_VIEWER_SALT_BYTES)
    data = f"{room_id}-{nickname}-{stamp}-{salt}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def is_valid_hash_format(value: object) -> bool:
    """Exactly 64 lowercase hex characters. Uppercase input is rejected."""
    return isinstance(value, str) and bool(_HASH_RE.fullmatch(value))


def generate_opaque_token(byte_length: int = 32) -> str:
    """Hex token for magic links and second-factor challenges."""
    if byte_length < 16:
        raise ValueError("opaque tokens need at least 16 bytes of entropy")
    return secrets.token_hex(byte_length)
