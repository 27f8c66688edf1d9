"""
rooms/sanitize.py -- Viewer nickname and avatar normalization.

Nicknames are rendered by other viewers' browsers, so markup is removed
server-side before a viewer hash is minted:

  1. NFKC normalization folds compatibility forms (fullwidth letters and
     brackets, ligatures) into their plain equivalents.
  2. <script> and <style> blocks are dropped together with their content.
  3. Remaining tags are stripped, keeping their text.
  4. HTML entities are unescaped and the result is NFKC-normalized again,
     then any angle brackets left over are dropped so an encoded tag cannot
     reappear.
  5. Control and format characters are removed.
  6. Whitespace runs collapse to one space; the result is trimmed.

A nickname that is empty or longer than NICKNAME_MAX_LENGTH afterwards is
rejected. "<script>alert(1)</script>" therefore fails: nothing is left.

Avatars are a single emoji. Anything that does not look like one falls back to
DEFAULT_AVATAR instead of failing the join.
"""

from __future__ import annotations

import html
import re
import unicodedata

from core.errors import ValidationError
from rooms.models import DEFAULT_AVATAR

NICKNAME_MAX_LENGTH = 20
# Upper bound on the raw value; keeps the regex work bounded.
NICKNAME_RAW_MAX_LENGTH = 200

# Family / flag sequences run long in code points.
AVATAR_MAX_CODEPOINTS = 25

_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*?(</\1\s*>|$)", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>?")
_WS_RE = re.compile(r"\s+")

# Zero-width joiner and variation selectors glue multi-codepoint emoji.
_EMOJI_GLUE = {"‍", "︎", "️", "⃣"}


def sanitize_nickname(raw: object) -> str:
    """Return the display-safe nickname or raise ValidationError."""
    if not isinstance(raw, str):
        raise ValidationError("Nickname must be a string.")
    if len(raw) > NICKNAME_RAW_MAX_LENGTH:
        raise ValidationError(f"Nickname must be {NICKNAME_MAX_LENGTH} characters or less.")

    text = unicodedata.normalize("NFKC", raw)
    text = _BLOCK_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = unicodedata.normalize("NFKC", html.unescape(text))
    text = text.replace("<", "").replace(">", "")
    text = "".join(ch for ch in text if ch.isspace() or unicodedata.category(ch)[0] != "C")
    text = _WS_RE.sub(" ", text).strip()

    if not text:
        raise ValidationError("Nickname must contain visible text.")
    if len(text) > NICKNAME_MAX_LENGTH:
        raise ValidationError(f"Nickname must be {NICKNAME_MAX_LENGTH} characters or less.")
    return text


def _is_emoji_part(ch: str) -> bool:
    if ch in _EMOJI_GLUE:
        return True
    # So covers pictographs and regional indicators, Sk the skin-tone modifiers,
    # Mn the combining marks used by keycap and tag sequences.
    return unicodedata.category(ch) in ("So", "Sk", "Mn") or 0xE0020 <= ord(ch) <= 0xE007F


def normalize_avatar(raw: object) -> str:
    if not isinstance(raw, str):
        return DEFAULT_AVATAR
    value = raw.strip()
    if not value or len(value) > AVATAR_MAX_CODEPOINTS:
        return DEFAULT_AVATAR
    if unicodedata.category(value[0]) != "So":
        return DEFAULT_AVATAR
    if not all(_is_emoji_part(ch) for ch in value):
        return DEFAULT_AVATAR
    return value
