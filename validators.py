"""
Input normalization for command arguments.

Everything a caller types passes through here before it can reach the
licensing API or the local store.
"""

import html
import re
import secrets
import string
from typing import Any, Iterable

from errors import InvalidFormat, OutOfRange

LICENSE_KEY_LENGTH = 32
LICENSE_KEY_ALPHABET = string.ascii_uppercase + string.digits

_LICENSE_KEY_RE = re.compile(r"[A-Z0-9]{%d}" % LICENSE_KEY_LENGTH)
_IDENTITY_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

def validate_license_key(raw: Any) -> str:
    if not isinstance(raw, str):
        raise InvalidFormat("License key must be text")
    # No trimming: padded input is a different length
    if not _LICENSE_KEY_RE.fullmatch(raw):
        raise InvalidFormat(
            f"License key must be exactly {LICENSE_KEY_LENGTH} characters of A-Z and 0-9"
        )
    return raw

def validate_integer(raw: Any, minimum: int, maximum: int) -> int:
    if isinstance(raw, bool):
        raise InvalidFormat("Expected a whole number")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise InvalidFormat(f"Expected a whole number, got {raw!r}")
    if isinstance(raw, float) and not raw.is_integer():
        raise InvalidFormat(f"Expected a whole number, got {raw!r}")
    if value < minimum or value > maximum:
        raise OutOfRange(f"Value {value} must be between {minimum} and {maximum}")
    return value

def validate_identity(raw: Any) -> str:
    if isinstance(raw, int) and not isinstance(raw, bool):
        raw = str(raw)
    if not isinstance(raw, str) or not _IDENTITY_RE.match(raw.strip()):
        raise InvalidFormat("Identifier must be 1-64 characters of letters, digits, '.', '_' or '-'")
    return raw.strip()

def validate_email(raw: Any) -> str:
    if not isinstance(raw, str) or not _EMAIL_RE.match(raw.strip()):
        raise InvalidFormat(f"Invalid email address: {raw!r}")
    return raw.strip().lower()

def validate_choice(raw: Any, choices: Iterable[str]) -> str:
    allowed = list(choices)
    if raw not in allowed:
        raise InvalidFormat(f"Expected one of {', '.join(allowed)}")
    return raw

def sanitize_for_display(raw: Any) -> str:
    """Escape markup-significant characters so upstream text renders literally."""
    return html.escape(str(raw), quote=True)

def generate_license_key() -> str:
    return "".join(secrets.choice(LICENSE_KEY_ALPHABET) for _ in range(LICENSE_KEY_LENGTH))
