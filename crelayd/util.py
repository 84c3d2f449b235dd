from __future__ import annotations

import os

from .errors import InvalidRequest


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_text(value, *, max_chars: int) -> str | None:
    """Strip and vet a short single-line string; None when unusable."""
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Embedded newlines or NUL frequently cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def require_identity(value, *, max_chars: int, field: str = "identity") -> str:
    ident = normalize_text(value, max_chars=max_chars)
    if ident is None:
        raise InvalidRequest(f"invalid {field}")
    return ident


def pair_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent key for an identity pair."""
    return (a, b) if a <= b else (b, a)
