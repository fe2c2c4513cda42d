"""Structural validation of change-stream resume tokens.

The token is opaque: only its shape is checked, never its meaning.
"""

import re
from collections.abc import Mapping
from typing import Any, Optional

DEFAULT_TOKEN_FIELD = "_data"

# Base64-like alphabet; MongoDB's hex-encoded ``_data`` is a subset of it
RESUME_TOKEN_PATTERN = re.compile(r"[A-Za-z0-9+/=]+")


def describe_invalid_token(token: Any, field: str = DEFAULT_TOKEN_FIELD) -> Optional[str]:
    """Return why ``token`` is structurally invalid, or None when it is valid."""
    if token is None:
        return "token is None"
    if not isinstance(token, Mapping):
        return f"token is not a mapping ({type(token).__name__})"
    if token.get(field) is None:
        return f"token missing {field} field"
    payload = token[field]
    if not isinstance(payload, str):
        return f"token {field} is not a string ({type(payload).__name__})"
    if not payload.strip():
        return f"token {field} is empty"
    if RESUME_TOKEN_PATTERN.fullmatch(payload) is None:
        return f"token {field} has invalid format"
    return None


def validate_resume_token(token: Any, field: str = DEFAULT_TOKEN_FIELD) -> bool:
    """Check resume token structure. Never raises."""
    try:
        return describe_invalid_token(token, field) is None
    except Exception:
        # Mappings with misbehaving __getitem__/get
        return False
