"""Input checks applied before any store access."""

from typing import Any

from bookclub.platform.errors import ValidationError

MAX_ID_LENGTH = 64


def require_id(value: Any, name: str = "user_id") -> str:
    """Return the stripped id, or raise ValidationError for blank and malformed ids."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{name} is required")
    normalized = str(value).strip()
    if not normalized:
        raise ValidationError(f"{name} is required")
    if len(normalized) > MAX_ID_LENGTH or any(ch.isspace() for ch in normalized):
        raise ValidationError(f"{name} is malformed", details={name: normalized[:MAX_ID_LENGTH]})
    return normalized


def require_user_id(value: Any) -> str:
    return require_id(value, "user_id")
