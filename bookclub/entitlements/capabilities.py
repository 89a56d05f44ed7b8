"""
Capability values.

Internally a capability is either global (``CAN_MANAGE_CLUB``) or contextual,
scoped to one store or club (``CLUB_LEAD`` for club ``123``). The flat string
form ``CLUB_LEAD_123`` is used only at the boundary: cached lists, logs and
the permission predicates.
"""

from dataclasses import dataclass
from typing import Union

CONTEXT_PREFIXES = ("STORE_OWNER", "STORE_MANAGER", "CLUB_LEAD", "CLUB_MODERATOR")


@dataclass(frozen=True)
class GlobalCapability:
    name: str

    @property
    def token(self) -> str:
        return self.name


@dataclass(frozen=True)
class ContextualCapability:
    prefix: str
    context_id: str

    def __post_init__(self):
        if not str(self.context_id).strip():
            raise ValueError("context_id is required")
        object.__setattr__(self, "context_id", str(self.context_id).strip())

    @property
    def token(self) -> str:
        return f"{self.prefix}_{self.context_id}"


Capability = Union[GlobalCapability, ContextualCapability]


def contextual(prefix: str, context_id: str) -> ContextualCapability:
    return ContextualCapability(prefix=prefix, context_id=context_id)


def parse_capability(token: str) -> Capability:
    """Inverse of ``.token`` for the known contextual prefixes."""
    for prefix in CONTEXT_PREFIXES:
        marker = prefix + "_"
        if token.startswith(marker) and len(token) > len(marker):
            return ContextualCapability(prefix=prefix, context_id=token[len(marker):])
    return GlobalCapability(name=token)


def to_tokens(capabilities) -> list[str]:
    """Serialize capabilities to de-duplicated strings, keeping first-seen order."""
    seen: dict[str, None] = {}
    for cap in capabilities:
        seen.setdefault(cap if isinstance(cap, str) else cap.token, None)
    return list(seen)
