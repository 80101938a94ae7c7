"""
Identity resolution.

Each event contributes exactly one identity to a segment: the identified user
when the app has called identify(), otherwise the device's anonymous id. The
two namespaces never merge, so "user:42" and "anon:42" are different members.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Set

logger = logging.getLogger(__name__)

USER = "user"
ANONYMOUS = "anon"


@dataclass(frozen=True, order=True)
class Identity:
    kind: str  # USER | ANONYMOUS
    value: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}"

    @property
    def is_user(self) -> bool:
        return self.kind == USER

    @classmethod
    def parse(cls, key: str) -> Identity:
        kind, sep, value = key.partition(":")
        if not sep or kind not in (USER, ANONYMOUS) or not value:
            raise ValueError(f"not an identity key: {key!r}")
        return cls(kind, value)

    def membership_columns(self) -> dict:
        """Column values for a segment_users row (anonymous ids fill user_id too)."""
        if self.is_user:
            return {"identity": str(self), "user_id": self.value, "anonymous_id": None}
        return {"identity": str(self), "user_id": self.value, "anonymous_id": self.value}


def resolve_identity(user_id: Optional[str], anonymous_id: Optional[str]) -> Optional[Identity]:
    """Non-empty user_id wins, else anonymous_id. None when the event has neither."""
    if user_id:
        return Identity(USER, user_id)
    if anonymous_id:
        return Identity(ANONYMOUS, anonymous_id)
    return None


def collect_identities(events: Iterable[Any]) -> Set[Identity]:
    """Resolve every event to its identity, skipping events that carry none."""
    identities: Set[Identity] = set()
    skipped = 0
    for event in events:
        identity = resolve_identity(event.user_id, event.anonymous_id)
        if identity is None:
            skipped += 1
            continue
        identities.add(identity)
    if skipped:
        logger.debug("Skipped %d events without user_id or anonymous_id", skipped)
    return identities
