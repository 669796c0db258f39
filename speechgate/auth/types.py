"""Core data types for credential handling."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

Clock = Callable[[], datetime]

FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Default clock: the current time in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TokenSnapshot:
    """An access token and the moment it stops being valid."""

    value: str
    expires_at: datetime

    def ttl_seconds(self, now: datetime) -> float:
        """Seconds of validity left at ``now`` (negative once expired)."""
        return (self.expires_at - now).total_seconds()

    def __repr__(self) -> str:
        # Never render the token itself
        return f"TokenSnapshot(expires_at={self.expires_at.isoformat()})"


__all__ = ["Clock", "FAR_FUTURE", "utc_now", "TokenSnapshot"]
