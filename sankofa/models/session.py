"""USSD session model.

One :class:`UssdSession` exists per active gateway dialog.  It is
created on the first callback, rewritten on every later one, and
deleted on the exit transition or ignored once ``expires_at`` passes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from sankofa.models.enums import MenuState


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UssdSession(BaseModel):
    """Conversation state for one gateway-issued session id."""

    session_id: str
    phone_number: str
    # Plain string so a corrupt stored value survives deserialisation
    # and can be recovered by the state machine.
    current_menu: str = MenuState.MAIN.value
    history: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    @classmethod
    def start(
        cls,
        session_id: str,
        phone_number: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> UssdSession:
        """Create a fresh session parked on the main menu."""
        now = now or _utcnow()
        return cls(
            session_id=session_id,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def remaining_seconds(self, now: datetime | None = None) -> int:
        """Whole seconds left before expiry (never negative)."""
        delta = self.expires_at - (now or _utcnow())
        return max(0, int(delta.total_seconds()))

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or _utcnow()


class UssdResponse(BaseModel):
    """Text returned to the gateway and whether the dialog stays open."""

    text: str
    continue_session: bool = True

    def to_gateway(self) -> str:
        """Prefix with ``CON`` (session continues) or ``END`` (final text)."""
        prefix = "CON" if self.continue_session else "END"
        return f"{prefix} {self.text}"
