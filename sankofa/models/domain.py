"""Read-only views of domain records consumed by the menus and templates.

These mirror the columns the USSD and SMS surfaces need from the
``users``, ``collections`` and ``hubs`` tables; nothing here is written
back.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class CollectorProfile(BaseModel):
    """A user or collector looked up by phone number."""

    id: str
    name: str = ""
    phone: str = ""
    cash: float = 0.0
    health_tokens: float = 0.0
    total_earnings: float = 0.0
    location: str | None = None


class CollectionSummary(BaseModel):
    """One plastic collection, newest first when listed."""

    weight: float
    plastic_type: str
    amount: float
    created_at: datetime | None = None
    status: str | None = None


class HubInfo(BaseModel):
    """An active collection hub."""

    name: str
    address: str = ""
    operating_hours: str = ""
    location: str | None = None
