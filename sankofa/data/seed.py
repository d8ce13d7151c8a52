"""Demo collectors, collections and hubs for development and tests.

Used when Supabase is not configured so the USSD menus have something
real to show.  Phone numbers are canonical ``+233`` numbers.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from sankofa.models.domain import CollectionSummary, CollectorProfile, HubInfo
from sankofa.services.domain import InMemoryDomainDirectory

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

DEMO_HUBS: list[HubInfo] = [
    HubInfo(
        name="Agbogbloshie Collection Hub",
        address="Abose Okai Rd, Accra",
        operating_hours="Mon-Sat 7am-6pm",
        location="Accra",
    ),
    HubInfo(
        name="Kejetia Recycling Point",
        address="Kejetia Market, Kumasi",
        operating_hours="Mon-Fri 8am-5pm",
        location="Kumasi",
    ),
]

DEMO_COLLECTORS: list[CollectorProfile] = [
    CollectorProfile(
        id="collector-ama",
        name="Ama Mensah",
        phone="+233244123456",
        cash=45.50,
        health_tokens=12.00,
        total_earnings=57.50,
        location="Accra",
    ),
    CollectorProfile(
        id="collector-kofi",
        name="Kofi Boateng",
        phone="+233201112233",
        cash=8.25,
        health_tokens=2.75,
        total_earnings=11.00,
        location="Kumasi",
    ),
]


def _demo_collections(now: datetime) -> dict[str, list[CollectionSummary]]:
    return {
        "collector-ama": [
            CollectionSummary(
                weight=12.5, plastic_type="PET", amount=18.75,
                created_at=now - timedelta(days=1), status="verified",
            ),
            CollectionSummary(
                weight=8, plastic_type="HDPE", amount=12.00,
                created_at=now - timedelta(days=4), status="verified",
            ),
            CollectionSummary(
                weight=5.2, plastic_type="PP", amount=7.80,
                created_at=now - timedelta(days=9), status="paid",
            ),
            CollectionSummary(
                weight=3, plastic_type="PET", amount=4.50,
                created_at=now - timedelta(days=15), status="paid",
            ),
        ],
        "collector-kofi": [],
    }


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def build_demo_directory(now: datetime | None = None) -> InMemoryDomainDirectory:
    """Return an in-memory directory loaded with the demo records."""
    now = now or datetime.now(UTC)
    directory = InMemoryDomainDirectory(
        collectors=list(DEMO_COLLECTORS),
        collections=_demo_collections(now),
        hubs=list(DEMO_HUBS),
    )
    logger.info(
        "seed.demo_directory_loaded",
        collectors=len(DEMO_COLLECTORS),
        hubs=len(DEMO_HUBS),
    )
    return directory
