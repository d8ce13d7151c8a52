"""USSD menu table and state machine.

The menu table is static data: each state has a body with named
placeholders and a digit -> next-state mapping.  :class:`MenuStateMachine`
applies one gateway callback to the stored session:

1. Unknown ``current_menu`` -> fall back to ``main`` with a reset notice.
2. Input not in the menu's options -> same menu again with an
   "invalid option" notice; only ``updated_at`` changes.
3. Input mapped to ``exit`` -> session deleted, ``END`` goodbye.
4. Otherwise -> move to the mapped state, append the digit to
   ``history``, persist, render the new state with live data.

A brand-new session with empty input always gets the main menu.  The
gateway sends the cumulative ``*``-joined input (``"5*1"``); only the last
segment is the digit for this step.

Callers never see exceptions: a session store failure or any other
error yields an ``END`` "service unavailable" response.
"""

from __future__ import annotations

import asyncio
import string
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from sankofa.models.delivery import NotificationRecord
from sankofa.models.domain import CollectionSummary, CollectorProfile, HubInfo
from sankofa.models.enums import MenuState, NotificationStatus, NotificationType
from sankofa.models.session import UssdResponse, UssdSession
from sankofa.services.domain import DomainDirectory
from sankofa.services.phone import mask_phone, normalize_phone
from sankofa.services.session_store import SessionStore
from sankofa.services.templates import TemplateRenderer

if TYPE_CHECKING:
    from sankofa.services.delivery_queue import DeliveryQueue
    from sankofa.services.notification_log import NotificationLogger

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_USSD_MAX: Final[int] = 182

INVALID_OPTION_NOTICE: Final[str] = "Invalid option. Please try again.\n\n"
SESSION_RESET_NOTICE: Final[str] = "Session reset.\n"
GOODBYE_TEXT: Final[str] = "Thank you for using Sankofa-Coin!"
SERVICE_UNAVAILABLE_TEXT: Final[str] = "Service temporarily unavailable. Please try again later."

NO_COLLECTIONS_TEXT: Final[str] = "No recent collections"
NO_STATUS_TEXT: Final[str] = "No collections yet"
UNKNOWN_VALUE: Final[str] = "N/A"
UNKNOWN_HOURS: Final[str] = "Contact hub"

_PROFILE_CACHE_KEY: Final[str] = "profile"


# ---------------------------------------------------------------------------
# Menu table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MenuDefinition:
    """One menu screen: body text and digit -> next state."""

    text: str
    options: Mapping[str, str] = field(default_factory=dict)

    @property
    def placeholders(self) -> frozenset[str]:
        return frozenset(
            name for _, name, _, _ in string.Formatter().parse(self.text) if name
        )


_BACK_TO_MAIN: Final[dict[str, str]] = {"0": MenuState.MAIN.value}

MENU_TABLE: Final[dict[str, MenuDefinition]] = {
    MenuState.MAIN: MenuDefinition(
        text=(
            "Welcome to Sankofa-Coin\n1. Check Balance\n2. Recent Collections\n"
            "3. Nearest Hub\n4. Health Tokens\n5. Report Collection\n0. Exit"
        ),
        options={
            "1": MenuState.CHECK_BALANCE.value,
            "2": MenuState.RECENT_COLLECTIONS.value,
            "3": MenuState.NEAREST_HUB.value,
            "4": MenuState.HEALTH_TOKENS.value,
            "5": MenuState.REPORT_COLLECTION.value,
            "0": MenuState.EXIT.value,
        },
    ),
    MenuState.CHECK_BALANCE: MenuDefinition(
        text=(
            "Your Balances:\nCash: GH₵{cash}\nHealth Tokens: GH₵{healthTokens}\n"
            "Total Earnings: GH₵{totalEarnings}\n\n0. Main Menu"
        ),
        options=_BACK_TO_MAIN,
    ),
    MenuState.RECENT_COLLECTIONS: MenuDefinition(
        text="Recent Collections:\n{collections}\n\n0. Main Menu",
        options=_BACK_TO_MAIN,
    ),
    MenuState.NEAREST_HUB: MenuDefinition(
        text="Nearest Hub:\n{hubName}\n{hubAddress}\nOpen: {hours}\n\n0. Main Menu",
        options=_BACK_TO_MAIN,
    ),
    MenuState.HEALTH_TOKENS: MenuDefinition(
        text=(
            "Health Tokens: GH₵{healthTokens}\nAvailable for NHIS enrollment\n"
            "Visit nearest hub to activate\n\n0. Main Menu"
        ),
        options=_BACK_TO_MAIN,
    ),
    MenuState.REPORT_COLLECTION: MenuDefinition(
        text="Report Collection:\n1. Submit New\n2. Check Status\n0. Main Menu",
        options={
            "1": MenuState.SUBMIT_COLLECTION.value,
            "2": MenuState.CHECK_COLLECTION_STATUS.value,
            "0": MenuState.MAIN.value,
        },
    ),
    MenuState.SUBMIT_COLLECTION: MenuDefinition(
        text=(
            "Submit Collection:\nTake sorted plastic to {hubName}\n{hubAddress}\n"
            "Open: {hours}\nDetails sent by SMS.\n\n0. Main Menu"
        ),
        options=_BACK_TO_MAIN,
    ),
    MenuState.CHECK_COLLECTION_STATUS: MenuDefinition(
        text="Collection Status:\n{latestCollection}\n\n0. Main Menu",
        options=_BACK_TO_MAIN,
    ),
}


def latest_input(text: str | None) -> str:
    """Last ``*``-separated segment of the gateway's cumulative input."""
    if not text:
        return ""
    return text.split("*")[-1].strip()


def enforce_ussd_limit(text: str) -> str:
    """Truncate text to fit the USSD character limit (182 chars)."""
    if len(text) <= _USSD_MAX:
        return text
    return text[:_USSD_MAX - 3] + "..."


def _money(value: float | None) -> str:
    return f"{value or 0:.2f}"


def _weight(value: float) -> str:
    return f"{value:g}"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class MenuStateMachine:
    """Applies gateway callbacks to USSD sessions.

    Parameters
    ----------
    store:
        Session persistence.
    directory:
        Read-only domain lookups used to fill placeholders.
    renderer:
        Fills ``{name}`` placeholders.
    queue:
        Optional; when set, entering ``submitCollection`` queues the
        ``collection_instructions`` SMS to the caller.
    notifications:
        Optional audit trail; a ``ussd`` record is written when a caller
        exits.
    session_ttl_seconds:
        Lifetime of a new session.
    menus:
        Menu table; defaults to :data:`MENU_TABLE`.
    """

    __slots__ = (
        "_background",
        "_directory",
        "_menus",
        "_notifications",
        "_queue",
        "_renderer",
        "_store",
        "_ttl",
    )

    def __init__(
        self,
        store: SessionStore,
        directory: DomainDirectory,
        renderer: TemplateRenderer | None = None,
        *,
        queue: DeliveryQueue | None = None,
        notifications: NotificationLogger | None = None,
        session_ttl_seconds: int = 300,
        menus: Mapping[str, MenuDefinition] | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._renderer = renderer or TemplateRenderer()
        self._queue = queue
        self._notifications = notifications
        self._ttl = session_ttl_seconds
        self._menus: dict[str, MenuDefinition] = {str(k): v for k, v in (menus or MENU_TABLE).items()}
        self._background: set[asyncio.Task] = set()  # type: ignore[type-arg]

    @property
    def menus(self) -> Mapping[str, MenuDefinition]:
        return self._menus

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(
        self,
        session_id: str,
        phone_number: str,
        text: str | None,
        *,
        now: datetime | None = None,
    ) -> UssdResponse:
        """Apply one gateway callback and return the text to show."""
        log = logger.bind(session_id=session_id)
        try:
            return await self._handle(session_id, phone_number, latest_input(text), now, log)
        except Exception:
            log.error("ussd.handle_failed", exc_info=True)
            return UssdResponse(text=SERVICE_UNAVAILABLE_TEXT, continue_session=False)

    async def wait_for_background(self) -> None:
        """Wait for queued side-effect tasks (SMS confirmations)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------

    async def _handle(
        self,
        session_id: str,
        phone_number: str,
        digit: str,
        now: datetime | None,
        log: Any,
    ) -> UssdResponse:
        session = await self._store.get(session_id, now=now)

        if session is None:
            phone = normalize_phone(phone_number)
            session = UssdSession.start(session_id, phone, self._ttl, now=now)
            log.info("ussd.session_created", phone=mask_phone(phone))
            if digit == "":
                await self._store.put(session, now=now)
                return UssdResponse(text=await self._render(MenuState.MAIN.value, session))
            # Unseen id with input: the session expired or was lost; replay
            # the input against the main menu.
            log.info("ussd.session_restarted", digit=digit)

        notice = ""
        menu = self._menus.get(session.current_menu)
        if menu is None:
            log.warning("ussd.invalid_menu_reset", current_menu=session.current_menu)
            session.current_menu = MenuState.MAIN.value
            menu = self._menus[MenuState.MAIN.value]
            notice = SESSION_RESET_NOTICE

        next_state = menu.options.get(digit)

        if next_state is None:
            session.touch(now)
            await self._store.put(session, now=now)
            body = await self._render(session.current_menu, session)
            log.info("ussd.invalid_option", current_menu=session.current_menu, digit=digit)
            return UssdResponse(text=enforce_ussd_limit(notice + INVALID_OPTION_NOTICE + body))

        if next_state == MenuState.EXIT:
            await self._store.delete(session_id)
            log.info("ussd.session_ended", steps=len(session.history))
            self._record_session_end(session)
            return UssdResponse(text=GOODBYE_TEXT, continue_session=False)

        previous = session.current_menu
        session.current_menu = next_state
        session.history.append(digit)
        session.touch(now)
        body = await self._render(next_state, session)
        await self._store.put(session, now=now)
        log.info("ussd.transition", from_menu=previous, to_menu=next_state)

        if next_state == MenuState.SUBMIT_COLLECTION:
            self._send_collection_instructions(session)

        return UssdResponse(text=enforce_ussd_limit(notice + body))

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def _render(self, state: str, session: UssdSession) -> str:
        menu = self._menus[state]
        values = await self._placeholder_values(menu.placeholders, session)
        return self._renderer.render_text(menu.text, values)

    async def _placeholder_values(self, names: frozenset[str], session: UssdSession) -> dict[str, str]:
        if not names:
            return {}

        values: dict[str, str] = {}
        profile = await self._profile(session)

        if names & {"cash", "healthTokens", "totalEarnings"}:
            values["cash"] = _money(profile.cash if profile else None)
            values["healthTokens"] = _money(profile.health_tokens if profile else None)
            values["totalEarnings"] = _money(profile.total_earnings if profile else None)

        if "collections" in names:
            collections = await self._recent(profile)
            values["collections"] = (
                "\n".join(
                    f"{i}. {_weight(c.weight)}kg {c.plastic_type} - GH₵{_money(c.amount)}"
                    for i, c in enumerate(collections, start=1)
                )
                or NO_COLLECTIONS_TEXT
            )

        if "latestCollection" in names:
            collections = await self._recent(profile, limit=1)
            if collections:
                latest = collections[0]
                status = latest.status or "pending"
                values["latestCollection"] = f"{_weight(latest.weight)}kg {latest.plastic_type} - {status}"
            else:
                values["latestCollection"] = NO_STATUS_TEXT

        if names & {"hubName", "hubAddress", "hours"}:
            hub = await self._hub(profile)
            values["hubName"] = (hub.name if hub else "") or UNKNOWN_VALUE
            values["hubAddress"] = (hub.address if hub else "") or UNKNOWN_VALUE
            values["hours"] = (hub.operating_hours if hub else "") or UNKNOWN_HOURS
            session.data["hub"] = {
                "hub_name": values["hubName"],
                "hub_address": values["hubAddress"],
                "hours": values["hours"],
            }

        return values

    async def _profile(self, session: UssdSession) -> CollectorProfile | None:
        cached = session.data.get(_PROFILE_CACHE_KEY)
        if cached:
            return CollectorProfile.model_validate(cached)
        try:
            profile = await self._directory.get_collector_by_phone(session.phone_number)
        except Exception:
            logger.warning("ussd.profile_lookup_failed", phone=mask_phone(session.phone_number), exc_info=True)
            return None
        if profile is not None:
            session.data[_PROFILE_CACHE_KEY] = profile.model_dump(mode="json")
        return profile

    async def _recent(self, profile: CollectorProfile | None, limit: int = 3) -> list[CollectionSummary]:
        if profile is None:
            return []
        try:
            return await self._directory.get_recent_collections(profile.id, limit)
        except Exception:
            logger.warning("ussd.collections_lookup_failed", collector_id=profile.id, exc_info=True)
            return []

    async def _hub(self, profile: CollectorProfile | None) -> HubInfo | None:
        try:
            return await self._directory.get_nearest_hub(profile.location if profile else None)
        except Exception:
            logger.warning("ussd.hub_lookup_failed", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _record_session_end(self, session: UssdSession) -> None:
        if self._notifications is None:
            return
        self._notifications.record(
            NotificationRecord(
                type=NotificationType.USSD,
                recipient=session.phone_number,
                message=GOODBYE_TEXT,
                status=NotificationStatus.SENT,
                session_id=session.session_id,
            )
        )

    def _send_collection_instructions(self, session: UssdSession) -> None:
        if self._queue is None:
            return
        task = asyncio.create_task(self._enqueue_instructions(session.phone_number, dict(session.data.get("hub", {}))))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _enqueue_instructions(self, phone: str, hub: dict[str, Any]) -> None:
        if self._queue is None:
            return
        try:
            job_id = await self._queue.enqueue_single(
                phone,
                template="collection_instructions",
                data=hub,
            )
        except Exception as exc:
            logger.warning(
                "ussd.instructions_sms_failed",
                phone=mask_phone(phone),
                error=str(exc),
            )
            return
        logger.info("ussd.instructions_sms_queued", phone=mask_phone(phone), job_id=job_id)
