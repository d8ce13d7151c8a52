"""Message template rendering shared by USSD, SMS and ad-hoc bodies.

Two placeholder syntaxes are supported:

* **Named** (``{cash}``) -- used by the built-in SMS catalogue and the
  USSD menu table.  Missing keys render as an empty string.
* **Double-brace** (``{{name}}``) -- used for custom bodies supplied by
  callers at runtime.  Unresolved tokens are left in place; use
  :meth:`TemplateRenderer.validate_template_variables` to find them.

:meth:`TemplateRenderer.render` never raises: an unknown template id
yields a readable fallback string so every caller always gets text back.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Final

import structlog

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SMS_GSM7_MAX: Final[int] = 160
_SMS_GSM7_PART: Final[int] = 153
_SMS_UNICODE_MAX: Final[int] = 70
_SMS_UNICODE_PART: Final[int] = 67

_GSM7_CHARS: Final[frozenset[str]] = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

_DOUBLE_BRACE_RE: Final[re.Pattern[str]] = re.compile(r"\{\{(\w+)\}\}")


# ---------------------------------------------------------------------------
# SMS catalogue
# ---------------------------------------------------------------------------

SMS_TEMPLATES: Final[dict[str, str]] = {
    "verification": (
        "Your Sankofa-Coin verification code is: {code}. Valid for 10 minutes."
    ),
    "welcome": (
        "Welcome to Sankofa-Coin, {name}! Bring plastic to any hub to earn "
        "cash and health tokens. Dial our USSD code to check your balance."
    ),
    "collection_confirmation": (
        "Collection confirmed! {weight}kg plastic collected. "
        "Earned GH₵{cash_amount} cash + GH₵{health_tokens} health tokens. "
        "Impact: {co2_reduced}kg CO₂ prevented."
    ),
    "collection_verified": (
        "Sankofa: Your collection of {weight}kg has been verified! "
        "You earned GHS {cash_amount} + {token_amount} health tokens."
    ),
    "payment_received": (
        "Payment received! GH₵{amount} has been credited to your account. "
        "Thank you for contributing to community health."
    ),
    "health_alert": (
        "Health Alert: {risk} risk detected in {location}. Check Sankofa-Coin "
        "app for prevention tips and collection opportunities."
    ),
    "hub_update": (
        "Update from {hub_name}: {message}. Visit your nearest hub or check "
        "the app for details."
    ),
    "nhis_reminder": (
        "You have GH₵{amount} in Health Tokens available for NHIS enrollment. "
        "Visit any collection hub to activate your health insurance."
    ),
    "weekly_report": (
        "Weekly Report: {collections} collections, {weight}kg plastic, "
        "GH₵{earnings} earned. You're making a difference! Keep it up!"
    ),
    "donation_thank_you": (
        "Thank you for your GH₵{amount} donation to Sankofa-Coin! Your "
        "contribution helps fund plastic collection and healthcare access "
        "across Ghana."
    ),
    "volunteer_reminder": (
        "Reminder: {event} on {date} at {location}. Your volunteer work "
        "makes a real difference in community health."
    ),
    "system_maintenance": (
        "Sankofa-Coin will be under maintenance for {duration}. Services "
        "will resume shortly. Thank you for your patience."
    ),
    "collection_instructions": (
        "Sankofa-Coin: To submit a collection, bring sorted plastic to "
        "{hub_name}, {hub_address} ({hours}). Your weight is recorded and "
        "paid at the hub."
    ),
}


class _BlankMissing(dict):
    """``format_map`` mapping that renders unknown keys as ``""``."""

    def __missing__(self, key: str) -> str:
        return ""


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Render catalogue templates, menu bodies and custom bodies.

    Parameters
    ----------
    templates:
        Template id to text mapping.  Defaults to :data:`SMS_TEMPLATES`.
    """

    __slots__ = ("_templates",)

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        self._templates: dict[str, str] = dict(
            templates if templates is not None else SMS_TEMPLATES,
        )

    # -- Catalogue ----------------------------------------------------------

    def render(self, template_id: str, data: Mapping[str, Any] | None = None) -> str:
        """Render a catalogue template; unknown ids give a fallback string."""
        text = self._templates.get(template_id)
        if text is None:
            logger.warning("templates.not_found", template=template_id)
            return f"Template '{template_id}' not found"
        return self.render_text(text, data)

    def has_template(self, template_id: str) -> bool:
        return template_id in self._templates

    def list_templates(self) -> list[str]:
        return sorted(self._templates)

    def get_template(self, template_id: str) -> str | None:
        return self._templates.get(template_id)

    # -- Placeholder syntaxes -----------------------------------------------

    @staticmethod
    def render_text(text: str, data: Mapping[str, Any] | None = None) -> str:
        """Fill ``{name}`` placeholders; missing names become empty."""
        values = _BlankMissing({k: "" if v is None else v for k, v in (data or {}).items()})
        try:
            return text.format_map(values)
        except (ValueError, IndexError, AttributeError) as exc:
            # Malformed braces in the body; send it as written.
            logger.warning("templates.format_failed", error=str(exc))
            return text

    @staticmethod
    def render_custom(template: str, variables: Mapping[str, Any] | None = None) -> str:
        """Fill ``{{name}}`` tokens; unknown tokens are left as written."""
        variables = variables or {}

        def _sub(match: re.Match[str]) -> str:
            key = match.group(1)
            if key in variables and variables[key] is not None:
                return str(variables[key])
            return match.group(0)

        return _DOUBLE_BRACE_RE.sub(_sub, template)

    @staticmethod
    def validate_template_variables(
        template: str,
        variables: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Return the ``{{name}}`` tokens in *template* with no value supplied.

        Names are listed once each, in order of first appearance.
        """
        variables = variables or {}
        missing: list[str] = []
        for name in _DOUBLE_BRACE_RE.findall(template):
            if name not in variables and name not in missing:
                missing.append(name)
        return missing


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def calculate_sms_segments(message: str) -> int:
    """Number of SMS segments needed to carry *message*.

    GSM-7 bodies fit 160 characters in one segment and 153 per part when
    concatenated.  Anything outside the GSM-7 alphabet (``₵`` included)
    forces UCS-2: 70 characters, or 67 per part.
    """
    length = len(message)
    if length == 0:
        return 1

    if all(char in _GSM7_CHARS for char in message):
        if length <= _SMS_GSM7_MAX:
            return 1
        return (length + _SMS_GSM7_PART - 1) // _SMS_GSM7_PART

    if length <= _SMS_UNICODE_MAX:
        return 1
    return (length + _SMS_UNICODE_PART - 1) // _SMS_UNICODE_PART


def preview(message: str, limit: int = 40) -> str:
    """Shorten a body for log output."""
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."
