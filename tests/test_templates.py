"""Tests for SMS template rendering, custom bodies and segment counting."""

from __future__ import annotations

import pytest

from sankofa.services.templates import (
    SMS_TEMPLATES,
    TemplateRenderer,
    calculate_sms_segments,
    preview,
)


@pytest.fixture
def renderer() -> TemplateRenderer:
    return TemplateRenderer()


# ---------------------------------------------------------------------------
# Catalogue rendering
# ---------------------------------------------------------------------------


class TestRender:
    def test_verification_contains_code(self, renderer: TemplateRenderer) -> None:
        text = renderer.render("verification", {"code": "123456"})
        assert "123456" in text, "rendered verification SMS should contain the code"

    def test_unknown_template_returns_fallback(self, renderer: TemplateRenderer) -> None:
        text = renderer.render("unknown_template_xyz", {})
        assert text, "unknown templates must still yield a non-empty string"
        assert "unknown_template_xyz" in text

    def test_missing_named_placeholder_renders_empty(self, renderer: TemplateRenderer) -> None:
        text = renderer.render("welcome", {})
        assert "{name}" not in text
        assert text.startswith("Welcome to Sankofa-Coin, !")

    def test_none_value_renders_empty(self, renderer: TemplateRenderer) -> None:
        assert renderer.render_text("Hi {name}.", {"name": None}) == "Hi ."

    def test_malformed_braces_returned_as_written(self) -> None:
        assert TemplateRenderer.render_text("Broken {", {"x": 1}) == "Broken {"

    def test_collection_instructions_uses_hub_fields(self, renderer: TemplateRenderer) -> None:
        text = renderer.render(
            "collection_instructions",
            {"hub_name": "Kejetia Recycling Point", "hub_address": "Kejetia Market", "hours": "8-5"},
        )
        assert "Kejetia Recycling Point" in text
        assert "(8-5)" in text

    def test_custom_catalogue(self) -> None:
        renderer = TemplateRenderer({"ping": "pong {x}"})
        assert renderer.render("ping", {"x": 1}) == "pong 1"
        assert renderer.has_template("verification") is False


class TestCatalogue:
    def test_list_templates_sorted(self, renderer: TemplateRenderer) -> None:
        ids = renderer.list_templates()
        assert ids == sorted(SMS_TEMPLATES)
        assert "collection_instructions" in ids

    def test_get_template(self, renderer: TemplateRenderer) -> None:
        assert renderer.get_template("verification") == SMS_TEMPLATES["verification"]
        assert renderer.get_template("nope") is None


# ---------------------------------------------------------------------------
# Double-brace bodies
# ---------------------------------------------------------------------------


class TestCustomTemplates:
    def test_render_custom_fills_known_tokens(self) -> None:
        text = TemplateRenderer.render_custom("Hello {{name}}, you have {{amount}}", {"name": "Ama", "amount": 5})
        assert text == "Hello Ama, you have 5"

    def test_render_custom_leaves_unknown_tokens(self) -> None:
        text = TemplateRenderer.render_custom("Hello {{name}} from {{hub}}", {"name": "Ama"})
        assert text == "Hello Ama from {{hub}}"

    def test_validate_lists_missing_once_in_order(self) -> None:
        missing = TemplateRenderer.validate_template_variables(
            "{{b}} {{a}} {{b}} {{c}}",
            {"c": 1},
        )
        assert missing == ["b", "a"]

    def test_validate_nothing_missing(self) -> None:
        assert TemplateRenderer.validate_template_variables("{{a}}", {"a": ""}) == []


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


class TestSegments:
    def test_empty_is_one_segment(self) -> None:
        assert calculate_sms_segments("") == 1

    def test_gsm7_single_and_multipart(self) -> None:
        assert calculate_sms_segments("a" * 160) == 1
        assert calculate_sms_segments("a" * 161) == 2
        assert calculate_sms_segments("a" * 306) == 2
        assert calculate_sms_segments("a" * 307) == 3

    def test_cedi_sign_forces_ucs2(self) -> None:
        assert calculate_sms_segments("₵" * 70) == 1
        assert calculate_sms_segments("₵" * 71) == 2

    def test_preview_truncates(self) -> None:
        assert preview("x" * 50, 10) == "xxxxxxx..."
        assert preview("short") == "short"
