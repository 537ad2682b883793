"""Tests for invoiceflow.template_engine -- placeholder rendering and formatting.

Covers:
- Placeholder substitution, whole-line blank removal, blank-line collapse
- Unknown placeholder pass-through and detection
- Currency and long-date formatting
- Variable map built from an invoice + step offset
- Jinja2 HTML layout around a plain-text body
"""

from datetime import date
from decimal import Decimal

import pytest

from invoiceflow.models import Invoice
from invoiceflow.template_engine import (
    SUPPORTED_VARIABLES,
    TemplateEngine,
    build_variables,
    find_unknown_placeholders,
    format_currency,
    format_long_date,
    nl2br,
    render_html_body,
    render_template,
)


def _invoice(**overrides) -> Invoice:
    fields = dict(
        id="inv-1",
        user_id="u-1",
        invoice_number="INV-0042",
        client_name="Acme Corp",
        amount=Decimal("1500"),
        currency="USD",
        due_date=date(2025, 6, 1),
    )
    fields.update(overrides)
    return Invoice(**fields)


# ============================================================================
# render_template
# ============================================================================

class TestRenderTemplate:

    def test_replaces_every_occurrence(self):
        out = render_template(
            "{clientName}, {clientName}!",
            {"clientName": "Acme"},
        )
        assert out == "Acme, Acme!"

    def test_whole_line_blank_placeholder_is_removed(self):
        out = render_template(
            "Hi {clientName}\n{invoiceLink}\nBye",
            {"clientName": "Acme", "invoiceLink": ""},
        )
        assert out == "Hi Acme\nBye"

    def test_whole_line_removal_ignores_surrounding_whitespace(self):
        out = render_template(
            "Hi\n   {invoiceLink}\t\nBye",
            {"invoiceLink": None},
        )
        assert out == "Hi\nBye"

    def test_whole_line_removal_on_last_line(self):
        out = render_template("Hi\n{invoiceLink}", {"invoiceLink": ""})
        assert out == "Hi"

    def test_inline_blank_placeholder_becomes_empty(self):
        out = render_template("Pay here: {invoiceLink}.", {"invoiceLink": ""})
        assert out == "Pay here: ."

    def test_none_value_treated_as_blank(self):
        out = render_template("A {invoiceLink}B", {"invoiceLink": None})
        assert out == "A B"

    def test_collapses_three_or_more_newlines(self):
        out = render_template("A\n\n\n\n\nB\n\n\nC", {})
        assert out == "A\n\nB\n\nC"

    def test_removed_line_between_blank_lines_collapses(self):
        template = "Hello\n\n{invoiceLink}\n\nRegards"
        out = render_template(template, {"invoiceLink": ""})
        assert out == "Hello\n\nRegards"

    def test_result_is_stripped(self):
        out = render_template("\n\n  Hi {clientName}  \n\n", {"clientName": "Acme"})
        assert out == "Hi Acme"

    def test_unknown_placeholder_left_untouched(self):
        out = render_template("Hi {clientName}, see {portalUrl}", {"clientName": "Acme"})
        assert out == "Hi Acme, see {portalUrl}"

    def test_values_are_not_rescanned(self):
        out = render_template(
            "{clientName} owes {amount}",
            {"clientName": "{amount}", "amount": "$5.00"},
        )
        assert out == "{amount} owes $5.00"

    def test_values_inserted_verbatim(self):
        out = render_template("{clientName}", {"clientName": "<b>A & B</b>"})
        assert out == "<b>A & B</b>"

    def test_full_substitution_leaves_no_braces(self):
        template = " ".join("{" + name + "}" for name in SUPPORTED_VARIABLES)
        variables = {name: f"v-{name}" for name in SUPPORTED_VARIABLES}
        assert "{" not in render_template(template, variables)


# ============================================================================
# find_unknown_placeholders
# ============================================================================

class TestFindUnknownPlaceholders:

    def test_reports_unknown_names_in_order(self):
        text = "Hi {clientName} {portal} {due} {portal}"
        assert find_unknown_placeholders(text) == ["portal", "due"]

    def test_supported_names_are_not_reported(self):
        text = "".join("{" + name + "}" for name in SUPPORTED_VARIABLES)
        assert find_unknown_placeholders(text) == []

    def test_empty_text(self):
        assert find_unknown_placeholders("") == []


# ============================================================================
# Formatting
# ============================================================================

class TestFormatCurrency:

    @pytest.mark.parametrize("amount,currency,expected", [
        (Decimal("1500"), "USD", "$1,500.00"),
        (Decimal("1234.5"), "EUR", "€1,234.50"),
        ("99.999", "GBP", "£100.00"),
        (1234.5, "JPY", "¥1,235"),
        (Decimal("250"), "CHF", "CHF 250.00"),
        (Decimal("1500"), "usd", "$1,500.00"),
    ])
    def test_known_currencies(self, amount, currency, expected):
        assert format_currency(amount, currency) == expected

    @pytest.mark.parametrize("amount,currency,expected", [
        (Decimal("1500"), "SAR", "SAR 1,500.00"),
        (Decimal("1234567.891"), "THB", "THB 1,234,567.89"),
        (Decimal("1500"), "CLP", "CLP 1,500"),
        (Decimal("1234.5"), "KWD", "KWD 1,234.500"),
        (Decimal("-7.5"), "idr", "-IDR 7.50"),
    ])
    def test_other_iso_codes_use_grouping_and_minor_units(self, amount, currency, expected):
        assert format_currency(amount, currency) == expected

    def test_unknown_currency_falls_back_to_code_prefix(self):
        assert format_currency(Decimal("1500"), "XYZ") == "XYZ 1500.00"

    def test_negative_amount(self):
        assert format_currency(Decimal("-12.5"), "USD") == "-$12.50"


class TestFormatLongDate:

    def test_long_form(self):
        assert format_long_date(date(2025, 6, 1)) == "June 1, 2025"

    def test_none(self):
        assert format_long_date(None) == ""


# ============================================================================
# build_variables
# ============================================================================

class TestBuildVariables:

    def test_full_map(self):
        variables = build_variables(_invoice(notes="https://pay.example/42"), 3)
        assert variables == {
            "clientName": "Acme Corp",
            "amount": "$1,500.00",
            "currency": "USD",
            "dueDate": "June 1, 2025",
            "invoiceNumber": "INV-0042",
            "daysOverdue": "3",
            "invoiceLink": "https://pay.example/42",
        }

    @pytest.mark.parametrize("offset,expected", [(0, "0"), (-5, "0"), (7, "7")])
    def test_days_overdue_floored_at_zero(self, offset, expected):
        assert build_variables(_invoice(), offset)["daysOverdue"] == expected

    def test_missing_notes_gives_empty_link(self):
        assert build_variables(_invoice(notes=None), 0)["invoiceLink"] == ""

    def test_keys_match_supported_variables(self):
        assert set(build_variables(_invoice(), 0)) == set(SUPPORTED_VARIABLES)


# ============================================================================
# HTML layout
# ============================================================================

class TestHtmlLayout:

    def test_nl2br_escapes_and_breaks(self):
        out = str(nl2br("a < b\nc"))
        assert out == "a &lt; b<br>\nc"

    def test_render_html_body(self, config):
        html = TemplateEngine(config=config).render_html_body(
            "Reminder: INV-1", "Hi <Acme>\nPlease pay.",
        )
        assert "<title>Reminder: INV-1</title>" in html
        assert "Hi &lt;Acme&gt;<br>" in html
        assert "Please pay." in html

    def test_module_level_helper(self, config):
        html = render_html_body("S", "Body", config=config)
        assert "<html>" in html
        assert "Body" in html
