"""
InvoiceFlow -- Template Engine

Fills ``{variable}`` placeholders in template subjects/bodies with
invoice-derived values, and wraps rendered plain-text bodies in the HTML
layout the mailer sends.

Responsibilities:
  1. Substitute ``{name}`` tokens with defined blank-handling semantics
  2. Build the variable map for one invoice + schedule step
  3. Format currency (en-US, per-currency minor units) and long dates
  4. Report placeholders the renderer does not know about (for warnings)
  5. Render the Jinja2 HTML layout around a plain-text body

Usage:
    from invoiceflow.template_engine import render_template, build_variables

    text = render_template(
        "Hi {clientName},\\n{invoiceLink}\\nThanks",
        {"clientName": "Acme", "invoiceLink": ""},
    )
    # 'Hi Acme,\\nThanks'
"""

from __future__ import annotations

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup, escape

from .config import InvoiceFlowConfig, get_config
from .models import Invoice


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Variables a template author may use.  Anything else is passed through.
SUPPORTED_VARIABLES: tuple[str, ...] = (
    "clientName",
    "invoiceNumber",
    "amount",
    "currency",
    "dueDate",
    "invoiceLink",
    "daysOverdue",
)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

# en-US currency display: code -> (prefix, minor units).
# A prefix ending in a space is a code-style prefix ("CHF 1,234.50").
_CURRENCY_FORMATS: dict[str, tuple[str, int]] = {
    "USD": ("$", 2),
    "EUR": ("€", 2),
    "GBP": ("£", 2),
    "JPY": ("¥", 0),
    "CNY": ("CN¥", 2),
    "INR": ("₹", 2),
    "KRW": ("₩", 0),
    "ILS": ("₪", 2),
    "PHP": ("₱", 2),
    "VND": ("₫", 0),
    "CAD": ("CA$", 2),
    "AUD": ("A$", 2),
    "NZD": ("NZ$", 2),
    "MXN": ("MX$", 2),
    "HKD": ("HK$", 2),
    "TWD": ("NT$", 2),
    "BRL": ("R$", 2),
    "CHF": ("CHF ", 2),
    "SEK": ("SEK ", 2),
    "NOK": ("NOK ", 2),
    "DKK": ("DKK ", 2),
    "PLN": ("PLN ", 2),
    "CZK": ("CZK ", 2),
    "HUF": ("HUF ", 2),
    "SGD": ("SGD ", 2),
    "ZAR": ("ZAR ", 2),
    "NGN": ("NGN ", 2),
    "KES": ("KES ", 2),
    "AED": ("AED ", 2),
    "TRY": ("TRY ", 2),
}

# Active ISO 4217 codes.  Codes without an entry above display as
# "<CODE> <grouped amount>" with their ISO minor units.
_ISO_4217_CODES: frozenset[str] = frozenset("""
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND
    BOB BOV BRL BSD BTN BWP BYN BZD CAD CDF CHE CHF CHW CLF CLP CNY COP COU
    CRC CUC CUP CVE CZK DJF DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS
    GIP GMD GNF GTQ GYD HKD HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY
    KES KGS KHR KMF KPW KRW KWD KYD KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA
    MKD MMK MNT MOP MRU MUR MVR MWK MXN MXV MYR MZN NAD NGN NIO NOK NPR NZD
    OMR PAB PEN PGK PHP PKR PLN PYG QAR RON RSD RUB RWF SAR SBD SCR SDG SEK
    SGD SHP SLE SLL SOS SRD SSP STN SVC SYP SZL THB TJS TMT TND TOP TRY TTD
    TWD TZS UAH UGX USD USN UYI UYU UYW UZS VED VES VND VUV WST XAF XCD XCG
    XOF XPF YER ZAR ZMW ZWG ZWL
""".split())

# ISO minor units where they differ from 2.
_ISO_MINOR_UNITS: dict[str, int] = {
    **dict.fromkeys(
        ("BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
         "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF"),
        0,
    ),
    **dict.fromkeys(("BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"), 3),
    "CLF": 4,
    "UYW": 4,
}


# ---------------------------------------------------------------------------
# Placeholder substitution
# ---------------------------------------------------------------------------

def render_template(
    template: str,
    variables: Mapping[str, Optional[str]],
) -> str:
    """Fill ``{name}`` placeholders in ``template`` from ``variables``.

    Rules:
      - Blank values (None or ""): a line holding only that placeholder
        (surrounding spaces/tabs allowed) is deleted, line break included.
        Every other occurrence is replaced with "".
      - Non-blank values replace every occurrence verbatim.  Substituted
        text is never re-scanned for placeholders.
      - Placeholders with no entry in ``variables`` are left untouched.
      - Runs of 3+ newlines collapse to exactly 2; the result is stripped.

    Pure function: no I/O, deterministic.
    """
    result = template

    blanks = [key for key, value in variables.items() if value is None or value == ""]
    for key in blanks:
        whole_line = re.compile(
            r"^[ \t]*" + re.escape("{" + key + "}") + r"[ \t]*(?:\r?\n|$)",
            re.MULTILINE,
        )
        result = whole_line.sub("", result)

    replacements = {
        "{" + key + "}": ("" if value is None else str(value))
        for key, value in variables.items()
    }
    if replacements:
        # Longest token first so "{a}" never shadows "{ab}" in the alternation.
        tokens = sorted(replacements, key=len, reverse=True)
        pattern = re.compile("|".join(re.escape(t) for t in tokens))
        result = pattern.sub(lambda m: replacements[m.group(0)], result)

    result = _BLANK_RUN_RE.sub("\n\n", result)
    return result.strip()


def find_unknown_placeholders(text: str) -> list[str]:
    """Return placeholder names in ``text`` that the engine does not supply.

    The renderer leaves these as literal text; callers surface them to the
    template author as a validation warning.  Order of first appearance,
    no duplicates.
    """
    seen: set[str] = set()
    unknown: list[str] = []
    for name in _PLACEHOLDER_RE.findall(text or ""):
        if name not in SUPPORTED_VARIABLES and name not in seen:
            seen.add(name)
            unknown.append(name)
    return unknown


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def _to_decimal(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def format_currency(amount: Decimal | float | int | str, currency: str) -> str:
    """Format an amount for display, e.g. ``format_currency(1500, "usd")``
    -> '$1,500.00'.

    ISO 4217 codes get grouping and their own minor units, behind the en-US
    symbol where one is listed (else "<CODE> ").  Codes outside ISO 4217
    fall back to '<CODE> <amount to 2 places>' (no grouping).
    """
    code = (currency or "").strip().upper()
    try:
        value = _to_decimal(amount)
    except InvalidOperation:
        return f"{code} {amount}"

    fmt = _CURRENCY_FORMATS.get(code)
    if fmt is None and code in _ISO_4217_CODES:
        fmt = (f"{code} ", _ISO_MINOR_UNITS.get(code, 2))
    if fmt is None:
        return f"{code} {value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"

    prefix, minor_units = fmt
    exponent = Decimal(1).scaleb(-minor_units)
    quantized = value.quantize(exponent, rounding=ROUND_HALF_UP)
    sign = "-" if quantized < 0 else ""
    digits = f"{abs(quantized):,.{minor_units}f}"
    return f"{sign}{prefix}{digits}"


def format_long_date(d: date | None) -> str:
    """Format a date as 'Month D, YYYY' (e.g. 'June 1, 2025').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return f"{d:%B} {d.day}, {d.year}"


def build_variables(invoice: Invoice, day_offset: int) -> dict[str, str]:
    """Build the substitution map for one invoice at one schedule step.

    ``daysOverdue`` is the step's day offset, floored at "0".
    ``invoiceLink`` reuses the invoice notes field.
    """
    return {
        "clientName": invoice.client_name,
        "amount": format_currency(invoice.amount, invoice.currency),
        "currency": invoice.currency,
        "dueDate": format_long_date(invoice.due_date),
        "invoiceNumber": invoice.invoice_number,
        "daysOverdue": str(day_offset) if day_offset > 0 else "0",
        "invoiceLink": invoice.notes or "",
    }


# ===========================================================================
# HTML layout
# ===========================================================================

def nl2br(value: str) -> Markup:
    """Escape ``value`` and turn line breaks into ``<br>`` tags."""
    escaped = escape(value or "")
    return Markup("<br>\n").join(escaped.split("\n"))


class TemplateEngine:
    """Jinja2 wrapper producing the HTML part of a follow-up email.

    Follow-up bodies are stored as plain text.  The mailer asks for an
    HTML rendition at send time; this class renders the packaged layout
    (``templates/follow_up.html``) around the body with autoescaping on.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the layout directory.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        config: InvoiceFlowConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        if template_dir is None:
            self.template_dir = self.config.rendering.resolved_template_dir
        else:
            self.template_dir = Path(template_dir)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["nl2br"] = nl2br

    def render_html_body(self, subject: str, body: str) -> str:
        """Render the HTML layout for a rendered subject/body pair."""
        template = self.env.get_template(self.config.rendering.html_template)
        return template.render(subject=subject, body=body)


# ---------------------------------------------------------------------------
# Module-level convenience function
# ---------------------------------------------------------------------------

def render_html_body(
    subject: str,
    body: str,
    config: InvoiceFlowConfig | None = None,
) -> str:
    """Module-level convenience: create a TemplateEngine and render one body."""
    return TemplateEngine(config=config).render_html_body(subject, body)
