from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import re
from typing import Any

from reportlab.lib.colors import Color, HexColor

from app.core.config import settings

logger = logging.getLogger(__name__)

_HEX_COLOR_RE = re.compile(r"^#?(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


class DocumentKind(str, Enum):
    PROTOCOL = "protocol"
    QUOTE = "quote"


@dataclass(frozen=True)
class PdfTypography:
    chrome_title_size: float
    chrome_company_size: float
    footer_size: float
    card_title_size: float
    label_size: float
    value_size: float
    table_title_size: float
    header_size: float
    cell_size: float
    line_gap: float


@dataclass(frozen=True)
class PdfTheme:
    name: str
    title: str
    company: str
    primary: Color
    accent: Color
    text: Color
    card_background: Color
    margin: float
    header_height: float
    header_gap: float
    block_gap: float
    footer_reserve: float
    typography: PdfTypography

    @property
    def bottom_safe(self) -> float:
        return self.margin + self.footer_reserve


_TYPOGRAPHY = PdfTypography(
    chrome_title_size=16,
    chrome_company_size=9,
    footer_size=8,
    card_title_size=11,
    label_size=8,
    value_size=10,
    table_title_size=10.5,
    header_size=8,
    cell_size=9,
    line_gap=2,
)

_TEXT_COLOR = Color(0.12, 0.12, 0.14)
_CARD_BACKGROUND = Color(0.98, 0.99, 1)

PDF_THEME_BY_KIND: dict[DocumentKind, PdfTheme] = {
    DocumentKind.PROTOCOL: PdfTheme(
        name="protocol",
        title="Installations Protokoll",
        company="",
        primary=HexColor("#0ea5e9"),
        accent=HexColor("#94a3b8"),
        text=_TEXT_COLOR,
        card_background=_CARD_BACKGROUND,
        margin=10,
        header_height=40,
        header_gap=10,
        block_gap=10,
        footer_reserve=30,
        typography=_TYPOGRAPHY,
    ),
    DocumentKind.QUOTE: PdfTheme(
        name="quote",
        title="Offert",
        company="",
        primary=HexColor("#0ea5e9"),
        accent=HexColor("#94a3b8"),
        text=_TEXT_COLOR,
        card_background=_CARD_BACKGROUND,
        margin=36,
        header_height=40,
        header_gap=14,
        block_gap=12,
        footer_reserve=20,
        typography=_TYPOGRAPHY,
    ),
}


def parse_hex_color(value: str | None, default: str) -> Color:
    candidate = (value or "").strip()
    if not candidate:
        candidate = default
    if not _HEX_COLOR_RE.match(candidate):
        logger.warning("pdf_theme_color_invalid", extra={"color": candidate, "fallback": default})
        candidate = default
    digits = candidate.lstrip("#")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return HexColor(f"#{digits}")


def resolve_document_kind(value: Any) -> DocumentKind:
    if isinstance(value, DocumentKind):
        return value
    try:
        return DocumentKind(str(value))
    except ValueError:
        return DocumentKind.PROTOCOL


def resolve_pdf_theme(kind: Any, branding: Any = None) -> PdfTheme:
    """Theme for a document kind with the payload branding layered on top.

    Branding values that are missing fall back to the configured defaults;
    malformed colours are logged and replaced the same way.
    """
    base = PDF_THEME_BY_KIND[resolve_document_kind(kind)]
    company = (getattr(branding, "company_name", "") or "").strip() or settings.pdf_company_name
    primary = parse_hex_color(getattr(branding, "primary_color", None), settings.pdf_primary_color)
    accent = parse_hex_color(getattr(branding, "accent_color", None), settings.pdf_accent_color)
    return replace(base, company=company, primary=primary, accent=accent)
