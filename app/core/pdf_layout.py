from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
import math
from typing import Sequence

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from app.core.pdf_themes import PdfTheme


logger = logging.getLogger(__name__)


def scale_to_fit(base: Sequence[float], target: int) -> list[int]:
    """Scale proportional weights to integer widths that sum to ``target``.

    Every weight is scaled and floored; the rounding remainder goes to the
    last column.
    """
    if not base:
        raise ValueError("scale_to_fit needs at least one column weight")
    if target < 0:
        raise ValueError("scale_to_fit target must not be negative")
    total = sum(base) or 1
    scale = target / total
    scaled = [math.floor(weight * scale) for weight in base]
    scaled[-1] += target - sum(scaled)
    return scaled


@dataclass(slots=True)
class LayoutBlock:
    height: float
    origin_y: float | None = None


@dataclass(slots=True)
class PageCursor:
    y: float
    page_width: float
    page_height: float
    margin: float
    page_number: int = 1

    @property
    def content_width(self) -> float:
        return self.page_width - self.margin * 2


class PageChrome:
    """Header bar, footer and accent stripe repeated on every flowed page."""

    def __init__(self, theme: PdfTheme, fonts: dict[str, str], printed_on: date | None = None) -> None:
        self._theme = theme
        self._fonts = fonts
        self._printed_on = (printed_on or date.today()).isoformat()

    def draw(self, pdf: canvas.Canvas, cursor: PageCursor) -> float:
        theme = self._theme
        typography = theme.typography
        width, height, margin = cursor.page_width, cursor.page_height, cursor.margin

        pdf.saveState()
        pdf.setFillColor(theme.primary)
        pdf.rect(0, height - theme.header_height, width, theme.header_height, stroke=0, fill=1)

        pdf.setFillColorRGB(1, 1, 1)
        pdf.setFont(self._fonts["bold"], typography.chrome_title_size)
        pdf.drawString(margin, height - 22, theme.title)
        pdf.setFont(self._fonts["regular"], typography.chrome_company_size)
        pdf.drawString(margin, height - 34, theme.company)

        pdf.setFillColor(theme.accent)
        pdf.setFont(self._fonts["regular"], typography.footer_size)
        pdf.drawString(margin, max(margin - 2, 4), f"Generated: {self._printed_on}")
        if cursor.page_number > 1:
            pdf.drawRightString(width - margin, max(margin - 2, 4), str(cursor.page_number))

        stripe_x = max(margin - 8, 2)
        pdf.rect(stripe_x, margin, 4, height - margin - theme.header_height, stroke=0, fill=1)
        pdf.restoreState()

        return height - theme.header_height - theme.header_gap


class PageFlowController:
    """Owns the single live cursor of a flowed document.

    ``ensure_space`` and ``advance`` are the only operations that move the
    cursor; renderers never call ``showPage`` themselves.
    """

    def __init__(
        self,
        pdf: canvas.Canvas,
        theme: PdfTheme,
        chrome: PageChrome | None = None,
        *,
        page_size: tuple[float, float] = A4,
    ) -> None:
        self._pdf = pdf
        self._theme = theme
        self._chrome = chrome
        page_width, page_height = page_size
        self._cursor = PageCursor(
            y=page_height - theme.margin,
            page_width=page_width,
            page_height=page_height,
            margin=theme.margin,
        )
        self._page_is_empty = True
        self._cursor.y = self._draw_chrome()
        self._first_content_y = self._cursor.y

    @property
    def cursor(self) -> PageCursor:
        return self._cursor

    @property
    def pdf(self) -> canvas.Canvas:
        return self._pdf

    @property
    def theme(self) -> PdfTheme:
        return self._theme

    @property
    def content_width(self) -> float:
        return self._cursor.content_width

    @property
    def left(self) -> float:
        return self._cursor.margin

    @property
    def bottom_safe(self) -> float:
        return self._theme.bottom_safe

    @property
    def block_gap(self) -> float:
        return self._theme.block_gap

    @property
    def first_content_y(self) -> float:
        return self._first_content_y

    @property
    def page_capacity(self) -> float:
        """Height an empty page offers to a block and its trailing gap."""
        return self._first_content_y - self.bottom_safe

    @property
    def available_height(self) -> float:
        return self._cursor.y - self.bottom_safe

    @property
    def page_count(self) -> int:
        return self._cursor.page_number

    def ensure_space(self, height: float) -> bool:
        """Start a new page when ``height`` no longer fits above the safe margin.

        Returns True when a page break happened. A block taller than an empty
        page is drawn where it is instead of producing blank pages.
        """
        if self._cursor.y - height >= self.bottom_safe:
            return False
        if self._page_is_empty:
            logger.warning(
                "pdf_block_exceeds_page",
                extra={"height": round(height, 1), "page": self._cursor.page_number},
            )
            return False
        self._new_page()
        return True

    def advance(self, height: float) -> None:
        self._cursor.y -= height + self._theme.block_gap
        self._page_is_empty = False

    def _new_page(self) -> None:
        self._pdf.showPage()
        self._cursor.page_number += 1
        self._cursor.y = self._draw_chrome()
        self._page_is_empty = True

    def _draw_chrome(self) -> float:
        if self._chrome is None:
            return self._cursor.page_height - self._cursor.margin
        return self._chrome.draw(self._pdf, self._cursor)
