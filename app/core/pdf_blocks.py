from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
import logging
from typing import Iterator, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.core.pdf_layout import LayoutBlock, PageFlowController, scale_to_fit
from app.core.pdf_text import line_height, text_width, wrap_text, wrapped_line_count
from app.core.pdf_themes import PdfTheme
from app.core.report_document import ImageAsset, display_value


logger = logging.getLogger(__name__)

CONTINUED_SUFFIX = "(forts.)"


@dataclass(frozen=True, slots=True)
class CardRow:
    label: str
    value: str


@dataclass(frozen=True, slots=True)
class TableColumn:
    header: str
    weight: float
    align_right: bool = False


def embed_image(asset: ImageAsset) -> ImageReader | None:
    if asset is None:
        return None
    try:
        reader = ImageReader(BytesIO(asset.data))
        width, height = reader.getSize()
    except Exception as exc:
        logger.warning(
            "pdf_image_decode_failed",
            extra={"kind": type(asset).__name__, "error": str(exc)},
        )
        return None
    if width <= 0 or height <= 0:
        return None
    return reader


def draw_image_safely(
    pdf: canvas.Canvas,
    image: ImageReader,
    *,
    x: float,
    y: float,
    width: float,
    height: float,
    layer: str,
) -> bool:
    try:
        pdf.drawImage(image, x, y, width=width, height=height, mask="auto")
        return True
    except Exception as exc:
        logger.warning("pdf_image_embed_failed", extra={"layer": layer, "error": str(exc)})
        return False


def fit_within(image: ImageReader, max_width: float, max_height: float, *, allow_upscale: bool = False) -> tuple[float, float]:
    width, height = image.getSize()
    scale = min(max_width / width, max_height / height)
    if not allow_upscale:
        scale = min(scale, 1)
    return width * scale, height * scale


def format_signature_stamp(raw: str, time_zone: str = "") -> str | None:
    text = (raw or "").strip()
    if not text:
        return None
    try:
        moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return f"Signed at: {text}"
    zone_name = (time_zone or "").strip()
    if zone_name:
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError):
            zone = None
        if zone is not None:
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=ZoneInfo("UTC"))
            return f"Signed at: {moment.astimezone(zone):%Y-%m-%d %H:%M} {zone_name}"
    return f"Signed at: {moment:%Y-%m-%d %H:%M}"


class SectionCard:
    """Bordered card with a title and label/value rows in one or two columns."""

    padding = 14
    row_gap = 10
    column_gap = 14
    title_gap = 6

    def __init__(self, theme: PdfTheme, fonts: dict[str, str]) -> None:
        self._theme = theme
        self._fonts = fonts
        typography = theme.typography
        self._title_size = typography.card_title_size
        self._label_size = typography.label_size
        self._value_size = typography.value_size
        self._line_gap = typography.line_gap

    @property
    def title_height(self) -> float:
        return self._title_size + 8 + self.title_gap

    def value_width(self, content_width: float, two_columns: bool) -> float:
        inner = content_width - self.padding * 2
        if two_columns:
            return (inner - self.column_gap) / 2
        return inner

    def row_height(self, row: CardRow, value_width: float) -> float:
        line_count = wrapped_line_count(display_value(row.value), self._fonts["regular"], self._value_size, value_width)
        label_height = self._label_size + self._line_gap
        value_height = max(1, line_count) * line_height(self._value_size, self._line_gap)
        return label_height + value_height + self.row_gap

    def column_height(self, rows: Sequence[CardRow], value_width: float) -> float:
        return sum(self.row_height(row, value_width) for row in rows)

    def measure(
        self,
        rows: Sequence[CardRow],
        right_rows: Sequence[CardRow] | None,
        content_width: float,
    ) -> LayoutBlock:
        two_columns = right_rows is not None
        value_width = self.value_width(content_width, two_columns)
        body = self.column_height(rows, value_width)
        if two_columns:
            body = max(body, self.column_height(right_rows or [], value_width))
        return LayoutBlock(height=self.title_height + body + self.padding)

    def draw(
        self,
        flow: PageFlowController,
        title: str,
        rows: Sequence[CardRow],
        right_rows: Sequence[CardRow] | None = None,
    ) -> LayoutBlock:
        """Draw the card, continuing it on further pages when it is taller than a page.

        Returns the last block drawn.
        """
        content_width = flow.content_width
        block = self.measure(rows, right_rows, content_width)
        if block.height + flow.block_gap <= flow.page_capacity:
            return self._draw_block(flow, title, rows, right_rows, block)

        parts = self.split_rows([*rows, *(right_rows or [])], content_width, flow.page_capacity - flow.block_gap)
        logger.info("pdf_card_continued", extra={"title": title, "parts": len(parts)})
        for index, part in enumerate(parts):
            part_title = title if index == 0 else f"{title} {CONTINUED_SUFFIX}"
            block = self._draw_block(flow, part_title, part, None, self.measure(part, None, content_width))
        return block

    def split_rows(self, rows: Sequence[CardRow], content_width: float, max_height: float) -> list[list[CardRow]]:
        """Group single-column rows into cards no taller than ``max_height``.

        A row whose value alone is too tall is cut between its wrapped lines.
        """
        value_width = self.value_width(content_width, False)
        budget = max_height - self.title_height - self.padding
        parts: list[list[CardRow]] = []
        current: list[CardRow] = []
        used = 0.0
        for row in self._fitting_rows(rows, value_width, budget):
            height = self.row_height(row, value_width)
            if current and used + height > budget:
                parts.append(current)
                current, used = [], 0.0
            current.append(row)
            used += height
        if current:
            parts.append(current)
        return parts

    def _fitting_rows(self, rows: Sequence[CardRow], value_width: float, budget: float) -> Iterator[CardRow]:
        for row in rows:
            if self.row_height(row, value_width) <= budget:
                yield row
                continue
            piece: list[str] = []
            for line in wrap_text(display_value(row.value), self._fonts["regular"], self._value_size, value_width):
                candidate = CardRow(row.label, " ".join([*piece, line]))
                if piece and self.row_height(candidate, value_width) > budget:
                    yield CardRow(row.label, " ".join(piece))
                    piece = [line]
                else:
                    piece.append(line)
            if piece:
                yield CardRow(row.label, " ".join(piece))

    def _draw_block(
        self,
        flow: PageFlowController,
        title: str,
        rows: Sequence[CardRow],
        right_rows: Sequence[CardRow] | None,
        block: LayoutBlock,
    ) -> LayoutBlock:
        content_width = flow.content_width
        flow.ensure_space(block.height + flow.block_gap)

        pdf = flow.pdf
        x = flow.left
        y_top = flow.cursor.y
        block.origin_y = y_top
        self._draw_frame(pdf, x, y_top, content_width, block.height)

        pdf.setFillColor(self._theme.text)
        pdf.setFont(self._fonts["bold"], self._title_size)
        pdf.drawString(x + self.padding, y_top - self.padding - self._title_size, title)

        two_columns = right_rows is not None
        value_width = self.value_width(content_width, two_columns)
        first_row_y = y_top - self.padding - self.title_height
        left_x = x + self.padding
        self._draw_rows(pdf, rows, left_x, first_row_y, value_width)
        if two_columns:
            self._draw_rows(pdf, right_rows or [], left_x + value_width + self.column_gap, first_row_y, value_width)

        flow.advance(block.height)
        return block

    def _draw_frame(self, pdf: canvas.Canvas, x: float, y_top: float, width: float, height: float) -> None:
        pdf.saveState()
        pdf.setFillColor(self._theme.card_background)
        pdf.setStrokeColor(self._theme.accent)
        pdf.setLineWidth(1)
        pdf.rect(x, y_top - height, width, height, stroke=1, fill=1)
        pdf.restoreState()

    def _draw_rows(self, pdf: canvas.Canvas, rows: Sequence[CardRow], x: float, y: float, value_width: float) -> float:
        value_line_height = line_height(self._value_size, self._line_gap)
        for row in rows:
            pdf.setFillColor(self._theme.accent)
            pdf.setFont(self._fonts["bold"], self._label_size)
            pdf.drawString(x, y, row.label.upper())
            y -= self._label_size + self._line_gap

            pdf.setFillColor(self._theme.text)
            pdf.setFont(self._fonts["regular"], self._value_size)
            lines = wrap_text(display_value(row.value), self._fonts["regular"], self._value_size, value_width)
            for line in lines:
                pdf.drawString(x, y, line)
                y -= value_line_height
            y -= self.row_gap
        return y


@dataclass(frozen=True, slots=True)
class TableLayout:
    block: LayoutBlock
    column_widths: list[int]
    header_lines: list[list[str]]
    header_height: float


class TableBlock:
    """Bordered table: wrapped header row, fixed-height single-line data rows."""

    inner_pad_x = 12
    static_top = 28
    bottom_pad = 14
    row_height = 14
    cell_pad = 2
    title_offset = 13

    def __init__(self, theme: PdfTheme, fonts: dict[str, str]) -> None:
        self._theme = theme
        self._fonts = fonts
        typography = theme.typography
        self._header_size = typography.header_size
        self._cell_size = typography.cell_size
        self._title_size = typography.table_title_size
        self._line_gap = typography.line_gap

    def measure(self, columns: Sequence[TableColumn], row_count: int, content_width: float) -> TableLayout:
        inner_width = int(content_width - self.inner_pad_x * 2)
        widths = scale_to_fit([column.weight for column in columns], inner_width)
        header_lines = [
            wrap_text(column.header, self._fonts["bold"], self._header_size, max(4, width - 4))
            for column, width in zip(columns, widths)
        ]
        header_line_count = max([1, *(len(lines) for lines in header_lines)])
        header_height = header_line_count * line_height(self._header_size, self._line_gap)
        height = self.static_top + header_height + self.row_height * max(1, row_count) + self.bottom_pad
        return TableLayout(
            block=LayoutBlock(height=height),
            column_widths=widths,
            header_lines=header_lines,
            header_height=header_height,
        )

    def rows_fitting(self, layout: TableLayout, max_height: float) -> int:
        fixed = self.static_top + layout.header_height + self.bottom_pad
        return int((max_height - fixed) // self.row_height)

    def draw(
        self,
        flow: PageFlowController,
        title: str,
        columns: Sequence[TableColumn],
        rows: Sequence[Sequence[str]],
    ) -> LayoutBlock:
        """Draw the table, repeating title and header on later pages when the rows do not fit one page.

        Returns the last block drawn.
        """
        content_width = flow.content_width
        layout = self.measure(columns, len(rows), content_width)
        if layout.block.height + flow.block_gap <= flow.page_capacity:
            return self._draw_block(flow, title, columns, rows, layout)

        per_page = max(1, self.rows_fitting(layout, flow.page_capacity - flow.block_gap))
        remaining = list(rows)
        part_title = title
        parts = 0
        while remaining:
            count = self.rows_fitting(layout, flow.available_height - flow.block_gap)
            if count < 1:
                count = per_page
            chunk, remaining = remaining[:count], remaining[count:]
            block = self._draw_block(flow, part_title, columns, chunk, self.measure(columns, len(chunk), content_width))
            part_title = f"{title} {CONTINUED_SUFFIX}"
            parts += 1
        logger.info("pdf_table_continued", extra={"title": title, "rows": len(rows), "parts": parts})
        return block

    def _draw_block(
        self,
        flow: PageFlowController,
        title: str,
        columns: Sequence[TableColumn],
        rows: Sequence[Sequence[str]],
        layout: TableLayout,
    ) -> LayoutBlock:
        content_width = flow.content_width
        block = layout.block
        flow.ensure_space(block.height + flow.block_gap)

        pdf = flow.pdf
        theme = self._theme
        x0 = flow.left
        y_top = flow.cursor.y
        block.origin_y = y_top

        pdf.saveState()
        pdf.setFillColor(theme.card_background)
        pdf.setStrokeColor(theme.accent)
        pdf.setLineWidth(1)
        pdf.rect(x0, y_top - block.height, content_width, block.height, stroke=1, fill=1)

        pdf.setFillColor(theme.text)
        pdf.setFont(self._fonts["bold"], self._title_size)
        pdf.drawString(x0 + self.inner_pad_x, y_top - self.title_offset, title)

        column_xs: list[float] = []
        cursor_x = x0 + self.inner_pad_x
        for width in layout.column_widths:
            column_xs.append(cursor_x)
            cursor_x += width
        inner_width = sum(layout.column_widths)

        header_top = y_top - self.static_top
        header_line_height = line_height(self._header_size, self._line_gap)
        pdf.setFillColor(theme.accent)
        pdf.setFont(self._fonts["bold"], self._header_size)
        for index, lines in enumerate(layout.header_lines):
            y = header_top
            for line in lines:
                pdf.drawString(
                    self._cell_x(line, index, columns, column_xs, layout.column_widths, self._fonts["bold"], self._header_size),
                    y,
                    line,
                )
                y -= header_line_height

        header_bottom = header_top - layout.header_height - 2
        pdf.setFillColor(theme.accent, alpha=0.3)
        pdf.rect(x0 + self.inner_pad_x, header_bottom, inner_width, 0.5, stroke=0, fill=1)

        body_rows: Sequence[Sequence[str]] = rows if rows else [[]]
        row_top = header_bottom - 4
        pdf.setFillColor(theme.accent, alpha=0.15)
        for _ in body_rows:
            pdf.rect(x0 + self.inner_pad_x, row_top - self.row_height, inner_width, 0.5, stroke=0, fill=1)
            row_top -= self.row_height

        vertical_pad = (self.row_height - self._cell_size) // 2
        row_top = header_bottom - 4
        pdf.setFillColor(theme.text, alpha=1)
        pdf.setFont(self._fonts["regular"], self._cell_size)
        for cells in body_rows:
            baseline = row_top - vertical_pad - self._cell_size
            for index in range(len(columns)):
                text = str(cells[index]) if index < len(cells) and cells[index] is not None else ""
                if not text:
                    continue
                pdf.drawString(
                    self._cell_x(text, index, columns, column_xs, layout.column_widths, self._fonts["regular"], self._cell_size),
                    baseline,
                    text,
                )
            row_top -= self.row_height

        table_bottom = y_top - block.height + self.bottom_pad + 2
        pdf.setFillColor(theme.accent, alpha=0.15)
        for index in range(len(column_xs) - 1):
            boundary = column_xs[index] + layout.column_widths[index]
            pdf.rect(boundary, table_bottom, 0.5, header_bottom - table_bottom, stroke=0, fill=1)
        pdf.restoreState()

        flow.advance(block.height)
        return block

    def _cell_x(
        self,
        text: str,
        index: int,
        columns: Sequence[TableColumn],
        column_xs: Sequence[float],
        widths: Sequence[int],
        font: str,
        size: float,
    ) -> float:
        column_x = column_xs[index]
        if not columns[index].align_right:
            return column_x + self.cell_pad
        width = text_width(text, font, size)
        return column_x + max(self.cell_pad, widths[index] - self.cell_pad - width)


class SignatureBlock:
    """Flowed signature card: date/place, signature image with timestamp, printed name."""

    padding = 14
    label_column_width = 140
    row_height = 26
    row_gap = 10
    title_gap = 6
    image_max_height = 36

    def __init__(self, theme: PdfTheme, fonts: dict[str, str]) -> None:
        self._theme = theme
        self._fonts = fonts

    def measure(self) -> LayoutBlock:
        title_height = self._theme.typography.card_title_size + 8
        height = title_height + self.title_gap + self.row_height * 3 + self.row_gap * 2
        return LayoutBlock(height=height)

    def draw(
        self,
        flow: PageFlowController,
        *,
        date_city: str,
        signature: ImageAsset,
        timestamp: str | None,
        printed_name: str,
    ) -> LayoutBlock:
        block = self.measure()
        flow.ensure_space(block.height + flow.block_gap)

        pdf = flow.pdf
        theme = self._theme
        typography = theme.typography
        label_size = typography.label_size
        value_size = typography.value_size
        y_top = flow.cursor.y
        block.origin_y = y_top

        pdf.saveState()
        pdf.setFillColor(theme.text)
        pdf.setFont(self._fonts["bold"], typography.card_title_size)
        pdf.drawString(flow.left + self.padding, y_top - self.padding - typography.card_title_size, "Signatur")

        x_label = flow.left + self.padding
        x_line = x_label + self.label_column_width + 8
        line_width = flow.content_width - (x_line - flow.left) - self.padding
        y = y_top - self.padding - (typography.card_title_size + 8) - self.title_gap

        def draw_row(label: str) -> float:
            pdf.setFillColor(theme.accent)
            pdf.setFont(self._fonts["bold"], label_size)
            pdf.drawString(x_label, y, label.upper())
            baseline = y - (label_size + 4)
            pdf.setFillColor(theme.accent, alpha=0.5)
            pdf.rect(x_line, baseline, line_width, 0.7, stroke=0, fill=1)
            pdf.setFillColor(theme.text, alpha=1)
            return baseline

        baseline = draw_row("Datum och ort")
        if date_city.strip():
            pdf.setFont(self._fonts["regular"], value_size)
            pdf.drawString(x_line + 4, baseline + 4, date_city.strip())
        y = baseline - self.row_height + self.row_gap

        baseline = draw_row("Underskrift")
        image = embed_image(signature)
        if image is not None:
            width, height = fit_within(image, line_width, self.image_max_height)
            draw_image_safely(
                pdf,
                image,
                x=x_line,
                y=baseline - height * 0.25,
                width=width,
                height=height,
                layer="signature",
            )
        if timestamp:
            note_size = label_size
            pdf.setFillColor(theme.accent)
            pdf.setFont(self._fonts["regular"], note_size)
            note_width = text_width(timestamp, self._fonts["regular"], note_size)
            pdf.drawString(x_line + line_width - note_width, baseline + 10, timestamp)
            pdf.setFillColor(theme.text)
        y = baseline - self.row_height + self.row_gap

        baseline = draw_row("Namnförtydligande")
        name = printed_name.strip().upper()
        if name:
            pdf.setFont(self._fonts["regular"], value_size)
            pdf.drawString(x_line + 4, baseline + 4, name)
        pdf.restoreState()

        flow.advance(block.height)
        return block


class PhotoBlock:
    """Titled photo scaled into a fixed-height slot of the flowed layout."""

    padding = 14
    slot_height = 300

    def __init__(self, theme: PdfTheme, fonts: dict[str, str]) -> None:
        self._theme = theme
        self._fonts = fonts

    def measure(self) -> LayoutBlock:
        title_height = self._theme.typography.card_title_size + 8
        return LayoutBlock(height=self.padding * 2 + title_height + self.slot_height)

    def draw(self, flow: PageFlowController, title: str, asset: ImageAsset) -> LayoutBlock | None:
        image = embed_image(asset)
        if image is None:
            return None
        block = self.measure()
        flow.ensure_space(block.height + flow.block_gap)

        pdf = flow.pdf
        typography = self._theme.typography
        y_top = flow.cursor.y
        block.origin_y = y_top
        pdf.saveState()
        pdf.setFillColor(self._theme.text)
        pdf.setFont(self._fonts["bold"], typography.card_title_size)
        pdf.drawString(flow.left + self.padding, y_top - self.padding - typography.card_title_size, title)

        slot_width = flow.content_width - self.padding * 2
        width, height = fit_within(image, slot_width, self.slot_height, allow_upscale=True)
        slot_top = y_top - self.padding - (typography.card_title_size + 8)
        draw_image_safely(
            pdf,
            image,
            x=flow.left + self.padding + (slot_width - width) / 2,
            y=slot_top - self.slot_height + (self.slot_height - height) / 2,
            width=width,
            height=height,
            layer=title,
        )
        pdf.restoreState()

        flow.advance(block.height)
        return block


def draw_photo_page(
    pdf: canvas.Canvas,
    fonts: dict[str, str],
    theme: PdfTheme,
    *,
    before: ImageAsset,
    after: ImageAsset,
    page_size: tuple[float, float],
) -> int:
    """Before/after photos stacked on one page. Returns the number of photos drawn."""
    page_width, page_height = page_size
    margin = 36
    title_size = 12
    max_width = page_width - margin * 2
    slot_height = (page_height - margin * 3) / 2
    drawn = 0

    def place(asset: ImageAsset, title: str, title_y: float, slot_bottom: float) -> bool:
        image = embed_image(asset)
        if image is None:
            return False
        pdf.setFillColor(theme.text)
        pdf.setFont(fonts["bold"], title_size)
        pdf.drawString(margin, title_y, title)
        box_height = slot_height - 12
        width, height = fit_within(image, max_width, box_height, allow_upscale=True)
        return draw_image_safely(
            pdf,
            image,
            x=margin + (max_width - width) / 2,
            y=slot_bottom + (box_height - height) / 2,
            width=width,
            height=height,
            layer=title,
        )

    top_title_y = page_height - margin - title_size
    if place(before, "Före", top_title_y, top_title_y - 6 - slot_height):
        drawn += 1
    if place(after, "Efter", margin + slot_height + 12, margin):
        drawn += 1
    return drawn
