from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
import logging
from pathlib import Path
from typing import Sequence

import httpx
from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from app.core.config import settings
from app.core.pdf_blocks import draw_image_safely, draw_photo_page, embed_image, fit_within, format_signature_stamp
from app.core.pdf_geometry import (
    CalibrationKey,
    CalibrationMap,
    CalibrationOffset,
    CellKey,
    FieldKey,
    StageVariant,
    load_calibration,
    mm,
)
from app.core.pdf_text import register_fonts, text_width, wrap_text
from app.core.pdf_themes import DocumentKind, resolve_pdf_theme
from app.core.report_document import ReportInput

logger = logging.getLogger(__name__)

_DEBUG_COLOR = Color(1, 0, 0, alpha=0.7)
_DEBUG_LABEL_COLOR = Color(0.8, 0, 0)


class TemplateUnavailableError(RuntimeError):
    pass


class TemplateLoader:
    """Reads the template asset from disk, falling back to an HTTP fetch."""

    def __init__(
        self,
        path: str | Path | None = None,
        url: str | None = None,
        *,
        timeout: float | None = None,
        allow_http: bool | None = None,
    ) -> None:
        self._path = Path(path or settings.pdf_template_path)
        self._url = url
        self._timeout = settings.pdf_template_fetch_timeout_seconds if timeout is None else timeout
        self._allow_http = settings.pdf_template_http_fallback if allow_http is None else allow_http

    @property
    def path(self) -> Path:
        return self._path

    @property
    def allow_http(self) -> bool:
        return self._allow_http

    def load(self) -> bytes:
        data = self._read_local()
        if data:
            return data
        if not (self._allow_http and self._url):
            raise TemplateUnavailableError(f"template not found at {self._path}")
        return self._fetch()

    def _read_local(self) -> bytes | None:
        try:
            return self._path.read_bytes()
        except OSError as exc:
            logger.info(
                "pdf_template_local_unavailable",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return None

    def _fetch(self) -> bytes:
        try:
            with httpx.Client(timeout=self._timeout, follow_redirects=True) as client:
                response = client.get(self._url, headers={"Cache-Control": "no-store"})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TemplateUnavailableError(
                f"Failed to load template over HTTP: {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TemplateUnavailableError(f"Failed to load template over HTTP: {exc}") from exc
        if not response.content:
            raise TemplateUnavailableError("Failed to load template over HTTP: empty body")
        logger.info("pdf_template_fetched", extra={"url": self._url, "bytes": len(response.content)})
        return response.content


@dataclass(frozen=True)
class TemplateTableLayout:
    x_mm: float
    top_mm: float
    column_widths_mm: tuple[float, ...]
    row_height_mm: float = 7.5
    column_pad_mm: float = 1.5
    max_rows: int = 8


@dataclass(frozen=True)
class TemplateLayout:
    """Millimetre positions of the printed form, measured from the page's top-left."""

    project_x_mm: float = 142
    project_top_mm: float = 28
    project_gap_mm: float = 10
    project_value_width_mm: float = 55
    material_x_mm: float = 18
    material_top_mm: float = 38
    open_table: TemplateTableLayout = field(
        default_factory=lambda: TemplateTableLayout(
            x_mm=18,
            top_mm=165,
            column_widths_mm=(24, 15, 28, 20, 28, 20, 16, 28),
        )
    )
    closed_table: TemplateTableLayout = field(
        default_factory=lambda: TemplateTableLayout(
            x_mm=18,
            top_mm=201,
            column_widths_mm=(24, 15, 28, 20, 28, 20, 28),
        )
    )
    checks_ok_x_mm: float = 53
    checks_comment_x_mm: float = 62
    checks_top_mm: float = 87
    checks_gap_mm: float = 8
    comments_x_mm: float = 62
    comments_top_mm: float = 135
    signature_line_x_mm: float = 67
    signature_line_width_mm: float = 100
    signature_date_city_top_mm: float = 237
    signature_top_mm: float = 248
    signature_name_top_mm: float = 252
    signature_image_max_width_mm: float = 95
    signature_image_max_height_mm: float = 14

    def table(self, variant: StageVariant) -> TemplateTableLayout:
        return self.open_table if variant is StageVariant.OPEN else self.closed_table


PROTOCOL_TEMPLATE_LAYOUT = TemplateLayout()


class OverlayPainter:
    """Draws bare values on a template page at calibrated positions."""

    value_size = 10
    cell_size = 9
    cell_pad = 2
    min_wrapped_size = 7

    def __init__(
        self,
        pdf: canvas.Canvas,
        page_height: float,
        fonts: dict[str, str],
        calibration: CalibrationMap,
        *,
        adjust: CalibrationOffset,
        debug: bool,
        text_color: Color,
    ) -> None:
        self._pdf = pdf
        self._page_height = page_height
        self._fonts = fonts
        self._calibration = calibration
        self._adjust = adjust
        self.debug = debug
        self._text_color = text_color
        self.marks: list[tuple[str, float, float]] = []

    @property
    def fonts(self) -> dict[str, str]:
        return self._fonts

    def x(self, x_mm: float) -> float:
        return mm(x_mm) + self._adjust.dx

    def y_top(self, top_mm: float) -> float:
        return self._page_height - mm(top_mm) + self._adjust.dy

    def offset(self, key: CalibrationKey) -> CalibrationOffset:
        return self._calibration.offset(key)

    def mark(self, x: float, y: float, label: str) -> None:
        if not self.debug:
            return
        self.marks.append((label, x, y))
        pdf = self._pdf
        arm = 3
        pdf.saveState()
        pdf.setFillColor(_DEBUG_COLOR)
        pdf.rect(x - arm, y, arm * 2, 0.5, stroke=0, fill=1)
        pdf.rect(x, y - arm, 0.5, arm * 2, stroke=0, fill=1)
        pdf.setFillColor(_DEBUG_LABEL_COLOR)
        pdf.setFont(self._fonts["regular"], 7)
        pdf.drawString(x + 4, y + 2, label)
        pdf.restoreState()

    def text(self, text: str, x: float, y: float, *, size: float | None = None, bold: bool = False, color: Color | None = None) -> None:
        if not text:
            return
        self._pdf.setFillColor(color or self._text_color)
        self._pdf.setFont(self._fonts["bold" if bold else "regular"], size or self.value_size)
        self._pdf.drawString(x, y, text)

    def value_at(self, key: FieldKey, text: str, x: float, y: float) -> tuple[float, float]:
        x, y = self.offset(key).apply(x, y)
        self.mark(x, y, key.value)
        self.text(text, x, y)
        return x, y

    def wrapped_value_at(self, key: FieldKey, text: str, x: float, y: float, max_width: float) -> float:
        """Draw ``text`` wrapped to ``max_width`` with its block lifted above ``y``.

        A value that needs more than one line is retried once at a smaller
        size. Returns the height used.
        """
        x, base_y = self.offset(key).apply(x, y)
        value = (text or "").strip()
        font = self._fonts["regular"]

        size = self.value_size
        lines = wrap_text(value, font, size, max_width)
        if len(lines) > 1:
            smaller = max(self.min_wrapped_size, size - 2)
            smaller_lines = wrap_text(value, font, smaller, max_width)
            if len(smaller_lines) <= len(lines):
                size, lines = smaller, smaller_lines

        step = size + 2
        count = max(1, len(lines))
        adjusted_base = base_y + (count - 1) * step
        self.mark(x, adjusted_base, key.value)
        for index, line in enumerate(lines):
            self.text(line, x, adjusted_base - (size + 2) - index * step, size=size)
        return count * step

    def cell(self, key: CellKey, text: str, x: float, baseline: float) -> None:
        offset = self.offset(key)
        draw_x = x + offset.dx
        self.mark(draw_x, baseline + offset.dy, str(key))
        self.text(text, draw_x, baseline - self.cell_pad + offset.dy, size=self.cell_size)

    def check(self, label: str, ok: bool, comment: str, ok_x: float, comment_x: float, y: float) -> None:
        self.mark(ok_x, y, f"checks.{label}.ok")
        self.mark(comment_x, y, f"checks.{label}.txt")
        if ok:
            self.text("X", ok_x, y, size=self.value_size + 3, bold=True)
        self.text(comment, comment_x, y)


class TemplateOverlayRenderer:
    """Copies the template pages and merges calibrated values onto page one."""

    name = "template_overlay"

    def __init__(
        self,
        loader: TemplateLoader,
        *,
        layout: TemplateLayout = PROTOCOL_TEMPLATE_LAYOUT,
        calibration: CalibrationMap | None = None,
        debug: bool | None = None,
    ) -> None:
        self._loader = loader
        self._layout = layout
        self._calibration = calibration if calibration is not None else load_calibration()
        self._debug = debug

    def render(self, report: ReportInput) -> bytes:
        template = PdfReader(BytesIO(self._loader.load()))
        if not template.pages:
            raise TemplateUnavailableError("template has no pages")
        first_page = template.pages[0]
        page_size = (float(first_page.mediabox.width), float(first_page.mediabox.height))

        overlay = PdfReader(BytesIO(self.draw_overlay(report, page_size)))

        writer = PdfWriter()
        for index, page in enumerate(template.pages):
            if index == 0:
                page.merge_page(overlay.pages[0])
            writer.add_page(page)
        for extra_page in overlay.pages[1:]:
            writer.add_page(extra_page)

        buffer = BytesIO()
        writer.write(buffer)
        return buffer.getvalue()

    def draw_overlay(self, report: ReportInput, page_size: tuple[float, float]) -> bytes:
        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=page_size)
        painter = self.paint_values(pdf, report, page_size)
        pdf.showPage()

        if report.has_photos():
            theme = resolve_pdf_theme(DocumentKind.PROTOCOL, report.branding)
            pdf.setPageSize(A4)
            draw_photo_page(
                pdf,
                register_fonts(),
                theme,
                before=report.before_image,
                after=report.after_image,
                page_size=A4,
            )
            pdf.showPage()
        pdf.save()

        logger.info(
            "pdf_overlay_drawn",
            extra={"debug": painter.debug, "marks": len(painter.marks), "photos": report.has_photos()},
        )
        return buffer.getvalue()

    def paint_values(self, pdf: canvas.Canvas, report: ReportInput, page_size: tuple[float, float]) -> OverlayPainter:
        theme = resolve_pdf_theme(DocumentKind.PROTOCOL, report.branding)
        calibration = self._calibration.merged(CalibrationMap.from_mapping(report.template_overlay_offsets))
        adjust = report.template_overlay_adjust
        debug = self._debug
        if debug is None:
            debug = report.template_debug_overlay or settings.pdf_template_debug_overlay

        painter = OverlayPainter(
            pdf,
            page_size[1],
            register_fonts(),
            calibration,
            adjust=CalibrationOffset(dx_mm=adjust.dx_mm or 0.0, dy_mm=adjust.dy_mm or 0.0),
            debug=debug,
            text_color=theme.text,
        )
        self._paint_project(painter, report)
        self._paint_material(painter, report)
        self._paint_stage_table(painter, StageVariant.OPEN, [row.template_cells() for row in report.filled_open_stages()])
        self._paint_stage_table(painter, StageVariant.CLOSED, [row.template_cells() for row in report.filled_closed_stages()])
        self._paint_checks(painter, report)
        self._paint_comments(painter, report)
        self._paint_signature(painter, report, pdf, theme.accent)
        return painter

    def _paint_project(self, painter: OverlayPainter, report: ReportInput) -> None:
        layout = self._layout
        x = painter.x(layout.project_x_mm)
        y = painter.y_top(layout.project_top_mm)
        gap = mm(layout.project_gap_mm)
        value_drop = painter.value_size + 2
        for key, value in (
            (FieldKey.PROJECT_INSTALLATION_DATE, report.installation_date),
            (FieldKey.PROJECT_INSTALLER, report.installer_name),
            (FieldKey.PROJECT_CLIENT, report.client_name),
            (FieldKey.PROJECT_NUMBER, report.project_number),
        ):
            painter.value_at(key, value.strip(), x, y - value_drop)
            y -= gap
        painter.wrapped_value_at(
            FieldKey.PROJECT_ADDRESS,
            report.work_address.one_line(),
            x,
            y,
            mm(layout.project_value_width_mm),
        )

    def _paint_material(self, painter: OverlayPainter, report: ReportInput) -> None:
        layout = self._layout
        y = painter.y_top(layout.material_top_mm)
        painter.value_at(
            FieldKey.MATERIAL_USED,
            report.material_used.strip(),
            painter.x(layout.material_x_mm),
            y - (painter.value_size + 2),
        )

    def _paint_stage_table(self, painter: OverlayPainter, variant: StageVariant, rows: Sequence[Sequence[str]]) -> None:
        table = self._layout.table(variant)
        if len(rows) > table.max_rows:
            logger.info(
                "pdf_overlay_rows_truncated",
                extra={"table": variant.value, "rows": len(rows), "max_rows": table.max_rows},
            )
            rows = rows[: table.max_rows]

        table_key = FieldKey.OPEN_TABLE if variant is StageVariant.OPEN else FieldKey.CLOSED_TABLE
        table_x, row_top = painter.offset(table_key).apply(painter.x(table.x_mm), painter.y_top(table.top_mm))
        column_xs: list[float] = []
        cursor = table_x
        for width in table.column_widths_mm:
            column_xs.append(cursor)
            cursor += mm(width)

        row_height = mm(table.row_height_mm)
        pad = mm(table.column_pad_mm)
        for row_index, cells in enumerate(rows, start=1):
            baseline = row_top - row_height * 0.5
            for column_index, column_x in enumerate(column_xs, start=1):
                text = str(cells[column_index - 1]).strip() if column_index <= len(cells) else ""
                painter.cell(CellKey(variant, row_index, column_index), text, column_x + pad, baseline)
            row_top -= row_height

    def _paint_checks(self, painter: OverlayPainter, report: ReportInput) -> None:
        layout = self._layout
        offset = painter.offset(FieldKey.CHECKS_BLOCK)
        ok_x = painter.x(layout.checks_ok_x_mm) + offset.dx
        comment_x = painter.x(layout.checks_comment_x_mm) + offset.dx
        y = painter.y_top(layout.checks_top_mm)
        for label, item in report.checks.labelled():
            painter.check(label, item.ok, item.comment.strip(), ok_x, comment_x, y + offset.dy)
            y -= mm(layout.checks_gap_mm)

    def _paint_comments(self, painter: OverlayPainter, report: ReportInput) -> None:
        comment = report.checks.other_comments.comment.strip()
        if not comment:
            return
        layout = self._layout
        painter.value_at(
            FieldKey.COMMENTS_VALUE,
            comment,
            painter.x(layout.comments_x_mm),
            painter.y_top(layout.comments_top_mm),
        )

    def _paint_signature(
        self,
        painter: OverlayPainter,
        report: ReportInput,
        pdf: canvas.Canvas,
        note_color: Color,
    ) -> None:
        layout = self._layout
        line_x = painter.x(layout.signature_line_x_mm)
        line_width = mm(layout.signature_line_width_mm)
        signature_y = painter.y_top(layout.signature_top_mm)

        date_city = report.signature_date_city.strip()
        if date_city:
            painter.value_at(FieldKey.SIGNATURE_DATE_CITY, date_city, line_x + 4, painter.y_top(layout.signature_date_city_top_mm))

        image = embed_image(report.signature)
        if image is not None:
            width, height = fit_within(
                image,
                mm(layout.signature_image_max_width_mm),
                mm(layout.signature_image_max_height_mm),
            )
            image_x, image_y = painter.offset(FieldKey.SIGNATURE_IMAGE).apply(line_x, signature_y - height * 0.25)
            draw_image_safely(pdf, image, x=image_x, y=image_y, width=width, height=height, layer="signature")

        stamp = format_signature_stamp(report.signature_timestamp, report.signature_time_zone)
        if stamp:
            note_size = 8
            note_width = text_width(stamp, painter.fonts["regular"], note_size)
            note_x, note_y = painter.offset(FieldKey.SIGNATURE_TIMESTAMP).apply(
                line_x + line_width - note_width,
                signature_y + mm(3),
            )
            painter.mark(note_x, note_y, FieldKey.SIGNATURE_TIMESTAMP.value)
            painter.text(stamp, note_x, note_y, size=note_size, color=note_color)

        printed_name = report.installer_name.strip().upper()
        if printed_name:
            painter.value_at(FieldKey.SIGNATURE_NAME, printed_name, line_x + 4, painter.y_top(layout.signature_name_top_mm))
