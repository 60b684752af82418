from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date
from io import BytesIO
from typing import Any, Protocol, Sequence

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from app.core.pdf_blocks import CardRow, PhotoBlock, SectionCard, SignatureBlock, TableBlock, TableColumn, format_signature_stamp
from app.core.pdf_geometry import CalibrationMap
from app.core.pdf_layout import PageChrome, PageFlowController
from app.core.pdf_overlay import TemplateLoader, TemplateOverlayRenderer
from app.core.pdf_text import register_fonts
from app.core.pdf_themes import DocumentKind, resolve_pdf_theme
from app.core.report_document import (
    EMPTY_PLACEHOLDER,
    QuoteInput,
    ReportInput,
    format_currency,
    format_quantity,
)


logger = logging.getLogger(__name__)

OPEN_STAGE_COLUMNS: tuple[TableColumn, ...] = (
    TableColumn("Etapp (öppet)", 60),
    TableColumn("Yta m²", 50, align_right=True),
    TableColumn("Beställd tjocklek (ex sättningspåslag)", 120, align_right=True),
    TableColumn("Sättningspåslag %", 80, align_right=True),
    TableColumn("Installerad tjocklek (inkl sättningspåslag)", 140, align_right=True),
    TableColumn("Antal säck", 100, align_right=True),
    TableColumn("Installerad densitet kg/m³", 120, align_right=True),
    TableColumn("Lambdavärde W/m²K", 120, align_right=True),
)

CLOSED_STAGE_COLUMNS: tuple[TableColumn, ...] = (
    TableColumn("Etapp (slutet)", 80),
    TableColumn("Yta m²", 60, align_right=True),
    TableColumn("Beställd tjocklek", 100, align_right=True),
    TableColumn("Uppmät tjocklek", 100, align_right=True),
    TableColumn("Antal säck", 120, align_right=True),
    TableColumn("Installerad densitet kg/m³", 120, align_right=True),
    TableColumn("Lambdavärde W/m²K", 120, align_right=True),
)

QUOTE_LINE_COLUMNS: tuple[TableColumn, ...] = (
    TableColumn("Beskrivning", 220),
    TableColumn("Antal", 60, align_right=True),
    TableColumn("À-pris", 90, align_right=True),
    TableColumn("Rabatt", 60, align_right=True),
    TableColumn("Summa", 100, align_right=True),
)

_FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9-]+")


class DocumentRenderer(Protocol):
    name: str

    def render(self, document: Any) -> bytes:
        ...


def render_with_fallback(renderers: Sequence[DocumentRenderer], document: Any) -> bytes:
    """Return the output of the first renderer that succeeds.

    Failures are logged and the next renderer is tried; when every renderer
    fails the last error propagates.
    """
    if not renderers:
        raise ValueError("render_with_fallback needs at least one renderer")
    for renderer, fallback in zip(renderers, renderers[1:]):
        try:
            return renderer.render(document)
        except Exception as exc:
            logger.warning(
                "pdf_renderer_failed",
                extra={"renderer": renderer.name, "fallback": fallback.name, "error": str(exc)},
            )
    return renderers[-1].render(document)


def sanitize_filename_part(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    return _FILENAME_UNSAFE_RE.sub("_", normalized).strip("_")


def build_pdf_filename(
    prefix: str,
    party: str,
    identifier: str,
    *,
    party_default: str = "client",
    identifier_default: str = "order",
) -> str:
    party_part = sanitize_filename_part(party) or party_default
    identifier_part = sanitize_filename_part(identifier) or identifier_default
    return f"{prefix}_{party_part}_{identifier_part}.pdf"


class GeneratedProtocolRenderer:
    """Flowed protocol drawn from scratch: chrome, cards, stage tables, signature and photos."""

    name = "generated_protocol"

    def __init__(self, printed_on: date | None = None) -> None:
        self._printed_on = printed_on

    def render(self, report: ReportInput) -> bytes:
        fonts = register_fonts()
        theme = resolve_pdf_theme(DocumentKind.PROTOCOL, report.branding)
        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        flow = PageFlowController(pdf, theme, PageChrome(theme, fonts, self._printed_on))

        card = SectionCard(theme, fonts)
        card.draw(
            flow,
            "Projekt",
            [
                CardRow("Installations datum", report.installation_date),
                CardRow("Adress", report.work_address.one_line()),
                CardRow("Projekt nr", report.project_number),
            ],
            [
                CardRow("Installatör", report.installer_name),
                CardRow("Kund/Beställare", report.client_name),
            ],
        )
        card.draw(flow, "Material", [CardRow("Använt material", report.material_used)])
        check_rows = [CardRow(label, item.display()) for label, item in report.checks.labelled()]
        check_rows.append(CardRow("Övriga kommentarer", report.checks.other_comments.comment))
        card.draw(flow, "Kontroller", check_rows)

        table = TableBlock(theme, fonts)
        table.draw(
            flow,
            "Etapper (öppet)",
            OPEN_STAGE_COLUMNS,
            [row.table_cells() for row in report.filled_open_stages()],
        )
        table.draw(
            flow,
            "Etapper (slutet)",
            CLOSED_STAGE_COLUMNS,
            [row.table_cells() for row in report.filled_closed_stages()],
        )

        SignatureBlock(theme, fonts).draw(
            flow,
            date_city=report.signature_date_city,
            signature=report.signature,
            timestamp=format_signature_stamp(report.signature_timestamp, report.signature_time_zone),
            printed_name=report.installer_name,
        )

        photos = PhotoBlock(theme, fonts)
        photos.draw(flow, "Före", report.before_image)
        photos.draw(flow, "Efter", report.after_image)

        pdf.save()
        logger.info(
            "pdf_protocol_generated",
            extra={"pages": flow.page_count, "open_rows": len(report.filled_open_stages())},
        )
        return buffer.getvalue()


class QuoteRenderer:
    name = "quote"

    def __init__(self, printed_on: date | None = None) -> None:
        self._printed_on = printed_on

    def render(self, quote: QuoteInput) -> bytes:
        fonts = register_fonts()
        theme = resolve_pdf_theme(DocumentKind.QUOTE, quote.branding)
        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        flow = PageFlowController(pdf, theme, PageChrome(theme, fonts, self._printed_on))

        card = SectionCard(theme, fonts)
        locality = " ".join(part for part in (quote.postal_code.strip(), quote.city.strip()) if part)
        customer_rows = [CardRow("Företag" if quote.is_business() else "Namn", quote.party_name())]
        if quote.is_business() and quote.customer_name.strip():
            customer_rows.append(CardRow("Kontaktperson", quote.customer_name))
        customer_rows += [CardRow("Adress", quote.street_address), CardRow("Postadress", locality)]
        card.draw(
            flow,
            "Kund",
            customer_rows,
            [
                CardRow("E-post", quote.email),
                CardRow("Telefon", quote.phone),
                CardRow("Offertnummer", quote.quote_number),
                CardRow("Giltig t.o.m.", quote.valid_until),
            ],
        )

        rows: list[list[str]] = []
        for item in quote.effective_line_items():
            description = item.description.strip() or EMPTY_PLACEHOLDER
            detail = item.volume_detail()
            if detail:
                description = f"{description} ({detail})"
            rows.append(
                [
                    description,
                    format_quantity(item.quantity),
                    format_currency(item.unit_price),
                    f"{format_quantity(item.discount_percent)}%" if item.discount_percent else "",
                    format_currency(item.line_total()),
                ]
            )
        TableBlock(theme, fonts).draw(flow, "Specifikation", QUOTE_LINE_COLUMNS, rows)

        if quote.notes.strip():
            card.draw(flow, "Anteckningar", [CardRow("Meddelande", quote.notes)])

        totals = quote.compute_totals()
        card.draw(
            flow,
            "Summering",
            [
                CardRow("Delsumma", format_currency(totals.subtotal)),
                CardRow(f"Moms ({format_quantity(quote.vat_percent)}%)", format_currency(totals.vat)),
                CardRow("Totalt", format_currency(totals.total)),
            ],
        )

        pdf.save()
        return buffer.getvalue()


class PdfService:
    def __init__(self, calibration: CalibrationMap | None = None) -> None:
        self._calibration = calibration

    def generate_protocol(self, report: ReportInput, template_url: str | None = None) -> bytes:
        renderers: list[DocumentRenderer] = [
            TemplateOverlayRenderer(TemplateLoader(url=template_url), calibration=self._calibration),
            GeneratedProtocolRenderer(),
        ]
        return render_with_fallback(renderers, report)

    def generate_quote(self, quote: QuoteInput) -> bytes:
        return QuoteRenderer().render(quote)

    def protocol_filename(self, report: ReportInput) -> str:
        return build_pdf_filename(
            "Egenkontroll",
            report.client_name,
            report.order_id.strip() or report.project_number,
        )

    def quote_filename(self, quote: QuoteInput) -> str:
        return build_pdf_filename(
            "Offert",
            quote.party_name(),
            quote.quote_number,
            party_default="kund",
            identifier_default="offert",
        )


pdf_service = PdfService()
