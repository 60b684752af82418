from io import BytesIO
import unittest
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from PIL import Image
from reportlab.lib.pagesizes import A4

from app.core.pdf_blocks import (
    CardRow,
    PhotoBlock,
    SectionCard,
    SignatureBlock,
    TableBlock,
    TableColumn,
    draw_photo_page,
    embed_image,
    format_signature_stamp,
)
from app.core.pdf_layout import PageFlowController
from app.core.pdf_service import OPEN_STAGE_COLUMNS
from app.core.pdf_themes import DocumentKind, resolve_pdf_theme
from app.core.report_document import PngImage

FONTS = {"regular": "Helvetica", "bold": "Helvetica-Bold"}


def _png_bytes(width: int = 8, height: int = 4) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), "white").save(buffer, format="PNG")
    return buffer.getvalue()


class _CanvasSpy:
    def __init__(self) -> None:
        self.draw_calls: list[tuple[float, float, str]] = []
        self.images: list[tuple[float, float, float, float]] = []
        self.page_breaks = 0

    def saveState(self) -> None:  # noqa: N802
        return None

    def restoreState(self) -> None:  # noqa: N802
        return None

    def setFillColor(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def setStrokeColor(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def setLineWidth(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def setFont(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def rect(self, *_args, **_kwargs) -> None:
        return None

    def drawString(self, x: float, y: float, text: str) -> None:  # noqa: N802
        self.draw_calls.append((x, y, text))

    def drawImage(self, _image, x: float, y: float, width: float, height: float, **_kwargs) -> None:  # noqa: N802
        self.images.append((x, y, width, height))

    def showPage(self) -> None:  # noqa: N802
        self.page_breaks += 1

    def texts(self) -> list[str]:
        return [text for _, _, text in self.draw_calls]


class SectionCardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.theme = resolve_pdf_theme(DocumentKind.PROTOCOL)
        self.spy = _CanvasSpy()
        self.flow = PageFlowController(self.spy, self.theme)
        self.card = SectionCard(self.theme, FONTS)
        self.left = [
            CardRow("Installations datum", "2025-03-14"),
            CardRow("Adress", "Storgatan 1, 123 45 Ort"),
            CardRow("Projekt nr", "P-1"),
        ]
        self.right = [CardRow("Installatör", "Anna"), CardRow("Kund/Beställare", "Kund AB")]

    def test_two_column_card_height_uses_taller_column(self) -> None:
        block = self.card.measure(self.left, self.right, self.flow.content_width)

        # title band 25 + three single-line rows of 32 + bottom padding 14
        self.assertEqual(block.height, 135)

    def test_draw_advances_cursor_by_measured_height(self) -> None:
        start_y = self.flow.cursor.y
        measured = self.card.measure(self.left, self.right, self.flow.content_width)

        drawn = self.card.draw(self.flow, "Projekt", self.left, self.right)

        self.assertEqual(drawn.height, measured.height)
        self.assertEqual(drawn.origin_y, start_y)
        self.assertAlmostEqual(self.flow.cursor.y, start_y - measured.height - self.theme.block_gap)

    def test_right_column_starts_after_left_value_width(self) -> None:
        self.card.draw(self.flow, "Projekt", self.left, self.right)

        value_width = self.card.value_width(self.flow.content_width, two_columns=True)
        label_xs = {text: x for x, _, text in self.spy.draw_calls}
        self.assertEqual(label_xs["INSTALLATIONS DATUM"], self.flow.left + SectionCard.padding)
        self.assertAlmostEqual(
            label_xs["INSTALLATÖR"],
            self.flow.left + SectionCard.padding + value_width + SectionCard.column_gap,
        )

    def test_empty_value_is_drawn_as_placeholder(self) -> None:
        self.card.draw(self.flow, "Material", [CardRow("Använt material", "  ")])

        self.assertIn("-", self.spy.texts())

    def test_long_value_wraps_and_grows_card(self) -> None:
        short = self.card.measure([CardRow("Adress", "Kort")], None, 200)
        long = self.card.measure([CardRow("Adress", "Mycket lång adress " * 6)], None, 200)

        self.assertGreater(long.height, short.height)
        self.assertEqual((long.height - short.height) % 12, 0)

    def test_card_that_does_not_fit_moves_whole_to_next_page(self) -> None:
        self.flow.advance(self.flow.available_height - 60)

        block = self.card.draw(self.flow, "Projekt", self.left, self.right)

        self.assertEqual(self.spy.page_breaks, 1)
        self.assertEqual(block.origin_y, self.flow.first_content_y)
        self.assertAlmostEqual(self.flow.cursor.y, self.flow.first_content_y - block.height - self.theme.block_gap)

    def test_card_taller_than_page_is_continued_without_losing_text(self) -> None:
        comment = "Fukt vid takfot. " * 800

        with self.assertLogs("app.core.pdf_blocks", level="INFO") as captured:
            self.card.draw(self.flow, "Kontroller", [CardRow("Övriga kommentarer", comment)])

        texts = self.spy.texts()
        self.assertGreaterEqual(self.spy.page_breaks, 1)
        self.assertIn("Kontroller (forts.)", texts)
        self.assertEqual(sum(text.count("takfot.") for text in texts), 800)
        self.assertGreaterEqual(min(y for _, y, _ in self.spy.draw_calls), self.flow.bottom_safe)
        self.assertGreaterEqual(self.flow.cursor.y, self.flow.bottom_safe)
        self.assertTrue(any("pdf_card_continued" in line for line in captured.output))


class TableBlockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.theme = resolve_pdf_theme(DocumentKind.PROTOCOL)
        self.spy = _CanvasSpy()
        self.flow = PageFlowController(self.spy, self.theme)
        self.table = TableBlock(self.theme, FONTS)

    def test_empty_table_reserves_one_row(self) -> None:
        empty = self.table.measure(OPEN_STAGE_COLUMNS, 0, self.flow.content_width)
        single = self.table.measure(OPEN_STAGE_COLUMNS, 1, self.flow.content_width)

        self.assertEqual(empty.block.height, single.block.height)

    def test_column_widths_fill_inner_width(self) -> None:
        layout = self.table.measure(OPEN_STAGE_COLUMNS, 2, self.flow.content_width)

        self.assertEqual(sum(layout.column_widths), int(self.flow.content_width - 2 * TableBlock.inner_pad_x))
        self.assertGreater(layout.header_height, self.theme.typography.header_size)

    def test_draw_renders_headers_and_cells(self) -> None:
        start_y = self.flow.cursor.y
        rows = [["E1", "12.5", "200", "10", "220", "14", "28", "0.04"]]

        block = self.table.draw(self.flow, "Etapper (öppet)", OPEN_STAGE_COLUMNS, rows)

        texts = self.spy.texts()
        self.assertIn("Etapper (öppet)", texts)
        self.assertIn("E1", texts)
        self.assertIn("0.04", texts)
        self.assertIn("Yta m²", texts)
        self.assertAlmostEqual(self.flow.cursor.y, start_y - block.height - self.theme.block_gap)

    def test_right_aligned_cell_ends_at_column_edge(self) -> None:
        columns = (TableColumn("Beskrivning", 1), TableColumn("Summa", 1, align_right=True))
        layout = self.table.measure(columns, 1, self.flow.content_width)

        self.table.draw(self.flow, "Specifikation", columns, [["Lösull", "100.00 kr"]])

        amount_x = next(x for x, _, text in self.spy.draw_calls if text == "100.00 kr")
        column_start = self.flow.left + TableBlock.inner_pad_x + layout.column_widths[0]
        self.assertGreater(amount_x, column_start + TableBlock.cell_pad)

    def test_empty_table_draws_no_cells(self) -> None:
        self.table.draw(self.flow, "Etapper (slutet)", OPEN_STAGE_COLUMNS, [])

        self.assertNotIn("", self.spy.texts())
        self.assertIn("Etapper (slutet)", self.spy.texts())

    def test_table_that_does_not_fit_moves_whole_to_next_page(self) -> None:
        self.flow.advance(self.flow.available_height - 60)
        rows = [["E1", "12.5"], ["E2", "8"], ["E3", "4"]]

        block = self.table.draw(self.flow, "Etapper (öppet)", OPEN_STAGE_COLUMNS, rows)

        self.assertEqual(self.spy.page_breaks, 1)
        self.assertEqual(block.origin_y, self.flow.first_content_y)
        self.assertNotIn("Etapper (öppet) (forts.)", self.spy.texts())

    def test_table_taller_than_page_repeats_header_and_keeps_every_row(self) -> None:
        rows = [[f"E{index}", "10"] for index in range(70)]

        with self.assertLogs("app.core.pdf_blocks", level="INFO") as captured:
            self.table.draw(self.flow, "Etapper (öppet)", OPEN_STAGE_COLUMNS, rows)

        baselines = [y for _, y, text in self.spy.draw_calls if text[:1] == "E" and text[1:].isdigit()]
        self.assertEqual(len(baselines), 70)
        self.assertGreaterEqual(min(baselines), self.flow.bottom_safe)
        self.assertGreaterEqual(self.spy.page_breaks, 1)
        self.assertIn("Etapper (öppet) (forts.)", self.spy.texts())
        self.assertGreaterEqual(self.spy.texts().count("Yta m²"), 2)
        self.assertGreaterEqual(self.flow.cursor.y, self.flow.bottom_safe)
        self.assertTrue(any("pdf_table_continued" in line for line in captured.output))


class SignatureAndPhotoTests(unittest.TestCase):
    def setUp(self) -> None:
        self.theme = resolve_pdf_theme(DocumentKind.PROTOCOL)
        self.spy = _CanvasSpy()
        self.flow = PageFlowController(self.spy, self.theme)

    def test_signature_block_draws_uppercased_name_and_stamp(self) -> None:
        SignatureBlock(self.theme, FONTS).draw(
            self.flow,
            date_city="2025-03-14 Uppsala",
            signature=PngImage(_png_bytes(40, 10)),
            timestamp="Signed at: 2025-03-14 09:30",
            printed_name="Anna Svensson",
        )

        texts = self.spy.texts()
        self.assertIn("ANNA SVENSSON", texts)
        self.assertIn("2025-03-14 Uppsala", texts)
        self.assertIn("Signed at: 2025-03-14 09:30", texts)
        self.assertEqual(len(self.spy.images), 1)
        self.assertLessEqual(self.spy.images[0][3], SignatureBlock.image_max_height)

    def test_broken_signature_is_skipped(self) -> None:
        with self.assertLogs("app.core.pdf_blocks", level="WARNING") as captured:
            SignatureBlock(self.theme, FONTS).draw(
                self.flow,
                date_city="",
                signature=PngImage(b"not an image"),
                timestamp=None,
                printed_name="",
            )

        self.assertEqual(self.spy.images, [])
        self.assertIn("pdf_image_decode_failed", captured.output[0])

    def test_photo_block_skips_missing_image(self) -> None:
        start_y = self.flow.cursor.y

        self.assertIsNone(PhotoBlock(self.theme, FONTS).draw(self.flow, "Före", None))
        self.assertEqual(self.flow.cursor.y, start_y)

    def test_photo_page_draws_both_photos(self) -> None:
        drawn = draw_photo_page(
            self.spy,
            FONTS,
            self.theme,
            before=PngImage(_png_bytes()),
            after=PngImage(_png_bytes(4, 8)),
            page_size=A4,
        )

        self.assertEqual(drawn, 2)
        self.assertEqual(self.spy.texts(), ["Före", "Efter"])
        for x, _, width, _ in self.spy.images:
            self.assertGreaterEqual(x, 36)
            self.assertLessEqual(x + width, A4[0] - 36 + 0.01)


def test_embed_image_returns_none_for_missing_asset() -> None:
    assert embed_image(None) is None


def test_embed_image_reads_png() -> None:
    image = embed_image(PngImage(_png_bytes(8, 4)))

    assert image is not None
    assert image.getSize() == (8, 4)


def test_format_signature_stamp_variants() -> None:
    assert format_signature_stamp("") is None
    assert format_signature_stamp("igår kväll") == "Signed at: igår kväll"
    assert format_signature_stamp("2025-03-14T08:30:00") == "Signed at: 2025-03-14 08:30"
    assert format_signature_stamp("2025-03-14T08:30:00Z", "Not/AZone") == "Signed at: 2025-03-14 08:30"


class SignatureStampZoneTests(unittest.TestCase):
    def test_timestamp_is_converted_to_requested_zone(self) -> None:
        try:
            ZoneInfo("Europe/Stockholm")
        except ZoneInfoNotFoundError:
            self.skipTest("IANA time zone data is not available in this environment")

        stamp = format_signature_stamp("2025-03-14T08:30:00Z", "Europe/Stockholm")

        self.assertEqual(stamp, "Signed at: 2025-03-14 09:30 Europe/Stockholm")
