import base64
from io import BytesIO
from pathlib import Path
import tempfile
import unittest
from unittest import mock

import httpx
from PIL import Image
from pypdf import PdfReader
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from app.core.config import settings
from app.core.pdf_geometry import CalibrationMap, CalibrationOffset, FieldKey, mm
from app.core.pdf_overlay import (
    PROTOCOL_TEMPLATE_LAYOUT,
    TemplateLoader,
    TemplateOverlayRenderer,
    TemplateUnavailableError,
)
from app.core.report_document import ReportInput


def _template_bytes(pages: int = 2) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    for index in range(pages):
        pdf.setFont("Helvetica", 12)
        pdf.drawString(40, 800, f"EGENKONTROLL MALL {index + 1}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def _png_data_url() -> str:
    buffer = BytesIO()
    Image.new("RGB", (20, 10), "gray").save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def _report(**overrides) -> ReportInput:
    payload = {
        "orderId": "A-1",
        "projectNumber": "P-77",
        "installerName": "Anna Svensson",
        "installationDate": "2025-03-14",
        "clientName": "Kund AB",
        "materialUsed": "Lösull cellulosa",
        "workAddress": {"streetAddress": "Storgatan 1", "postalCode": "123 45", "city": "Uppsala"},
        "checks": {
            "takfotsventilation": {"ok": True, "comment": "Fri luftspalt"},
            "ovrigaKommentarer": {"comment": "Inga anmärkningar"},
        },
        "etapperOpen": [
            {
                "etapp": "Vind",
                "ytaM2": 80,
                "bestalldTjocklek": 300,
                "sattningsprocent": 12,
                "installeradTjocklek": 336,
                "antalSack": "14",
                "installeradDensitet": "28",
                "lambdavarde": "0.04",
            }
        ],
        "signatureTimestamp": "2025-03-14T08:30:00",
    }
    payload.update(overrides)
    return ReportInput.model_validate(payload)


class _CanvasSpy:
    def __init__(self) -> None:
        self.draw_calls: list[tuple[float, float, str]] = []

    def saveState(self) -> None:  # noqa: N802
        return None

    def restoreState(self) -> None:  # noqa: N802
        return None

    def setFillColor(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def setFont(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def rect(self, *_args, **_kwargs) -> None:
        return None

    def drawImage(self, *_args, **_kwargs) -> None:  # noqa: N802
        return None

    def drawString(self, x: float, y: float, text: str) -> None:  # noqa: N802
        self.draw_calls.append((x, y, text))

    def position(self, text: str) -> tuple[float, float]:
        return next((x, y) for x, y, drawn in self.draw_calls if drawn == text)

    def texts(self) -> list[str]:
        return [text for _, _, text in self.draw_calls]


class OverlayPainterTests(unittest.TestCase):
    def _paint(self, report: ReportInput, calibration: CalibrationMap | None = None, debug: bool = False):
        spy = _CanvasSpy()
        renderer = TemplateOverlayRenderer(
            TemplateLoader(path="/no/such/template.pdf", allow_http=False),
            calibration=calibration or CalibrationMap(),
            debug=debug,
        )
        painter = renderer.paint_values(spy, report, A4)
        return spy, painter

    def test_project_values_sit_in_right_column(self) -> None:
        spy, _ = self._paint(_report())

        x, y = spy.position("2025-03-14")
        self.assertAlmostEqual(x, mm(142))
        self.assertAlmostEqual(y, A4[1] - mm(28) - 12)
        self.assertAlmostEqual(spy.position("Kund AB")[1], A4[1] - mm(48) - 12)

    def test_calibration_offset_shifts_single_field(self) -> None:
        report = _report()
        plain, _ = self._paint(report)
        calibration = CalibrationMap({FieldKey.PROJECT_CLIENT: CalibrationOffset(dx_mm=2, dy_mm=-1)})
        shifted, _ = self._paint(report, calibration)

        plain_x, plain_y = plain.position("Kund AB")
        shifted_x, shifted_y = shifted.position("Kund AB")
        self.assertAlmostEqual(shifted_x - plain_x, mm(2))
        self.assertAlmostEqual(shifted_y - plain_y, -mm(1))
        self.assertEqual(plain.position("Anna Svensson"), shifted.position("Anna Svensson"))

    def test_request_offsets_and_global_adjust_are_applied(self) -> None:
        report = _report(
            templateOverlayOffsets={"material.anvandmaterial": {"dxMm": 1}},
            templateOverlayAdjust={"dyMm": -2},
        )
        plain, _ = self._paint(_report())
        adjusted, _ = self._paint(report)

        plain_x, plain_y = plain.position("Lösull cellulosa")
        x, y = adjusted.position("Lösull cellulosa")
        self.assertAlmostEqual(x - plain_x, mm(1))
        self.assertAlmostEqual(y - plain_y, -mm(2))

    def test_stage_cells_follow_template_column_order(self) -> None:
        spy, _ = self._paint(_report())
        table = PROTOCOL_TEMPLATE_LAYOUT.open_table

        x, y = spy.position("Vind")
        self.assertAlmostEqual(x, mm(table.x_mm + table.column_pad_mm))
        self.assertAlmostEqual(y, A4[1] - mm(table.top_mm) - mm(table.row_height_mm) * 0.5 - 2)
        self.assertLess(spy.position("28")[0], spy.position("14")[0])

    def test_rows_beyond_template_capacity_are_dropped(self) -> None:
        rows = [{"etapp": f"R{index}"} for index in range(1, 11)]

        with self.assertLogs("app.core.pdf_overlay", level="INFO") as captured:
            spy, _ = self._paint(_report(etapperOpen=rows))

        texts = spy.texts()
        self.assertIn("R8", texts)
        self.assertNotIn("R9", texts)
        self.assertNotIn("R10", texts)
        self.assertTrue(any("pdf_overlay_rows_truncated" in line for line in captured.output))

    def test_checks_and_comment_are_drawn(self) -> None:
        calibration = CalibrationMap({FieldKey.COMMENTS_VALUE: CalibrationOffset(dy_mm=-1)})
        spy, _ = self._paint(_report(), calibration)

        self.assertAlmostEqual(spy.position("X")[0], mm(53))
        self.assertAlmostEqual(spy.position("Fri luftspalt")[0], mm(62))
        self.assertAlmostEqual(spy.position("Inga anmärkningar")[1], A4[1] - mm(135) - mm(1))

    def test_wrapped_address_is_lifted_above_baseline(self) -> None:
        long_street = "Långa vägen med ett mycket långt gatunamn 123"
        spy, _ = self._paint(_report(workAddress={"streetAddress": long_street, "postalCode": "123 45", "city": "Uppsala"}))

        single_values = {"2025-03-14", "Anna Svensson", "Kund AB", "P-77"}
        address_lines = [
            (y, text)
            for x, y, text in spy.draw_calls
            if abs(x - mm(142)) < 0.01 and text not in single_values
        ]
        self.assertGreater(len(address_lines), 1)
        self.assertEqual(" ".join(text for _, text in address_lines).split()[:2], ["Långa", "vägen"])
        base_y = A4[1] - mm(68)
        first_y = address_lines[0][0]
        self.assertGreaterEqual(first_y, base_y - 0.01)
        self.assertAlmostEqual(address_lines[-1][0], base_y - (address_lines[0][0] - address_lines[1][0]))

    def test_debug_mode_records_marks_for_every_position(self) -> None:
        spy, painter = self._paint(_report(), debug=True)

        labels = [label for label, _, _ in painter.marks]
        self.assertIn("projekt.adress", labels)
        self.assertIn("tables.open.r1.c8", labels)
        self.assertIn("checks.Takfotsventilation.ok", labels)
        self.assertIn("signature.timestamp", labels)
        self.assertIn("projekt.adress", spy.texts())

    def test_debug_flag_from_payload(self) -> None:
        spy = _CanvasSpy()
        renderer = TemplateOverlayRenderer(TemplateLoader(allow_http=False), calibration=CalibrationMap())

        painter = renderer.paint_values(spy, _report(templateDebugOverlay=True), A4)

        self.assertTrue(painter.debug)
        self.assertTrue(painter.marks)


class TemplateOverlayRenderTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.template_path = Path(self._tmp.name) / "EgenKontrollMall.pdf"
        self.template_path.write_bytes(_template_bytes(pages=2))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _render(self, report: ReportInput) -> PdfReader:
        renderer = TemplateOverlayRenderer(
            TemplateLoader(path=self.template_path, allow_http=False),
            calibration=CalibrationMap(),
        )
        content = renderer.render(report)
        self.assertTrue(content.startswith(b"%PDF"))
        return PdfReader(BytesIO(content))

    def test_copies_template_pages_and_merges_values(self) -> None:
        reader = self._render(_report())

        self.assertEqual(len(reader.pages), 2)
        first_page_text = reader.pages[0].extract_text()
        self.assertIn("EGENKONTROLL MALL 1", first_page_text)
        self.assertIn("Kund AB", first_page_text)
        self.assertNotIn("Kund AB", reader.pages[1].extract_text())

    def test_photos_add_one_page(self) -> None:
        reader = self._render(_report(beforeImageDataUrl=_png_data_url(), afterImageDataUrl=_png_data_url()))

        self.assertEqual(len(reader.pages), 3)
        self.assertAlmostEqual(float(reader.pages[2].mediabox.height), A4[1], places=1)


class TemplateLoaderTests(unittest.TestCase):
    def test_local_file_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "mall.pdf"
            path.write_bytes(b"%PDF-local")

            self.assertEqual(TemplateLoader(path=path, url="http://unused.invalid/mall.pdf").load(), b"%PDF-local")

    def test_missing_file_without_url_raises(self) -> None:
        loader = TemplateLoader(path="/no/such/mall.pdf", url=None)

        with self.assertRaises(TemplateUnavailableError):
            loader.load()

    def test_http_fallback_fetches_template(self) -> None:
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=b"%PDF-remote")

        real_client = httpx.Client
        transport = httpx.MockTransport(handler)
        with mock.patch(
            "app.core.pdf_overlay.httpx.Client",
            lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            data = TemplateLoader(
                path="/no/such/mall.pdf",
                url="https://portal.example/templates/EgenKontrollMall.pdf",
                allow_http=True,
            ).load()

        self.assertEqual(data, b"%PDF-remote")
        self.assertEqual(requested, ["https://portal.example/templates/EgenKontrollMall.pdf"])

    def test_http_error_status_raises_template_unavailable(self) -> None:
        real_client = httpx.Client
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        with mock.patch(
            "app.core.pdf_overlay.httpx.Client",
            lambda **kwargs: real_client(transport=transport, **kwargs),
        ):
            loader = TemplateLoader(path="/no/such/mall.pdf", url="https://portal.example/mall.pdf", allow_http=True)
            with self.assertRaises(TemplateUnavailableError) as raised:
                loader.load()

        self.assertIn("404", str(raised.exception))


def test_loader_reads_path_and_http_switch_from_settings() -> None:
    with mock.patch.object(settings, "pdf_template_path", "/srv/templates/EgenKontrollMall.pdf"), mock.patch.object(
        settings,
        "pdf_template_http_fallback",
        False,
    ):
        loader = TemplateLoader()

    assert loader.path == Path("/srv/templates/EgenKontrollMall.pdf")
    assert loader.allow_http is False
    assert TemplateLoader("local.pdf", allow_http=True).allow_http is True
