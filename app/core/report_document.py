from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging
import math
import re
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainValidator, WithJsonSchema

logger = logging.getLogger(__name__)

EMPTY_PLACEHOLDER = "-"

_DATA_URL_RE = re.compile(r"^data:image/(?P<kind>jpeg|jpg|png)(?:;[^,]*)?,(?P<payload>.*)$", re.IGNORECASE | re.DOTALL)
_TRUE_FLAGS = {"1", "true", "yes", "on", "x", "ok"}


@dataclass(frozen=True, slots=True)
class JpegImage:
    data: bytes


@dataclass(frozen=True, slots=True)
class PngImage:
    data: bytes


ImageAsset = Union[JpegImage, PngImage, None]


def parse_image_data_url(value: Any) -> ImageAsset:
    if isinstance(value, (JpegImage, PngImage)):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    match = _DATA_URL_RE.match(value.strip())
    if match is None:
        logger.info("pdf_image_unsupported_data_url", extra={"prefix": value[:24]})
        return None
    try:
        data = base64.b64decode(match.group("payload"), validate=False)
    except (binascii.Error, ValueError) as exc:
        logger.warning("pdf_image_base64_invalid", extra={"error": str(exc)})
        return None
    if not data:
        return None
    if match.group("kind").lower() == "png":
        return PngImage(data)
    return JpegImage(data)


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_FLAGS
    return bool(value)


def _coerce_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        value = value.strip().replace(" ", "").replace(",", ".")
        if not value:
            return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _coerce_optional_number(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip().replace(",", "."))
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


FormText = Annotated[str, BeforeValidator(_coerce_text)]
Flag = Annotated[bool, BeforeValidator(_coerce_flag)]
Amount = Annotated[float, BeforeValidator(_coerce_number)]
OptionalAmount = Annotated[Optional[float], BeforeValidator(_coerce_optional_number)]
ImageField = Annotated[
    Optional[Union[JpegImage, PngImage]],
    PlainValidator(parse_image_data_url),
    WithJsonSchema({"type": "string", "format": "data-url"}),
]


def display_value(value: str | None) -> str:
    text = (value or "").strip()
    return text or EMPTY_PLACEHOLDER


class _PayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WorkAddress(_PayloadModel):
    street_address: FormText = Field(default="", alias="streetAddress")
    postal_code: FormText = Field(default="", alias="postalCode")
    city: FormText = ""

    def one_line(self) -> str:
        locality = " ".join(part for part in (self.postal_code.strip(), self.city.strip()) if part)
        return ", ".join(part for part in (self.street_address.strip(), locality) if part)


class Branding(_PayloadModel):
    company_name: FormText = Field(default="", alias="companyName")
    primary_color: FormText = Field(default="", alias="primaryColor")
    accent_color: FormText = Field(default="", alias="accentColor")


class MillimeterNudge(_PayloadModel):
    dx_mm: OptionalAmount = Field(default=None, alias="dxMm")
    dy_mm: OptionalAmount = Field(default=None, alias="dyMm")


class CheckItem(_PayloadModel):
    ok: Flag = False
    comment: FormText = ""

    def display(self) -> str:
        comment = self.comment.strip()
        if self.ok:
            return f"[x] OK - {comment}" if comment else "[x] OK"
        return f"[ ] {comment}" if comment else "[ ]"


class ProtocolChecks(_PayloadModel):
    eaves_ventilation: CheckItem = Field(default_factory=CheckItem, alias="takfotsventilation")
    carpentry: CheckItem = Field(default_factory=CheckItem, alias="snickerier")
    vapour_barrier: CheckItem = Field(default_factory=CheckItem, alias="tatskikt")
    penetrations: CheckItem = Field(default_factory=CheckItem, alias="genomforningar")
    rough_cleaning: CheckItem = Field(default_factory=CheckItem, alias="grovstadning")
    marker_sign: CheckItem = Field(default_factory=CheckItem, alias="markskylt")
    other_comments: CheckItem = Field(default_factory=CheckItem, alias="ovrigaKommentarer")

    def labelled(self) -> list[tuple[str, CheckItem]]:
        """Pass/fail checks in protocol order, without the free-text comment."""
        return [
            ("Takfotsventilation", self.eaves_ventilation),
            ("Snickerier", self.carpentry),
            ("Tätskikt", self.vapour_barrier),
            ("Genomförningar", self.penetrations),
            ("Grovstädning", self.rough_cleaning),
            ("Märkskylt", self.marker_sign),
        ]


class _StageRow(_PayloadModel):
    stage: FormText = Field(default="", alias="etapp")
    area_m2: FormText = Field(default="", alias="ytaM2")
    ordered_thickness: FormText = Field(default="", alias="bestalldTjocklek")
    installed_density: FormText = Field(default="", alias="installeradDensitet")
    lambda_value: FormText = Field(default="", alias="lambdavarde")

    def is_blank(self) -> bool:
        return not any(str(value).strip() for value in self.model_dump().values())


class OpenStageRow(_StageRow):
    settling_percent: FormText = Field(default="", alias="sattningsprocent")
    installed_thickness: FormText = Field(default="", alias="installeradTjocklek")
    bag_count: FormText = Field(default="", alias="antalSack")

    def table_cells(self) -> list[str]:
        return [
            self.stage,
            self.area_m2,
            self.ordered_thickness,
            self.settling_percent,
            self.installed_thickness,
            self.bag_count,
            self.installed_density,
            self.lambda_value,
        ]

    def template_cells(self) -> list[str]:
        # The printed template lists density before the bag count.
        return [
            self.stage,
            self.area_m2,
            self.ordered_thickness,
            self.settling_percent,
            self.installed_thickness,
            self.installed_density,
            self.bag_count,
            self.lambda_value,
        ]


class ClosedStageRow(_StageRow):
    measured_thickness: FormText = Field(default="", alias="uppmatTjocklek")
    bag_count_kg: FormText = Field(default="", alias="antalSackKgPerSack")

    def table_cells(self) -> list[str]:
        return [
            self.stage,
            self.area_m2,
            self.ordered_thickness,
            self.measured_thickness,
            self.bag_count_kg,
            self.installed_density,
            self.lambda_value,
        ]

    def template_cells(self) -> list[str]:
        return [
            self.stage,
            self.area_m2,
            self.ordered_thickness,
            self.measured_thickness,
            self.installed_density,
            self.bag_count_kg,
            self.lambda_value,
        ]


class ReportInput(_PayloadModel):
    order_id: FormText = Field(default="", alias="orderId")
    project_number: FormText = Field(default="", alias="projectNumber")
    installer_name: FormText = Field(default="", alias="installerName")
    work_address: WorkAddress = Field(default_factory=WorkAddress, alias="workAddress")
    installation_date: FormText = Field(default="", alias="installationDate")
    client_name: FormText = Field(default="", alias="clientName")
    material_used: FormText = Field(default="", alias="materialUsed")
    checks: ProtocolChecks = Field(default_factory=ProtocolChecks)
    open_stages: list[OpenStageRow] = Field(default_factory=list, alias="etapperOpen")
    closed_stages: list[ClosedStageRow] = Field(default_factory=list, alias="etapperClosed")
    before_image: ImageField = Field(default=None, alias="beforeImageDataUrl")
    after_image: ImageField = Field(default=None, alias="afterImageDataUrl")
    signature: ImageField = None
    signature_date_city: FormText = Field(default="", alias="signatureDateCity")
    signature_timestamp: FormText = Field(default="", alias="signatureTimestamp")
    signature_time_zone: FormText = Field(default="", alias="signatureTimeZone")
    branding: Branding = Field(default_factory=Branding)
    template_debug_overlay: Flag = Field(default=False, alias="templateDebugOverlay")
    template_overlay_offsets: dict[str, MillimeterNudge] = Field(
        default_factory=dict,
        alias="templateOverlayOffsets",
    )
    template_overlay_adjust: MillimeterNudge = Field(
        default_factory=MillimeterNudge,
        alias="templateOverlayAdjust",
    )

    def filled_open_stages(self) -> list[OpenStageRow]:
        return [row for row in self.open_stages if not row.is_blank()]

    def filled_closed_stages(self) -> list[ClosedStageRow]:
        return [row for row in self.closed_stages if not row.is_blank()]

    def has_photos(self) -> bool:
        return self.before_image is not None or self.after_image is not None


class LineItem(_PayloadModel):
    description: FormText = ""
    quantity: Amount = 0.0
    unit_price: Amount = Field(default=0.0, alias="unitPrice")
    discount_percent: OptionalAmount = Field(default=None, alias="discountPercent")
    pricing: FormText = ""
    m2: FormText = ""
    thickness_mm: FormText = Field(default="", alias="thicknessMm")

    def line_total(self) -> float:
        gross = self.quantity * self.unit_price
        if self.discount_percent:
            return gross * (1 - self.discount_percent / 100)
        return gross

    def volume_detail(self) -> str | None:
        if self.pricing != "m3":
            return None
        area = self.m2.strip()
        thickness = self.thickness_mm.strip()
        if not (area and thickness):
            return None
        return f"{area} m² × {thickness} mm"


class QuoteItemPricing(_PayloadModel):
    """Pricing detail of the form row at the same index as a line item."""

    pricing: FormText = ""
    m2: FormText = ""
    thickness_mm: FormText = Field(default="", alias="thicknessMm")


class QuoteTotalsInput(_PayloadModel):
    subtotal: OptionalAmount = None
    vat: OptionalAmount = None
    total: OptionalAmount = None


@dataclass(frozen=True, slots=True)
class QuoteTotals:
    subtotal: float
    vat: float
    total: float


class QuoteInput(_PayloadModel):
    type: FormText = "private"
    customer_name: FormText = Field(default="", alias="customerName")
    company_name: FormText = Field(default="", alias="companyName")
    email: FormText = ""
    phone: FormText = ""
    street_address: FormText = Field(default="", alias="streetAddress")
    postal_code: FormText = Field(default="", alias="postalCode")
    city: FormText = ""
    quote_number: FormText = Field(default="", alias="quoteNumber")
    material: FormText = ""
    quantity: Amount = 0.0
    unit_price: Amount = Field(default=0.0, alias="unitPrice")
    line_items: list[LineItem] = Field(default_factory=list, alias="lineItems")
    items: list[QuoteItemPricing] = Field(default_factory=list)
    vat_percent: Amount = Field(default=25.0, alias="vatPercent")
    valid_until: FormText = Field(default="", alias="validUntil")
    notes: FormText = ""
    totals: QuoteTotalsInput = Field(default_factory=QuoteTotalsInput)
    branding: Branding = Field(default_factory=Branding)

    def is_business(self) -> bool:
        return self.type.strip().lower() not in ("", "private")

    def party_name(self) -> str:
        if self.is_business():
            return self.company_name.strip() or self.customer_name.strip()
        return self.customer_name.strip() or self.company_name.strip()

    def effective_line_items(self) -> list[LineItem]:
        """Line items with pricing detail from ``items`` merged in by index.

        A line item that carries its own ``pricing`` keeps it.
        """
        lines = list(self.line_items) or [
            LineItem(
                description=self.material or EMPTY_PLACEHOLDER,
                quantity=self.quantity,
                unit_price=self.unit_price,
            )
        ]
        for index, detail in enumerate(self.items[: len(lines)]):
            if not lines[index].pricing.strip():
                lines[index] = lines[index].model_copy(
                    update={"pricing": detail.pricing, "m2": detail.m2, "thickness_mm": detail.thickness_mm}
                )
        return lines

    def compute_totals(self) -> QuoteTotals:
        subtotal = self.totals.subtotal
        if subtotal is None:
            subtotal = sum(item.line_total() for item in self.effective_line_items())
        vat = self.totals.vat
        if vat is None:
            vat = subtotal * (self.vat_percent / 100)
        total = self.totals.total
        if total is None:
            total = subtotal + vat
        return QuoteTotals(subtotal=subtotal, vat=vat, total=total)


def format_currency(value: float) -> str:
    return f"{(value or 0):.2f} kr"


def format_quantity(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
