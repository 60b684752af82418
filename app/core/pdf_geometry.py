from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
import logging
from pathlib import Path
import re
from typing import Any, Mapping, Union

from app.core.config import settings

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4
POINTS_PER_INCH = 72.0

_CELL_KEY_RE = re.compile(r"^tables\.(?P<variant>open|closed)\.r(?P<row>\d+)\.c(?P<column>\d+)$")


def mm(value: float) -> float:
    """Millimetres to PDF points."""
    return value * POINTS_PER_INCH / MM_PER_INCH


def to_mm(points: float) -> float:
    return points * MM_PER_INCH / POINTS_PER_INCH


class FieldKey(str, Enum):
    PROJECT_INSTALLATION_DATE = "projekt.installationsdatum"
    PROJECT_INSTALLER = "projekt.installator"
    PROJECT_CLIENT = "projekt.kund"
    PROJECT_NUMBER = "projekt.projektnr"
    PROJECT_ADDRESS = "projekt.adress"
    MATERIAL_USED = "material.anvandmaterial"
    OPEN_TABLE = "tables.open"
    CLOSED_TABLE = "tables.closed"
    CHECKS_BLOCK = "checks.block"
    COMMENTS_VALUE = "comments.value"
    SIGNATURE_DATE_CITY = "signature.datecity"
    SIGNATURE_IMAGE = "signature.image"
    SIGNATURE_TIMESTAMP = "signature.timestamp"
    SIGNATURE_NAME = "signature.name"


class StageVariant(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class CellKey:
    """One cell of an overlay stage table, 1-based like the printed form."""

    variant: StageVariant
    row: int
    column: int

    def __str__(self) -> str:
        return f"tables.{self.variant.value}.r{self.row}.c{self.column}"


CalibrationKey = Union[FieldKey, CellKey]


@dataclass(frozen=True)
class CalibrationOffset:
    dx_mm: float = 0.0
    dy_mm: float = 0.0

    @property
    def dx(self) -> float:
        return mm(self.dx_mm)

    @property
    def dy(self) -> float:
        return mm(self.dy_mm)

    def apply(self, x: float, y: float) -> tuple[float, float]:
        # PDF space: y grows upward, so a negative dy_mm moves the field down.
        return x + self.dx, y + self.dy


ZERO_OFFSET = CalibrationOffset()


def parse_calibration_key(raw: str) -> CalibrationKey | None:
    try:
        return FieldKey(raw)
    except ValueError:
        pass
    match = _CELL_KEY_RE.match(raw)
    if match is None:
        return None
    row = int(match.group("row"))
    column = int(match.group("column"))
    if row < 1 or column < 1:
        return None
    return CellKey(StageVariant(match.group("variant")), row, column)


def _read_millimetres(source: Any, alias: str, attribute: str) -> float:
    value = source.get(alias) if isinstance(source, Mapping) else getattr(source, attribute, None)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


@dataclass(frozen=True)
class CalibrationMap:
    offsets: dict[CalibrationKey, CalibrationOffset] = field(default_factory=dict)

    def offset(self, key: CalibrationKey) -> CalibrationOffset:
        return self.offsets.get(key, ZERO_OFFSET)

    def merged(self, overrides: CalibrationMap) -> CalibrationMap:
        combined = dict(self.offsets)
        combined.update(overrides.offsets)
        return CalibrationMap(combined)

    def __len__(self) -> int:
        return len(self.offsets)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> CalibrationMap:
        """Build from a flat ``{"projekt.adress": {"dxMm": 1, "dyMm": -0.5}}`` document.

        Values may be plain mappings or objects exposing ``dx_mm``/``dy_mm``.
        Unknown keys are logged and skipped.
        """
        offsets: dict[CalibrationKey, CalibrationOffset] = {}
        for raw_key, value in (raw or {}).items():
            key = parse_calibration_key(str(raw_key))
            if key is None:
                logger.warning("pdf_calibration_key_unknown", extra={"key": raw_key})
                continue
            offsets[key] = CalibrationOffset(
                dx_mm=_read_millimetres(value, "dxMm", "dx_mm"),
                dy_mm=_read_millimetres(value, "dyMm", "dy_mm"),
            )
        return cls(offsets)

    @classmethod
    def from_file(cls, path: Path) -> CalibrationMap:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, Mapping):
            raise ValueError("calibration document must be a JSON object")
        return cls.from_mapping(payload)


def load_calibration(path: str | None = None) -> CalibrationMap:
    configured = path or settings.pdf_calibration_path
    if not configured:
        return CalibrationMap()
    calibration_path = Path(configured)
    if not calibration_path.exists():
        logger.warning("pdf_calibration_file_missing", extra={"path": str(calibration_path)})
        return CalibrationMap()
    try:
        return CalibrationMap.from_file(calibration_path)
    except (OSError, ValueError) as exc:
        logger.warning(
            "pdf_calibration_file_invalid",
            extra={"path": str(calibration_path), "error": str(exc)},
        )
        return CalibrationMap()
