from __future__ import annotations

import logging
from pathlib import Path

from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

from app.core.config import settings


_FONT_REGULAR_NAME = "ProtocolRegular"
_FONT_BOLD_NAME = "ProtocolBold"
_FONT_FALLBACK_NAME = "Helvetica"
_FONT_FALLBACK_BOLD_NAME = "Helvetica-Bold"

_FONT_FAMILY: dict[str, str] | None = None

_ZERO_WIDTH_CHARS = {
    "\u200b",  # ZERO WIDTH SPACE
    "\u200c",  # ZERO WIDTH NON-JOINER
    "\u200d",  # ZERO WIDTH JOINER
    "\u2060",  # WORD JOINER
    "\ufeff",  # ZERO WIDTH NO-BREAK SPACE
}


def register_fonts() -> dict[str, str]:
    global _FONT_FAMILY
    if _FONT_FAMILY is not None:
        return _FONT_FAMILY

    logger = logging.getLogger(__name__)
    regular_font = _register_font_variant(
        font_name=_FONT_REGULAR_NAME,
        variant="regular",
        path=settings.pdf_font_regular_path,
        logger=logger,
    )
    bold_font = _register_font_variant(
        font_name=_FONT_BOLD_NAME,
        variant="bold",
        path=settings.pdf_font_bold_path,
        logger=logger,
    )
    if regular_font == _FONT_FALLBACK_NAME:
        # A custom bold face next to built-in Helvetica looks mismatched.
        bold_font = _FONT_FALLBACK_BOLD_NAME

    _FONT_FAMILY = {"regular": regular_font, "bold": bold_font}
    return _FONT_FAMILY


def _register_font_variant(
    *,
    font_name: str,
    variant: str,
    path: str | None,
    logger: logging.Logger,
) -> str:
    fallback = _FONT_FALLBACK_BOLD_NAME if variant == "bold" else _FONT_FALLBACK_NAME
    if not path:
        return fallback

    font_path = Path(path)
    if not font_path.exists():
        logger.warning(
            "pdf_font_path_missing",
            extra={"variant": variant, "font_path": str(font_path)},
        )
        return fallback
    try:
        pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
        return font_name
    except Exception as exc:
        logger.warning(
            "pdf_font_register_failed",
            extra={"variant": variant, "font_path": str(font_path), "error": str(exc)},
        )
    return fallback


def text_width(text: str, font: str, size: float) -> float:
    return pdfmetrics.stringWidth(text, font, size)


def line_height(size: float, gap: float) -> float:
    return size + gap


def prepare_text(text: str | None) -> str:
    if not text:
        return ""
    prepared_chars: list[str] = []
    for char in text:
        if char in _ZERO_WIDTH_CHARS:
            continue
        if ord(char) < 32 and char not in {"\n", "\t", "\r"}:
            continue
        prepared_chars.append(char)
    return "".join(prepared_chars)


def wrap_text(text: str | None, font: str, size: float, max_width: float) -> list[str]:
    """Greedy word wrap that never drops or inserts visible characters.

    Tokens are whitespace separated. A token wider than ``max_width`` is cut
    into the fewest character chunks that fit; its last chunk keeps
    accumulating words like any other line.
    """
    lines: list[str] = []
    current = ""
    for token in prepare_text(text).split():
        if not current:
            if text_width(token, font, size) > max_width:
                chunks = break_token(token, font, size, max_width)
                lines.extend(chunks[:-1])
                current = chunks[-1]
            else:
                current = token
            continue

        candidate = f"{current} {token}"
        if text_width(candidate, font, size) <= max_width:
            current = candidate
            continue

        lines.append(current)
        if text_width(token, font, size) > max_width:
            chunks = break_token(token, font, size, max_width)
            lines.extend(chunks[:-1])
            current = chunks[-1]
        else:
            current = token
    if current:
        lines.append(current)
    return lines


def break_token(token: str, font: str, size: float, max_width: float) -> list[str]:
    parts: list[str] = []
    buffer = ""
    for char in token:
        candidate = buffer + char
        if buffer and text_width(candidate, font, size) > max_width:
            parts.append(buffer)
            buffer = char
        else:
            buffer = candidate
    if buffer:
        parts.append(buffer)
    return parts


def wrapped_line_count(text: str | None, font: str, size: float, max_width: float) -> int:
    return len(wrap_text(text, font, size, max_width))
