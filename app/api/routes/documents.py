from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from app.core.config import settings
from app.core.pdf_service import pdf_service
from app.core.report_document import QuoteInput, ReportInput


router = APIRouter(prefix="/api/pdf", tags=["documents"])
logger = logging.getLogger(__name__)


def _template_url(request: Request) -> str | None:
    if not settings.pdf_template_http_fallback:
        return None
    origin = settings.pdf_template_base_url
    if not origin and settings.pdf_template_trust_origin:
        origin = request.headers.get("origin")
    if not origin:
        origin = f"{request.url.scheme}://{request.url.netloc}"
    return f"{origin.rstrip('/')}/{settings.pdf_template_url_path.lstrip('/')}"


def _pdf_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@router.post("/generate")
def generate_protocol(report: ReportInput, request: Request) -> Response:
    try:
        content = pdf_service.generate_protocol(report, template_url=_template_url(request))
    except Exception as exc:
        logger.exception(
            "pdf_protocol_request_failed",
            extra={"order_id": report.order_id, "project_number": report.project_number},
        )
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return _pdf_response(content, pdf_service.protocol_filename(report))


@router.post("/quote")
def generate_quote(quote: QuoteInput) -> Response:
    try:
        content = pdf_service.generate_quote(quote)
    except Exception as exc:
        logger.exception("pdf_quote_request_failed", extra={"quote_number": quote.quote_number})
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return _pdf_response(content, pdf_service.quote_filename(quote))
