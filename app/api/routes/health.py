from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.pdf_overlay import TemplateLoader

router = APIRouter(tags=["health"])


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok", "service": "egenkontroll_pdf", "env": settings.env}


@router.get("/health")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness() -> JSONResponse:
    loader = TemplateLoader()
    if loader.path.is_file():
        return JSONResponse(status_code=200, content={"status": "ready", "template": "local"})
    if loader.allow_http:
        # Overlay can still fetch the template; the flowed layout covers the rest.
        return JSONResponse(status_code=200, content={"status": "ready", "template": "http_fallback"})
    return JSONResponse(
        status_code=200,
        content={"status": "degraded", "template": "missing", "reason": f"template_not_found: {loader.path}"},
    )
