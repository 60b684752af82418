from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    pdf_font_regular_path: str | None = None
    pdf_font_bold_path: str | None = None

    pdf_company_name: str = "Isoleringslandslaget"
    pdf_primary_color: str = "#0ea5e9"
    pdf_accent_color: str = "#94a3b8"

    # Fixed pre-printed protocol page; the HTTP fallback is resolved against
    # PDF_TEMPLATE_BASE_URL or the request origin.
    pdf_template_path: str = "app/assets/templates/EgenKontrollMall.pdf"
    pdf_template_url_path: str = "/templates/EgenKontrollMall.pdf"
    pdf_template_base_url: str | None = None
    # The Origin header is client controlled; set PDF_TEMPLATE_BASE_URL or
    # disable this in deployments reachable from untrusted callers.
    pdf_template_trust_origin: bool = True
    pdf_template_http_fallback: bool = True
    pdf_template_fetch_timeout_seconds: float = 10.0
    pdf_template_debug_overlay: bool = False
    pdf_calibration_path: str | None = None

    env: str = "dev"
    log_level: str = "info"


settings = Settings()
