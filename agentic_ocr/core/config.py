from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "Agentic Receipt OCR"
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Auth0
    auth0_domain: str = "auth.agentic-ocr.local"
    auth0_audience: str = "https://api.agentic-ocr.local"
    auth0_issuer: str = ""
    admin_permission: str = "admin:config"

    # LLM provider keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_ai_api_key: str = ""

    # Parsing agents (provider: google | anthropic | openai)
    extraction_provider: str = "google"  # Gemini Flash is the cheapest vision model we use
    extraction_model: str = ""  # auto-defaults per provider if empty
    extraction_max_file_size_mb: int = 20

    # Baseline OCR fallback (single cheap call, no vendor context)
    baseline_provider: str = "google"
    baseline_model: str = "gemini-2.0-flash"

    # Vendor detection (LLM classification only used when no text layer is available)
    vendor_detection_provider: str = "google"
    vendor_detection_model: str = "gemini-2.0-flash"

    # Vertex AI, Anthropic Claude via Google Cloud
    vertex_project_id: str = ""
    vertex_location: str = "europe-west1"
    vertex_credentials_path: str = ""

    # Orchestrator defaults (runtime-updatable through the config store)
    agentic_mode: str = "production"
    agentic_enable_vendor_detection: bool = True
    agentic_enable_specialized_parsing: bool = True
    agentic_enable_fallbacks: bool = True
    agentic_quality_threshold: float = 70.0  # 0..100
    agentic_cost_budget: float = 0.05  # USD per request
    agentic_fallback_order: list[str] = ["generic-enhanced", "baseline-ocr"]
    agent_timeout_seconds: float = 30.0
    run_timeout_seconds: float = 120.0
    cost_tracker_max_records: int = 10000  # per-process call and run history

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    @property
    def auth0_issuer_url(self) -> str:
        if self.auth0_issuer:
            return self.auth0_issuer
        return f"https://{self.auth0_domain}/"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
