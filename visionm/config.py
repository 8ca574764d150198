"""Application configuration via environment variables."""

import os
import tempfile

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job-processing API
    job_api_base_url: str = "http://localhost:8000/api"
    job_api_timeout_seconds: float = 30.0

    # Polling
    training_poll_interval_seconds: float = 3.0
    inference_poll_interval_seconds: float = 2.5
    poll_max_backoff_seconds: float = 30.0

    # Recovery store
    recovery_store_dir: str = os.path.join(tempfile.gettempdir(), "visionm_recovery")
    recovery_ttl_hours: int = 24

    # Selection defaults
    default_confidence_threshold: float = 0.25

    # Company scope for inference catalogs (normally supplied per request)
    company_name: Optional[str] = None

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
