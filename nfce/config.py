"""
Settings from environment variables.

All config is loaded via Pydantic Settings with the NFCE_ prefix.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # SEFAZ-BA portal
    portal_base_url: str = "https://nfe.sefaz.ba.gov.br"
    request_timeout_seconds: int = 30
    # The BA portal serves a chain most trust stores reject.
    verify_tls: bool = False
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    accept_language: str = "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7"
    rate_limit_seconds: float = 0.5

    # Captcha
    captcha_max_attempts: int = 5  # 0 = retry until the job deadline

    # Jobs
    job_timeout_seconds: int = 60
    job_retention_seconds: int = 120
    janitor_interval_seconds: int = 60

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_allow_origins: str = "*"

    # App
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_prefix": "NFCE_",
    }


settings = Settings()
