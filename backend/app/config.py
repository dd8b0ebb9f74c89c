from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # AI APIs
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    brave_search_api_key: str = ""
    langsmith_api_key: str = ""

    # Pipeline
    report_mode: Literal["llm", "deterministic"] = "llm"
    max_phase_retries: int = 3
    heartbeat_interval_s: float = 15.0
    tool_timeout_s: float = 15.0

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
