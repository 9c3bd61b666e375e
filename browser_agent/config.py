"""
Configuration module for the browser agent.
Centralizes all configuration in one place.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # LLM Configuration
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_API_KEY: str = ""
    LLM_MODEL: str = "gpt-4o"
    LLM_TIMEOUT: int = 120
    LLM_TEMPERATURE: float = 0.1
    LLM_MAX_TOKENS: int = 600
    LLM_MAX_RETRIES: int = 2

    # Browser Configuration
    BROWSER_HEADLESS: bool = False
    BROWSER_TIMEOUT_MS: int = 30000

    # Agent loop
    AGENT_MAX_STEPS: int = 50
    AGENT_POLL_INTERVAL_MS: int = 100
    AGENT_NAVIGATION_SETTLE_MS: int = 5000
    AGENT_SEARCH_SETTLE_MS: int = 2000

    # Documents
    DOCUMENT_OUTPUT_DIR: str = "exports"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
