"""Environment configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Mock control (opt-in feature gate for testing)
    mock_openrouter: bool = False  # Use canned LLM responses (don't call OpenRouter API)

    # OpenRouter configuration
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "anthropic/claude-haiku-4.5"
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.7
    llm_timeout_seconds: float = 30.0

    # Degradation policy
    llm_failure_threshold: int = 1  # Consecutive failures before the LLM is disabled for a session
    analyzer_timeout_seconds: float = 5.0

    # Orchestration
    recommendation_min_messages: int = 8
    recommendation_cadence: int = 2  # Recompute recommendations every N messages
    strong_interest_level: float = 3.0
    strong_interest_count: int = 3
    conclusion_question_count: int = 12
    early_conclusion_question_count: int = 8
    max_history_messages: int = 15
    question_lookback: int = 3
    duplicate_question_threshold: float = 0.6

    # Occupation catalog
    catalog_path: str = "data/occupations.json"
    catalog_sources: list[str] = ["manual", "onet", "ESCO"]
    catalog_sample_size: int = 100

    # Conversation store
    conversation_ttl: int = 86400  # 24 hours
    max_conversations: int = 10000

    # Rate limiting
    rate_limit_per_minute: int = 30

    # Server configuration
    port: int = 3000
    host: str = "0.0.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"

    # System prompt for the conversational LLM
    system_prompt: str = """You are a warm, curious career guidance counsellor. You help the user discover which occupations would suit them through a natural conversation.

Guidelines:
- Ask one question at a time, concrete and easy to answer
- Build on what the user already said; never repeat a question
- Work through the discovery milestones in order and ask the user to confirm each one
- Stay encouraging and never judge the user's answers
- Keep responses short (2-4 sentences)"""

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def has_openrouter_key(self) -> bool:
        """Check if OpenRouter API key is configured."""
        return bool(self.openrouter_api_key and self.openrouter_api_key.startswith("sk-"))

    @property
    def llm_enabled(self) -> bool:
        """Whether the generative path can be used at all."""
        return self.has_openrouter_key or self.mock_openrouter


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
