from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Remote intent classification; tier 2 is skipped when the key is absent
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    classifier_model: str = Field(default="gpt-4o-mini", alias="CLASSIFIER_MODEL")
    classifier_provider: str = Field(default="openai", alias="CLASSIFIER_PROVIDER")
    classifier_max_tokens: int = Field(default=100, alias="CLASSIFIER_MAX_TOKENS")
    # Drafting flows from a description; shares the key and provider above
    generator_model: str = Field(default="gpt-4o", alias="GENERATOR_MODEL")
    generator_temperature: float = Field(default=0.7, alias="GENERATOR_TEMPERATURE")
    generator_max_tokens: int = Field(default=4000, alias="GENERATOR_MAX_TOKENS")
    # Live traversal timing
    start_completion_delay_ms: int = Field(default=300, alias="START_COMPLETION_DELAY_MS")
    end_completion_delay_ms: int = Field(default=1000, alias="END_COMPLETION_DELAY_MS")
    # Action node lookups; when set, requests go through this proxy endpoint
    action_proxy_url: str | None = Field(default=None, alias="ACTION_PROXY_URL")
    action_proxy_token: str | None = Field(default=None, alias="ACTION_PROXY_TOKEN")
    action_timeout_seconds: float = Field(default=10.0, alias="ACTION_TIMEOUT_SECONDS")
    context_injection_timeout_seconds: float = Field(
        default=10.0, alias="CONTEXT_INJECTION_TIMEOUT_SECONDS"
    )
    # Sessions whose call ended or errored are dropped after this grace period
    finished_session_ttl_seconds: float = Field(default=300.0, alias="FINISHED_SESSION_TTL_SECONDS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def start_completion_delay(self) -> float:
        return max(self.start_completion_delay_ms, 0) / 1000

    @property
    def end_completion_delay(self) -> float:
        return max(self.end_completion_delay_ms, 0) / 1000

    @property
    def classifier_enabled(self) -> bool:
        return bool(self.openai_api_key and self.openai_api_key.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
