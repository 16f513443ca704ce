from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "relay"
    postgres_user: str = "relay"
    db_password: str = "changeme"

    # Provider (OpenAI-compatible chat completions)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4o-mini"
    provider_connect_timeout_s: float = 5.0
    provider_timeout_s: float = 30.0
    provider_max_attempts: int = 3
    provider_retry_base_delay_s: float = 1.0
    provider_retry_jitter_s: float = 1.0
    provider_temperature: float = 0.7
    provider_max_tokens: int = 2000

    # Streaming transport
    sse_heartbeat_s: float = 10.0

    # Memory service (Zep)
    zep_api_key: str = ""
    zep_base_url: str = "https://api.getzep.com"
    zep_timeout_s: float = 10.0
    memory_refresh_on_store: bool = False

    # Pricing / model registry
    pricing_cache_ttl_s: float = 300.0

    # Prompt budgets (estimated tokens)
    prompt_total_budget: int = 4000
    prompt_system_budget: int = 200
    prompt_memory_budget: int = 1500
    prompt_user_budget: int = 2000
    memory_top_k: int = 10
    memory_clip_sentences: int = 0
    memory_min_truncation_tokens: int = 50
    default_system_prompt: str = (
        "You are a helpful AI assistant. "
        "Use any provided context to give accurate and relevant responses."
    )

    # Auth
    jwt_secret_key: str = "supersecretkey-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_audience: str | None = None
    jwt_expire_days: int = 7

    # App
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    max_message_chars: int = 4000
    max_past_messages: int = 20
    background_drain_timeout_s: float = 10.0

    @property
    def chat_completions_url(self) -> str:
        return f"{self.openai_base_url.rstrip('/')}/chat/completions"

    @property
    def zep_api_url(self) -> str:
        return f"{self.zep_base_url.rstrip('/')}/api/v2"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
