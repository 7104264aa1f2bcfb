from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ROOT = Path(__file__).resolve().parents[1]
_PACKAGE_DIR = Path(__file__).resolve().parent

# Provider API keys (ANTHROPIC_API_KEY, ...) are read from the process environment by the AI client
load_dotenv(_ROOT / ".env", override=False)

DEFAULT_WEB_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def _default_system_prompt() -> str:
    prompt_path = _PACKAGE_DIR / "resources" / "chat_prompt.txt"
    try:
        return prompt_path.read_text(encoding="utf-8").strip()
    except OSError:
        return "You are a helpful assistant."


# Railway-style postgres:// URLs need the explicit SQLAlchemy driver
def normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


class Settings(BaseSettings):
    """Application settings loaded from environment variables (and `<repo>/.env`)."""

    model_config = SettingsConfigDict(
        env_file=_ROOT / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database: DATABASE_URL wins; otherwise composed from the discrete POSTGRES_* vars
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = Field(default="", validate_default=True)

    # Model provider
    ai_provider: str = "anthropic"
    ai_model: Optional[str] = None
    ai_system_prompt: str = Field(default_factory=_default_system_prompt)
    ai_default_max_tokens: int = 4096
    ai_default_temperature: float = 1.0

    # Local rate limits
    ai_rate_limit_max: int = 30
    ai_rate_limit_window_seconds: int = 60
    auth_rate_limit_max: int = 20
    auth_rate_limit_window_seconds: int = 15 * 60
    redis_url: Optional[str] = None
    trusted_proxy_hops: int = Field(default=0, ge=0)  # proxies allowed to set X-Forwarded-For

    # Auth
    auth_jwks_url: Optional[str] = None
    auth_audience: Optional[str] = None
    auth_jwt_secret: Optional[str] = None

    # HTTP
    web_origins: str = DEFAULT_WEB_ORIGINS  # comma-separated
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _resolve_database_url(cls, value: str, info: ValidationInfo) -> str:
        if value and value.strip():
            return normalize_database_url(value.strip())
        data = info.data
        return (
            f"postgresql+psycopg2://{data.get('postgres_user', 'postgres')}:{data.get('postgres_password', 'postgres')}"
            f"@{data.get('postgres_host', 'localhost')}:{data.get('postgres_port', 5432)}/{data.get('postgres_db', 'postgres')}"
        )

    @field_validator("ai_provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return (value or "anthropic").strip().lower()

    @field_validator("ai_system_prompt")
    @classmethod
    def _non_blank_prompt(cls, value: str) -> str:
        return value if value.strip() else _default_system_prompt()

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return (value or "INFO").upper()

    @property
    def cors_origins(self) -> list[str]:
        return [item.strip() for item in (self.web_origins or DEFAULT_WEB_ORIGINS).split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def resolve_database_url() -> str:
    return get_settings().database_url
