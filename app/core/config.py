from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = [
    "https://mcleukerai.lovable.app",
    "https://preview--mcleukerai.lovable.app",
    "https://www.mcleukerai.com",
    "https://mcleukerai.com",
    "http://localhost:5173",
    "http://localhost:8080",
]

# Preview deployments get throwaway subdomains
_DEFAULT_CORS_REGEX = r"^https://[a-z0-9-]+\.(lovableproject\.com|lovable\.app)$"


def _parse_cors_origins(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_CORS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if not s:
        return _DEFAULT_CORS.copy()
    if s.startswith("["):
        import json
        try:
            out = json.loads(s)
        except ValueError:
            return _DEFAULT_CORS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    frontend_url: str = Field(default="https://mcleukerai.lovable.app", alias="FRONTEND_URL")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="mcleuker", alias="MONGODB_DB_NAME")

    # Stripe
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")
    stripe_timeout_seconds: float = Field(default=10.0, alias="STRIPE_TIMEOUT_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default=",".join(_DEFAULT_CORS),
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )
    cors_origin_regex: str = Field(default=_DEFAULT_CORS_REGEX, alias="CORS_ORIGIN_REGEX")

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Client session
    subscription_poll_seconds: float = Field(default=60.0, alias="SUBSCRIPTION_POLL_SECONDS")

    # Access tokens issued by the auth platform
    access_token_max_age: int = 7 * 24 * 3600


@lru_cache
def get_settings() -> Settings:
    return Settings()
