"""
Application settings

All environment-driven configuration lives here, managed with Pydantic
Settings. Values are read from the environment first, then from the project
root ``.env`` file, then fall back to the defaults below.

Key concepts:
- BaseSettings: reads fields from environment variables automatically
- computed_field: derived values built from other fields
- model_validator: cross-field checks run after loading
"""
import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    Parse the CORS origins setting.

    Accepts either a comma separated string
    ("http://localhost:3000,http://localhost:5173") or a list.

    Raises:
        ValueError: when the value is neither a string nor a list
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    Application configuration.

    Source priority:
    1. environment variables
    2. the ``.env`` file one level above ``backend/``
    3. defaults declared here
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # signs the bearer tokens issued by the auth service
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """CORS origins with trailing slashes stripped."""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "CertLab"
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis (only used when SUBSCRIPTION_LOCK_BACKEND == "redis")
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Polar billing provider
    POLAR_API_KEY: str | None = None
    POLAR_API_BASE_URL: str = "https://api.polar.sh/v1"
    POLAR_WEBHOOK_SECRET: str | None = None
    POLAR_PRO_PRODUCT_ID: str | None = None
    POLAR_ENTERPRISE_PRODUCT_ID: str | None = None
    POLAR_TIMEOUT_SECONDS: float = 5.0
    POLAR_READ_ATTEMPTS: int = 3
    POLAR_READ_MAX_WAIT_SECONDS: float = 1.0

    # Public base URL used for checkout success/cancel redirects
    APP_URL: str = "http://localhost:5000"

    # Subscription reconciliation and locking
    SUBSCRIPTION_FRESHNESS_SECONDS: int = 60 * 60  # cached record trusted for one hour
    SUBSCRIPTION_LOCK_BACKEND: Literal["memory", "redis"] = "memory"
    SUBSCRIPTION_LOCK_TIMEOUT_MS: int = 30_000
    SUBSCRIPTION_LOCK_OPERATION_TIMEOUT_MS: int = 75_000
    SUBSCRIPTION_LOCK_MAX_WAIT_MS: int = 10_000
    SUBSCRIPTION_LOCK_POLL_INTERVAL_MS: int = 100
    SUBSCRIPTION_LOCK_SWEEP_INTERVAL_SECONDS: float = 1.0

    # Webhook retry queue
    WEBHOOK_RETRY_ENABLED: bool = True
    WEBHOOK_RETRY_MAX_ATTEMPTS: int = 5
    WEBHOOK_RETRY_BASE_DELAY_MS: int = 1_000
    WEBHOOK_RETRY_MAX_DELAY_MS: int = 60_000
    WEBHOOK_RETRY_JITTER_FACTOR: float = 0.3
    WEBHOOK_RETRY_INTERVAL_SECONDS: int = 5
    WEBHOOK_RETRY_FAILED_TTL_HOURS: int = 24

    @computed_field  # type: ignore[prop-decorator]
    @property
    def polar_configured(self) -> bool:
        return bool(self.POLAR_API_KEY)

    @property
    def provider_critical_section_ms(self) -> int:
        """
        Longest time one locked subscription operation can spend waiting on
        the provider: a checkout that turns into a plan switch makes three
        retried reads (customer, subscriptions, prices) and two writes.
        """
        read = (
            self.POLAR_READ_ATTEMPTS * self.POLAR_TIMEOUT_SECONDS
            + (self.POLAR_READ_ATTEMPTS - 1) * self.POLAR_READ_MAX_WAIT_SECONDS
        )
        return int((3 * read + 2 * self.POLAR_TIMEOUT_SECONDS) * 1000)

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        Refuse the placeholder value "changethis" outside local development.

        Raises:
            ValueError: when a default secret is used in staging/production
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("POLAR_WEBHOOK_SECRET", self.POLAR_WEBHOOK_SECRET)

        return self

    @model_validator(mode="after")
    def _check_lock_deadline(self) -> Self:
        # the sweeper would otherwise release a slow but live holder
        if self.SUBSCRIPTION_LOCK_OPERATION_TIMEOUT_MS <= self.provider_critical_section_ms:
            raise ValueError(
                "SUBSCRIPTION_LOCK_OPERATION_TIMEOUT_MS must exceed the worst-case provider time "
                f"of one operation ({self.provider_critical_section_ms} ms)"
            )
        return self


settings = Settings()  # type: ignore
