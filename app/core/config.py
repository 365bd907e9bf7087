from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ADMIN_TOKEN = "local-dev-admin-token-change-me"


class Settings(BaseSettings):
    app_env: str = "local"
    api_port: int = 8000

    postgres_host: str = "127.0.0.1"
    postgres_port: int = 5432
    postgres_db: str = "support_escalations"
    postgres_user: str = "support_user"
    postgres_password: str = "support_password"
    database_url_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL_OVERRIDE", "DATABASE_URL"),
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_auto_create: bool = False

    bot_assignee_ids_raw: str = Field(
        default="",
        validation_alias=AliasChoices("BOT_ASSIGNEE_IDS_RAW", "BOT_IDS"),
    )
    history_lookback_limit: int = Field(default=10, ge=10, le=200)
    detector_max_attempts: int = Field(default=3, ge=1, le=10)
    escalation_reconcile_interval_seconds: int = Field(default=0, ge=0)

    webhook_client_secret: str | None = None
    webhook_max_age_seconds: int = 300
    webhook_public_url: str | None = None

    admin_api_token: str | None = DEFAULT_ADMIN_TOKEN
    alert_audit_enabled: bool = True

    log_level: str = "INFO"
    log_json: bool = False

    cors_allowed_origins_raw: str = "http://127.0.0.1:5173,http://localhost:5173"
    trusted_hosts_raw: str = "127.0.0.1,localhost"
    force_https: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def bot_assignee_ids(self) -> frozenset[str]:
        return frozenset(
            bot_id.strip()
            for bot_id in self.bot_assignee_ids_raw.split(",")
            if bot_id.strip()
        )

    @property
    def cors_allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allowed_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def trusted_hosts(self) -> list[str]:
        return [
            host.strip() for host in self.trusted_hosts_raw.split(",") if host.strip()
        ]

    def validate_security_settings(self) -> None:
        if self.app_env.lower() != "production":
            return

        if self.admin_api_token == DEFAULT_ADMIN_TOKEN:
            raise ValueError("ADMIN_API_TOKEN must be overridden or unset in production.")
        if self.admin_api_token is not None and len(self.admin_api_token) < 32:
            raise ValueError(
                "ADMIN_API_TOKEN must be at least 32 characters in production."
            )
        if not self.webhook_client_secret:
            raise ValueError(
                "WEBHOOK_CLIENT_SECRET is required in production to verify webhooks."
            )
        if not self.cors_allowed_origins:
            raise ValueError(
                "CORS_ALLOWED_ORIGINS_RAW must define explicit origins in production."
            )
        if "*" in self.cors_allowed_origins:
            raise ValueError("Wildcard CORS origin is not allowed in production.")
        if not self.trusted_hosts:
            raise ValueError(
                "TRUSTED_HOSTS_RAW must define explicit hosts in production."
            )
        if "*" in self.trusted_hosts:
            raise ValueError("Wildcard trusted host is not allowed in production.")


@lru_cache
def get_settings() -> Settings:
    return Settings()
