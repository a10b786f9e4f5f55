from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres settings
    DATABASE_URL: str

    # OpenAI settings (draft content generation)
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.4
    OPENAI_MAX_TOKENS: int = 600
    OPENAI_TIMEOUT_SECONDS: float = 30.0

    # Slack accounts that speak on behalf of the community
    SLACK_COMMUNITY_MANAGER_USER_ID: str | None = None
    SLACK_AI_BOT_USER_ID: str | None = None

    # Shared secret for the scheduler hitting /cron endpoints
    CRON_SECRET: str | None = None

    # =================================================================
    # BATCH LIMITS - per tenant, per invocation
    # =================================================================
    DRAFTS_BATCH_SIZE: int = 200
    AUTOSEND_BATCH_SIZE: int = 200
    OUTBOX_EVALUATE_BATCH_SIZE: int = 500
    OUTBOX_DISPATCH_BATCH_SIZE: int = 200
    SLACK_EVENTS_BATCH_SIZE: int = 500

    AUTOSEND_COOLDOWN_HOURS: int = 24
    CRON_RUN_STALE_MINUTES: int = 15

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 8
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour
    DB_STATEMENT_TIMEOUT_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def slack_operator_user_ids(self) -> set[str]:
        """Slack user ids whose DM messages count as outbound (CM or AI bot)."""
        return {
            user_id
            for user_id in (self.SLACK_COMMUNITY_MANAGER_USER_ID, self.SLACK_AI_BOT_USER_ID)
            if user_id
        }

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Batch workers are short-lived, so development keeps the pool small.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
