from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/support_monitor"

    # Fernet key used for session credentials at rest
    ENCRYPTION_KEY: str | None = None

    # "package.module:attribute" resolving to a ClientFactory
    NETWORK_CLIENT_FACTORY: str | None = None
    NETWORK_ADDRESS_SUFFIX: str = "@s.whatsapp.net"
    GROUP_ADDRESS_SUFFIX: str = "@g.us"

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # SESSION SUPERVISOR POLICY
    # =================================================================
    QR_MAX_ATTEMPTS: int = 5
    QR_WINDOW_SECONDS: float = 600.0  # 10 minutes
    RECONNECT_BASE_DELAY_MS: int = 5000
    RECONNECT_BACKOFF_FACTOR: float = 1.5
    RECONNECT_MAX_DELAY_MS: int = 60000
    RECONNECT_MAX_ATTEMPTS: int = 10
    NO_RECONNECT_STATUS_CODES: list[int] = [401, 403]
    SESSION_RESTORE_DELAY_SECONDS: float = 3.0

    # =================================================================
    # ANALYTICS
    # =================================================================
    RETURNING_CONTACT_GAP_HOURS: float = 24.0
    ACTIVE_CONTACTS_LIMIT: int = 100

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
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
                    "max_size": 5,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
