import os
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ORDERS_DB_USER: str        = os.getenv("ORDERS_DB_USER", "")
    ORDERS_DB_PASSWORD: str    = os.getenv("ORDERS_DB_PASSWORD", "")
    ORDERS_DB_NAME: str        = os.getenv("ORDERS_DB_NAME", "")
    ORDERS_DB_HOST: str        = os.getenv("ORDERS_DB_HOST", "")
    ORDERS_DB_PORT: int        = int(os.getenv("ORDERS_DB_PORT", "5432"))
    # overrides the ORDERS_DB_* parts when set
    ORDERS_DATABASE_URL: str   = os.getenv("ORDERS_DATABASE_URL", "")
    DB_ECHO: bool              = False

    RAZORPAY_KEY_ID: str          = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: SecretStr = SecretStr(os.getenv("RAZORPAY_KEY_SECRET", ""))
    RAZORPAY_BASE_URL: str        = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    GATEWAY_TIMEOUT: float        = float(os.getenv("GATEWAY_TIMEOUT", "10"))
    DEFAULT_CURRENCY: str         = os.getenv("DEFAULT_CURRENCY", "INR")

    MAX_CONFLICT_RETRIES: int  = int(os.getenv("MAX_CONFLICT_RETRIES", "3"))
    ADMIN_API_TOKEN: SecretStr = SecretStr(os.getenv("ADMIN_API_TOKEN", ""))

    RABBIT_USER: str           = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str       = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str           = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int           = int(os.getenv("RABBIT_PORT",  "5672"))

    OUTBOX_POLL_INTERVAL: int      = int(os.getenv("OUTBOX_POLL_INTERVAL", "1"))
    OUTBOX_PUBLISHER_ENABLED: bool = False

    @property
    def database_url(self) -> str:
        if self.ORDERS_DATABASE_URL:
            return self.ORDERS_DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.ORDERS_DB_USER}:"
            f"{self.ORDERS_DB_PASSWORD}"
            f"@{self.ORDERS_DB_HOST}:"
            f"{self.ORDERS_DB_PORT}/"
            f"{self.ORDERS_DB_NAME}"
        )

settings = Settings()
