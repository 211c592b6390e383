from typing import List

from pydantic import EmailStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from fastapi_mail import ConnectionConfig


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DATABASE: str = "homeservices"
    FRONTEND_URL: str = "http://localhost:3000"
    CLIENT_ORIGIN: str = "http://localhost:3000"

    PLATFORM_NAME: str = "SalliH"
    ENVIRONMENT: str = "development"

    JWT_SECRET_KEY: str = "change-me"
    JWT_LIFETIME_SECONDS: int = 3600

    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMITING_ENABLED: bool = False

    MAIL_SERVER: str = "localhost"
    MAIL_PORT: int = 1025
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM: EmailStr = "noreply@example.com"
    MAIL_STARTTLS: bool = False
    MAIL_SSL_TLS: bool = False

    @property
    def mail_config(self) -> ConnectionConfig:
        return ConnectionConfig(
            MAIL_USERNAME=self.MAIL_USERNAME,
            MAIL_PASSWORD=self.MAIL_PASSWORD,
            MAIL_FROM=self.MAIL_FROM,
            MAIL_PORT=self.MAIL_PORT,
            MAIL_SERVER=self.MAIL_SERVER,
            MAIL_STARTTLS=self.MAIL_STARTTLS,
            MAIL_SSL_TLS=self.MAIL_SSL_TLS,
            USE_CREDENTIALS=bool(self.MAIL_USERNAME),
        )

    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SIGNING_SECRET: str = ""

    @property
    def stripe_keys(self) -> dict:
        return {
            "secret_key": self.STRIPE_SECRET_KEY,
            "publishable_key": self.STRIPE_PUBLISHABLE_KEY,
            "webhook_secret": self.STRIPE_WEBHOOK_SIGNING_SECRET,
        }

    # Money, all amounts in DEFAULT_CURRENCY
    DEFAULT_CURRENCY: str = "EGP"
    PLATFORM_FEE: float = 5
    ACTIVATION_FEE: float = 20
    WITHDRAWAL_FEE_RATE: float = 0.02
    WITHDRAWAL_FEE_MINIMUM: float = 2
    MINIMUM_WITHDRAWAL: float = 50

    # Booking lifecycle timing
    AUTO_CONFIRM_HOURS: int = 48
    CANCELLATION_WINDOW_HOURS: int = 2

    AUTO_CONFIRM_SWEEP_MINUTES: int = 5
    AUTO_CONFIRM_SWEEP_BATCH: int = 100
    AUTO_CONFIRM_SWEEP_CONCURRENCY: int = 5
    AUTO_CONFIRM_SWEEP_ENABLED: bool = True

    # Local mobile wallet simulation
    MOBILE_WALLET_FAILURE_RATE: float = 0.05
    MOBILE_WALLET_LATENCY_SECONDS: float = 2.0

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CLIENT_ORIGIN.split(",") if origin.strip()]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# create a singleton instance
settings = Settings()
