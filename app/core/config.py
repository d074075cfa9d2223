import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Salon Broadcast API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./salon_broadcast.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Dispatch queue
    DISPATCH_CONCURRENCY: int = int(os.getenv("DISPATCH_CONCURRENCY", "10"))
    DISPATCH_MAX_ATTEMPTS: int = int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3"))
    DISPATCH_BACKOFF_BASE_SECONDS: float = float(os.getenv("DISPATCH_BACKOFF_BASE_SECONDS", "2"))
    DISPATCH_BACKOFF_MAX_SECONDS: float = float(os.getenv("DISPATCH_BACKOFF_MAX_SECONDS", "300"))
    DISPATCH_MAX_JITTER_SECONDS: float = float(os.getenv("DISPATCH_MAX_JITTER_SECONDS", "5"))
    DISPATCH_POLL_INTERVAL_SECONDS: float = float(os.getenv("DISPATCH_POLL_INTERVAL_SECONDS", "1"))
    DISPATCH_STALE_AFTER_SECONDS: int = int(os.getenv("DISPATCH_STALE_AFTER_SECONDS", "600"))

    # Provider limits
    LINE_RATE_LIMIT_PER_MIN: int = int(os.getenv("LINE_RATE_LIMIT_PER_MIN", "600"))
    INSTAGRAM_RATE_LIMIT_PER_MIN: int = int(os.getenv("INSTAGRAM_RATE_LIMIT_PER_MIN", "200"))
    EMAIL_RATE_LIMIT_PER_MIN: int = int(os.getenv("EMAIL_RATE_LIMIT_PER_MIN", "60"))
    SMS_RATE_LIMIT_PER_MIN: int = int(os.getenv("SMS_RATE_LIMIT_PER_MIN", "30"))

    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_SMS_FROM: str = os.getenv("TWILIO_SMS_FROM", "")

    # RFM scoring
    RFM_WINDOW_DAYS: int = int(os.getenv("RFM_WINDOW_DAYS", "365"))
    RFM_AVERAGE_TICKET: float = float(os.getenv("RFM_AVERAGE_TICKET", "5000"))

    # Used when a tenant has no salon profile
    DEFAULT_SALON_NAME: str = os.getenv("DEFAULT_SALON_NAME", "サロン")
    DEFAULT_SALON_PHONE: str = os.getenv("DEFAULT_SALON_PHONE", "")

settings = Settings()
