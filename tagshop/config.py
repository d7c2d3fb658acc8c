import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    jwt_secret: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: Optional[str] = None
    smtp_timeout: float = 10.0
    order_notification_recipient: Optional[str] = None
    send_customer_confirmation: bool = True
    processed_event_retention_days: int = 30
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
            jwt_secret=os.getenv("JWT_SECRET"),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_from=os.getenv("SMTP_FROM"),
            smtp_timeout=float(os.getenv("SMTP_TIMEOUT", "10")),
            order_notification_recipient=os.getenv("ORDER_NOTIFICATION_RECIPIENT"),
            send_customer_confirmation=_flag(os.getenv("SEND_CUSTOMER_CONFIRMATION"), True),
            processed_event_retention_days=int(os.getenv("PROCESSED_EVENT_RETENTION_DAYS", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE"),
        )


def configure_logging(settings: Settings) -> None:
    root = logging.getLogger()
    root.setLevel(settings.log_level)

    # Re-running create_app (tests, reload) must not stack handlers
    for handler in list(root.handlers):
        if getattr(handler, "_tagshop", False):
            root.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(settings.log_file, maxBytes=10 * 1024 * 1024, backupCount=3)
        )

    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._tagshop = True
        root.addHandler(handler)
