import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))

    # Open Library lookups for book intake by ISBN
    enable_open_library: bool = _flag("ENABLE_OPEN_LIBRARY", "True")
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Lending policy defaults (library_settings rows override these per key)
    max_books_per_member: int = int(os.getenv("MAX_BOOKS_PER_MEMBER", "3"))
    max_reservations_per_member: int = int(os.getenv("MAX_RESERVATIONS_PER_MEMBER", "3"))
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_renewal_count: int = int(os.getenv("MAX_RENEWAL_COUNT", "2"))
    fine_per_day: Decimal = Decimal(os.getenv("FINE_PER_DAY", "0.50"))
    max_fine_allowed: Decimal = Decimal(os.getenv("MAX_FINE_ALLOWED", "10.00"))
    reservation_pickup_days: int = int(os.getenv("RESERVATION_PICKUP_DAYS", "3"))

    # Session tokens issued by POST /auth/login
    session_ttl_minutes: int = int(os.getenv("SESSION_TTL_MINUTES", "480"))


settings = Settings()
