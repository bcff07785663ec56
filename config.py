import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))
    transaction_max_attempts: int = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))
    transaction_retry_backoff: float = float(os.getenv("TRANSACTION_RETRY_BACKOFF", "0.05"))

    # Open Library settings
    openlibrary_base_url: str = os.getenv("OPENLIBRARY_BASE_URL", "https://openlibrary.org")
    openlibrary_covers_url: str = os.getenv("OPENLIBRARY_COVERS_URL", "https://covers.openlibrary.org")
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))
    openlibrary_retries: int = int(os.getenv("OPENLIBRARY_RETRIES", "3"))

    # Loan rules
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "60"))
    borrower_name_min_length: int = int(os.getenv("BORROWER_NAME_MIN_LENGTH", "3"))
    borrower_name_max_length: int = int(os.getenv("BORROWER_NAME_MAX_LENGTH", "100"))

    # Query settings
    multi_get_batch_size: int = int(os.getenv("MULTI_GET_BATCH_SIZE", "30"))
    search_default_limit: int = int(os.getenv("SEARCH_DEFAULT_LIMIT", "10"))
    search_fetch_limit: int = int(os.getenv("SEARCH_FETCH_LIMIT", "200"))

    # Cache settings (Redis is optional; memory cache is always used)
    redis_url: Optional[str] = os.getenv("REDIS_URL")
    cache_ttl: int = int(os.getenv("CACHE_TTL", "300"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
