import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    # LIBRARY_DATA_FILE is the older name of the same setting
    db_file: Optional[str] = os.getenv("LIBRARY_DB_FILE") or os.getenv("LIBRARY_DATA_FILE")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))
    cleanup_orphans_on_startup: bool = _env_flag("CLEANUP_ORPHANS_ON_STARTUP", "True")

    # Loan rules
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "3"))

    # Security settings
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Campus Library Loans")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
