import logging
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_ORG_NAME = "Hospital Name"


class Settings(BaseSettings):
    APP_ENV: str = "development"
    DATABASE_URL: str = "sqlite:///./data/medpool.db"
    STORE_NAMESPACE: str = "mp"
    OVERDUE_THRESHOLD_DAYS: int = 14
    # Version-checked writes for every ledger commit (off = last writer wins)
    OPTIMISTIC_WRITES: bool = False
    XLSX_EXPORT_ENABLED: bool = True
    DEFAULT_ORG_NAME: str = _DEFAULT_ORG_NAME
    REPORT_TITLE: str = "Borrow / Return Report"
    REPORT_DATE_FORMAT: str = "%d/%m/%Y"
    REPORT_DATETIME_FORMAT: str = "%d/%m/%Y %H:%M:%S"

    class Config:
        env_file = ".env"


settings = Settings()

if settings.OVERDUE_THRESHOLD_DAYS < 1:
    raise RuntimeError("OVERDUE_THRESHOLD_DAYS must be at least 1, check the .env file.")

if settings.APP_ENV == "production" and settings.DATABASE_URL.startswith("sqlite:///./"):
    logger.warning("DATABASE_URL points to a relative SQLite file, set an absolute path in .env for production")
