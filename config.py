"""Runtime settings read from the environment (and a local .env file)."""
import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    """Interpret environment variable values as booleans."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Settings:
    """Application settings shared by main, auth and logging."""

    APP_NAME = "Finance Tracker"
    APP_SLUG = "finance-tracker"
    VERSION = "0.2.0"
    ALGORITHM = "HS256"

    def __init__(self) -> None:
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./finance.db")
        # use a real secret outside of local development
        self.SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_TO_SOMETHING_RANDOM_AND_SECRET")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60)
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_JSON = _env_bool("LOG_JSON", default=False)
        self.DB_CONNECT_RETRIES = _env_int("DB_CONNECT_RETRIES", 10)
        self.DB_CONNECT_DELAY = _env_int("DB_CONNECT_DELAY", 2)
        self.DEFAULT_PAGE_SIZE = _env_int("DEFAULT_PAGE_SIZE", 50)
        self.MAX_PAGE_SIZE = _env_int("MAX_PAGE_SIZE", 500)
        self.EXPORT_PREFIX = os.getenv("EXPORT_PREFIX", "finance-export")
        # Argon2id cost: memory in KiB (64 MB), passes, lanes
        self.ARGON2_MEMORY_COST = _env_int("ARGON2_MEMORY_COST", 65536)
        self.ARGON2_TIME_COST = _env_int("ARGON2_TIME_COST", 3)
        self.ARGON2_PARALLELISM = _env_int("ARGON2_PARALLELISM", 1)

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def engine_options(self) -> dict:
        """Keyword arguments for sqlmodel.create_engine."""
        connect_args = {"check_same_thread": False} if self.is_sqlite else {}
        return {"connect_args": connect_args, "echo": False}


settings = Settings()
