# esg_builder/config.py
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

# Lade Umgebungsvariablen aus der .env Datei im Projekt-Root
dotenv_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)
else:
    load_dotenv()


FALLBACK_ORIGINS = [
    "http://127.0.0.1:5173",
    "http://localhost:5173",
    "http://localhost:3000",
]


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _env_int(key: str, default: int) -> int:
    v = _env_str(key)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    v = _env_str(key)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    sql_echo: bool

    # Tree
    path_separator: str
    max_tree_depth: int
    clone_suffix: str

    # HTTP
    allowed_origins: List[str]
    app_host: str
    app_port: int
    reload_app: bool

    # Logging
    log_level: str
    log_json: bool

    @staticmethod
    def from_env() -> "Settings":
        database_url = _env_str("DATABASE_URL")
        if database_url is None:
            sqlite_db_path = os.path.join(os.path.dirname(__file__), "esg_builder.db")
            database_url = f"sqlite+aiosqlite:///{sqlite_db_path}"

        env_origins = _env_str("BACKEND_ALLOWED_ORIGINS")
        origins = (
            [origin.strip() for origin in env_origins.split(",") if origin.strip()]
            if env_origins
            else []
        )

        return Settings(
            database_url=database_url,
            sql_echo=_env_bool("SQL_ECHO", False),
            # path separator must not be stripped away, so read it raw
            path_separator=os.getenv("PATH_SEPARATOR") or "/",
            max_tree_depth=max(1, _env_int("MAX_TREE_DEPTH", 64)),
            clone_suffix=os.getenv("CLONE_SUFFIX") or " (Copy)",
            allowed_origins=origins or list(FALLBACK_ORIGINS),
            app_host=_env_str("APP_HOST", "127.0.0.1") or "127.0.0.1",
            app_port=_env_int("APP_PORT", 8000),
            reload_app=_env_bool("RELOAD_APP", True),
            log_level=_env_str("LOG_LEVEL", "INFO") or "INFO",
            log_json=_env_bool("LOG_JSON", False),
        )


settings = Settings.from_env()
