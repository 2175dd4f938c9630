import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    signature_max_age_seconds: int
    signature_single_use: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///ebr.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        signature_max_age_seconds=_getenv_int("SIGNATURE_MAX_AGE_SECONDS", 300),
        signature_single_use=_getenv_bool("SIGNATURE_SINGLE_USE", True),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        # e-signature policy
        "SIGNATURE_MAX_AGE_SECONDS": s.signature_max_age_seconds,
        "SIGNATURE_SINGLE_USE": s.signature_single_use,
        # JSON bodies only; section payloads are small documents
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
        "JSON_SORT_KEYS": False,
    }
