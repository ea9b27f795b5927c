from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env at import so env vars are available early
load_dotenv()

ZERO_GUID = "00000000-0000-0000-0000-000000000000"


class RawSettings(BaseModel):
    # OMS (order management) endpoints and application credentials
    OMS_API_URL: str = "https://eu-ext.linnworks.net/api"
    OMS_AUTH_URL: str = "https://api.linnworks.net/api"
    OMS_APPLICATION_ID: str | None = None
    OMS_APPLICATION_SECRET: str | None = None
    OMS_INSTALLATION_TOKEN: str | None = None
    OMS_LOCATION_ID: str = ZERO_GUID

    # Books (accounting) endpoints and OAuth client
    BOOKS_API_URL: str | None = None
    BOOKS_AUTH_URL: str = "https://accounts.zoho.eu/oauth/v2/token"
    BOOKS_ORGANIZATION_ID: str | None = None
    BOOKS_CLIENT_ID: str | None = None
    BOOKS_CLIENT_SECRET: str | None = None
    BOOKS_REFRESH_TOKEN: str | None = None
    BOOKS_GRANT_TYPE: str = "refresh_token"

    # Optional / tuning
    DB_PATH: str = "ordsync.sqlite3"
    HTTP_TIMEOUT: int = 30
    OMS_POLL_INTERVAL: float = 30.0
    OMS_BATCH_SIZE: int = 50
    OMS_MAX_RETRIES: int = 3
    BOOKS_MAX_RETRIES: int = 2
    BOOKS_ITEM_BATCH_SIZE: int = 50
    BOOKS_TARGET_LOCATION_IDS: list[str] = ["347732000000070863", "347732000000070865"]
    RATE_LIMIT_RPM: int = 80
    RATE_LIMIT_CONCURRENCY: int = 2
    SYNC_INTERVAL: float = 60.0
    SYNC_ORDER_DELAY: float = 1.0
    SYNC_STEP_DELAY: float = 0.5
    SYNC_MAX_RETRIES: int = 5
    TOKEN_REFRESH_BUFFER: int = 300
    TOKEN_MIN_TTL: int = 60
    INVENTORY_PAGE_SIZE: int = 200
    INVENTORY_UPDATE_BATCH: int = 50
    INVENTORY_INTERVAL: float = 86400.0
    SALES_ORDER_REFERENCE_PREFIX: str = "EXT-"


class SettingsStrict(BaseModel):
    OMS_API_URL: str = "https://eu-ext.linnworks.net/api"
    OMS_AUTH_URL: str = "https://api.linnworks.net/api"
    OMS_APPLICATION_ID: str
    OMS_APPLICATION_SECRET: str
    OMS_INSTALLATION_TOKEN: str
    OMS_LOCATION_ID: str = ZERO_GUID

    BOOKS_API_URL: str
    BOOKS_AUTH_URL: str = "https://accounts.zoho.eu/oauth/v2/token"
    BOOKS_ORGANIZATION_ID: str
    BOOKS_CLIENT_ID: str
    BOOKS_CLIENT_SECRET: str
    BOOKS_REFRESH_TOKEN: str
    BOOKS_GRANT_TYPE: str = "refresh_token"

    DB_PATH: str = "ordsync.sqlite3"
    HTTP_TIMEOUT: int = 30
    OMS_POLL_INTERVAL: float = 30.0
    OMS_BATCH_SIZE: int = 50
    OMS_MAX_RETRIES: int = 3
    BOOKS_MAX_RETRIES: int = 2
    BOOKS_ITEM_BATCH_SIZE: int = 50
    BOOKS_TARGET_LOCATION_IDS: list[str] = ["347732000000070863", "347732000000070865"]
    RATE_LIMIT_RPM: int = 80
    RATE_LIMIT_CONCURRENCY: int = 2
    SYNC_INTERVAL: float = 60.0
    SYNC_ORDER_DELAY: float = 1.0
    SYNC_STEP_DELAY: float = 0.5
    SYNC_MAX_RETRIES: int = 5
    TOKEN_REFRESH_BUFFER: int = 300
    TOKEN_MIN_TTL: int = 60
    INVENTORY_PAGE_SIZE: int = 200
    INVENTORY_UPDATE_BATCH: int = 50
    INVENTORY_INTERVAL: float = 86400.0
    SALES_ORDER_REFERENCE_PREFIX: str = "EXT-"


_cache: RawSettings | None = None


def _csv(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _read_env_dict() -> dict:
    data = {
        # OMS
        "OMS_API_URL": os.getenv("OMS_API_URL"),
        "OMS_AUTH_URL": os.getenv("OMS_AUTH_URL"),
        "OMS_APPLICATION_ID": os.getenv("OMS_APPLICATION_ID"),
        "OMS_APPLICATION_SECRET": os.getenv("OMS_APPLICATION_SECRET"),
        "OMS_INSTALLATION_TOKEN": os.getenv("OMS_INSTALLATION_TOKEN"),
        "OMS_LOCATION_ID": os.getenv("OMS_LOCATION_ID"),
        # Books
        "BOOKS_API_URL": os.getenv("BOOKS_API_URL"),
        "BOOKS_AUTH_URL": os.getenv("BOOKS_AUTH_URL"),
        "BOOKS_ORGANIZATION_ID": os.getenv("BOOKS_ORGANIZATION_ID"),
        "BOOKS_CLIENT_ID": os.getenv("BOOKS_CLIENT_ID"),
        "BOOKS_CLIENT_SECRET": os.getenv("BOOKS_CLIENT_SECRET"),
        "BOOKS_REFRESH_TOKEN": os.getenv("BOOKS_REFRESH_TOKEN"),
        "BOOKS_GRANT_TYPE": os.getenv("BOOKS_GRANT_TYPE"),
        "BOOKS_TARGET_LOCATION_IDS": _csv(os.getenv("BOOKS_TARGET_LOCATION_IDS")),
        # DB + tuning
        "DB_PATH": os.getenv("ORDSYNC_DB"),
        "HTTP_TIMEOUT": os.getenv("HTTP_TIMEOUT"),
        "OMS_POLL_INTERVAL": os.getenv("OMS_POLL_INTERVAL"),
        "OMS_BATCH_SIZE": os.getenv("OMS_BATCH_SIZE"),
        "OMS_MAX_RETRIES": os.getenv("OMS_MAX_RETRIES"),
        "BOOKS_MAX_RETRIES": os.getenv("BOOKS_MAX_RETRIES"),
        "BOOKS_ITEM_BATCH_SIZE": os.getenv("BOOKS_ITEM_BATCH_SIZE"),
        "RATE_LIMIT_RPM": os.getenv("RATE_LIMIT_RPM"),
        "RATE_LIMIT_CONCURRENCY": os.getenv("RATE_LIMIT_CONCURRENCY"),
        "SYNC_INTERVAL": os.getenv("SYNC_INTERVAL"),
        "SYNC_ORDER_DELAY": os.getenv("SYNC_ORDER_DELAY"),
        "SYNC_STEP_DELAY": os.getenv("SYNC_STEP_DELAY"),
        "SYNC_MAX_RETRIES": os.getenv("SYNC_MAX_RETRIES"),
        "TOKEN_REFRESH_BUFFER": os.getenv("TOKEN_REFRESH_BUFFER"),
        "TOKEN_MIN_TTL": os.getenv("TOKEN_MIN_TTL"),
        "INVENTORY_PAGE_SIZE": os.getenv("INVENTORY_PAGE_SIZE"),
        "INVENTORY_UPDATE_BATCH": os.getenv("INVENTORY_UPDATE_BATCH"),
        "INVENTORY_INTERVAL": os.getenv("INVENTORY_INTERVAL"),
        "SALES_ORDER_REFERENCE_PREFIX": os.getenv("SALES_ORDER_REFERENCE_PREFIX"),
    }
    # Unset keys fall back to the model defaults; pydantic coerces the numeric strings
    return {k: v for k, v in data.items() if v not in (None, "")}


def get_settings() -> RawSettings:
    global _cache
    if _cache is None:
        _cache = RawSettings(**_read_env_dict())
    return _cache


def require_settings() -> SettingsStrict:
    """Return validated settings; raises ValidationError if any required are missing."""
    data = _read_env_dict()
    return SettingsStrict(**data)


def missing_required_keys() -> list[str]:
    """Return list of missing required env keys for user-friendly errors."""
    required = [
        "OMS_APPLICATION_ID",
        "OMS_APPLICATION_SECRET",
        "OMS_INSTALLATION_TOKEN",
        "BOOKS_API_URL",
        "BOOKS_ORGANIZATION_ID",
        "BOOKS_CLIENT_ID",
        "BOOKS_CLIENT_SECRET",
        "BOOKS_REFRESH_TOKEN",
    ]
    missing = [k for k in required if os.getenv(k) in (None, "")]
    return missing
