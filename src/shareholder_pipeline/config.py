"""Configuration helpers and Settings container.

This module provides a small `Settings` dataclass and `get_settings` which
reads environment variables (MongoDB location, blob storage, batch sizing and
retry policy) and validates the numeric knobs.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv

# Explicitly load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env")

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Container for pipeline configuration read from the environment.

    Attributes:
        mongo_uri: MongoDB connection URI.
        mongo_db: Target MongoDB database name.
        mongo_tls: Whether to connect with TLS using the certifi CA bundle.
        storage_root: Local directory holding uploaded source files.
        storage_base_url: Optional base URL of an HTTP object store; when set
            it takes precedence over `storage_root`.
        storage_token: Bearer token sent to the HTTP object store.
        require_owner_prefix: Only allow source paths under ``<owner_id>/``.
        chunk_size: Source rows per chunk for the offset-driven reader.
        stream_batch_size: Rows buffered per batch by the streaming importer.
        max_retries: Attempts per batch before a transient error is fatal.
        retry_backoff_seconds: Base delay of the exponential retry backoff.
        yield_seconds: Pause between batches in self-driving mode.
        error_sample_size: Maximum rejected-row messages kept on a job.
        source_cache_size: Parsed sources kept in memory by the reader.
    """
    mongo_uri: str
    mongo_db: str
    mongo_tls: bool = False
    storage_root: Path = Path("data/uploads")
    storage_base_url: str | None = None
    storage_token: str | None = None
    require_owner_prefix: bool = False
    chunk_size: int = 50_000
    stream_batch_size: int = 5_000
    max_retries: int = 3
    retry_backoff_seconds: float = 2.5
    yield_seconds: float = 0.05
    error_sample_size: int = 50
    source_cache_size: int = 4


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise RuntimeError(f"{name} must not be negative, got {value}")
    return value


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def get_settings() -> Settings:
    """Read environment variables and return a frozen `Settings` object.

    Raises:
        RuntimeError: if a numeric setting is malformed or out of range.
    """
    mongo_uri = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    mongo_db = os.getenv("MONGO_DB", "shareholders")
    base_url = os.getenv("STORAGE_BASE_URL", "").strip() or None

    return Settings(
        mongo_uri=mongo_uri,
        mongo_db=mongo_db,
        mongo_tls=_bool_env("MONGO_TLS"),
        storage_root=Path(os.getenv("STORAGE_ROOT", "data/uploads")),
        storage_base_url=base_url,
        storage_token=os.getenv("STORAGE_TOKEN", "").strip() or None,
        require_owner_prefix=_bool_env("REQUIRE_OWNER_PREFIX"),
        chunk_size=_int_env("IMPORT_CHUNK_SIZE", 50_000),
        stream_batch_size=_int_env("STREAM_BATCH_SIZE", 5_000),
        max_retries=_int_env("IMPORT_MAX_RETRIES", 3),
        retry_backoff_seconds=_float_env("IMPORT_RETRY_BACKOFF_SECONDS", 2.5),
        yield_seconds=_float_env("IMPORT_YIELD_SECONDS", 0.05),
        error_sample_size=_int_env("ERROR_SAMPLE_SIZE", 50, minimum=0),
        source_cache_size=_int_env("SOURCE_CACHE_SIZE", 4),
    )
