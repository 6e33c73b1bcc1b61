"""PostgreSQL connection management."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import psycopg

from noshow.errors import RecordStoreError
from noshow.storage.record_store import PostgresRecordStore

if TYPE_CHECKING:
    from noshow.settings import Settings

__all__ = ["get_connection", "open_record_store"]

logger = logging.getLogger(__name__)


def get_connection(dsn: str) -> psycopg.Connection[tuple[object, ...]]:
    """Create a new PostgreSQL connection (explicit commits)."""
    try:
        return psycopg.connect(dsn, autocommit=False)
    except psycopg.Error as exc:
        raise RecordStoreError("connect", exc) from exc


def open_record_store(settings: Settings, ensure_schema: bool = True) -> PostgresRecordStore:
    """Connect with ``settings.pg_dsn`` and apply the retry policy from settings."""
    store = PostgresRecordStore(
        get_connection(settings.pg_dsn),
        max_retries=settings.store_max_retries,
        backoff=settings.store_retry_backoff,
    )
    if ensure_schema:
        store.ensure_schema()
    logger.info("PostgreSQL record store ready")
    return store
