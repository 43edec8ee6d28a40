from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from coincraze.errors import PersistenceUnavailable

_CREATE_TABLE = text(
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """
)

_UPSERT = text(
    """
    INSERT INTO kv_store (name, value, updated_at)
    VALUES (:name, :value, :updated_at)
    ON CONFLICT (name) DO UPDATE SET
        value = EXCLUDED.value,
        updated_at = EXCLUDED.updated_at
    """
)

_SELECT = text("SELECT value FROM kv_store WHERE name = :name")
_DELETE = text("DELETE FROM kv_store WHERE name = :name")


class SqlKeyValueStore:
    """Key-value store backed by one SQL table (PostgreSQL or SQLite).

    `database_url` should come from environment. Do not log it.
    """

    def __init__(self, database_url: str, *, engine: Any | None = None) -> None:
        self._database_url = database_url
        self._engine = engine
        self._schema_ready = False

    def _get_engine(self) -> Any:
        if self._engine is None:
            self._engine = create_engine(self._database_url, echo=False, pool_pre_ping=True)
        if not self._schema_ready:
            with self._engine.begin() as conn:
                conn.execute(_CREATE_TABLE)
            self._schema_ready = True
        return self._engine

    def get(self, key: str) -> Optional[str]:
        try:
            with self._get_engine().begin() as conn:
                row = conn.execute(_SELECT, {"name": key}).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailable(f"kv_store read failed: {exc.__class__.__name__}") from exc
        return None if row is None else row[0]

    def set(self, key: str, value: str) -> None:
        params = {"name": key, "value": value, "updated_at": datetime.now(timezone.utc).isoformat()}
        try:
            with self._get_engine().begin() as conn:
                conn.execute(_UPSERT, params)
        except SQLAlchemyError as exc:
            raise PersistenceUnavailable(f"kv_store write failed: {exc.__class__.__name__}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._get_engine().begin() as conn:
                conn.execute(_DELETE, {"name": key})
        except SQLAlchemyError as exc:
            raise PersistenceUnavailable(f"kv_store delete failed: {exc.__class__.__name__}") from exc

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
