import logging
from typing import Dict, List, Optional, Protocol

import redis as _redis
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from zkcred.errors import StorageError
from zkcred.utils import now_ms

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS prepared_states (
  id TEXT PRIMARY KEY,
  state BYTEA NOT NULL,
  updated_at BIGINT NOT NULL
);
"""


class StorageAdapter(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self) -> List[str]: ...


class MemoryStorage:
    def __init__(self):
        self._items: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self._items.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._items[key] = bytes(value)

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def keys(self) -> List[str]:
        return sorted(self._items)


def init_db(settings):
    engine = create_engine(settings.db_dsn, pool_pre_ping=True)
    with engine.begin() as conn:
        for stmt in SCHEMA_SQL.split(";"):
            sql = stmt.strip()
            if sql:
                conn.execute(text(sql))
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    return engine, Session


def init_redis(settings):
    return _redis.Redis.from_url(settings.redis_url, decode_responses=True)


class SqlStorage:
    """Prepared states in the ``prepared_states`` table, one row per id."""

    def __init__(self, Session):
        self.Session = Session

    def get(self, key: str) -> Optional[bytes]:
        try:
            with self.Session() as session:
                row = session.execute(
                    text("SELECT state FROM prepared_states WHERE id=:id"), {"id": key}
                ).first()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read prepared state {key}", exc) from exc
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        try:
            with self.Session.begin() as session:
                session.execute(
                    text(
                        "INSERT INTO prepared_states (id,state,updated_at) VALUES (:id,:s,:ts) "
                        "ON CONFLICT (id) DO UPDATE SET state=EXCLUDED.state, updated_at=EXCLUDED.updated_at"
                    ),
                    {"id": key, "s": bytes(value), "ts": now_ms()},
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to write prepared state {key}", exc) from exc

    def delete(self, key: str) -> bool:
        try:
            with self.Session.begin() as session:
                result = session.execute(text("DELETE FROM prepared_states WHERE id=:id"), {"id": key})
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete prepared state {key}", exc) from exc
        return result.rowcount > 0

    def keys(self) -> List[str]:
        with self.Session() as session:
            rows = session.execute(text("SELECT id FROM prepared_states ORDER BY id")).all()
        return [row[0] for row in rows]


def health_check(engine):
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
