"""Per-entry access counters kept in a SQL database.

The counters back the ``/status`` report only. Whether an entry is cached is
always decided by the filesystem, never by this table.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url


class CacheStats:
    def __init__(self, database_url: str):
        self._engine = self._create_engine(database_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        category TEXT NOT NULL,
                        cache_key TEXT NOT NULL,
                        total_hits INTEGER NOT NULL DEFAULT 0,
                        total_misses INTEGER NOT NULL DEFAULT 0,
                        fetched_bytes INTEGER NOT NULL DEFAULT 0,
                        last_access TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (category, cache_key)
                    )
                    """
                )
            )

    def record_hit(self, category: str, cache_key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO cache_entries (category, cache_key, total_hits, last_access)
                    VALUES (:category, :cache_key, 1, CURRENT_TIMESTAMP)
                    ON CONFLICT(category, cache_key) DO UPDATE SET
                        total_hits = total_hits + 1,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"category": category, "cache_key": cache_key},
            )

    def record_miss(self, category: str, cache_key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO cache_entries (category, cache_key, total_misses, last_access)
                    VALUES (:category, :cache_key, 1, CURRENT_TIMESTAMP)
                    ON CONFLICT(category, cache_key) DO UPDATE SET
                        total_misses = total_misses + 1,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"category": category, "cache_key": cache_key},
            )

    def record_fetch(self, category: str, cache_key: str, size: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO cache_entries (category, cache_key, fetched_bytes, last_access)
                    VALUES (:category, :cache_key, :size, CURRENT_TIMESTAMP)
                    ON CONFLICT(category, cache_key) DO UPDATE SET
                        fetched_bytes = fetched_bytes + :size,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"category": category, "cache_key": cache_key, "size": size},
            )

    def entry(self, category: str, cache_key: str) -> dict[str, object] | None:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(
                    """
                    SELECT category, cache_key, total_hits, total_misses, fetched_bytes, last_access
                    FROM cache_entries
                    WHERE category = :category AND cache_key = :cache_key
                    """
                ),
                {"category": category, "cache_key": cache_key},
            )
            row = result.mappings().first()
        return dict(row) if row else None

    def top_entries(self, limit: int = 10) -> list[dict[str, object]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(
                    """
                    SELECT category, cache_key, total_hits, total_misses, fetched_bytes, last_access
                    FROM cache_entries
                    ORDER BY total_hits DESC, cache_key ASC
                    LIMIT :limit
                    """
                ),
                {"limit": limit},
            )
            rows = result.mappings().all()
        return [dict(row) for row in rows]

    def total_entries(self) -> int:
        with self._engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM cache_entries")).scalar_one()
        return int(count)

    def close(self) -> None:
        self._engine.dispose()
