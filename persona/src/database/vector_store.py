"""
Persona - LanceVectorStore
============================
``VectorStore`` implementation over a local LanceDB table.

Interface
---------
``upsert(points)``                       insert or replace by ``id``
``search(query_vector, limit, filter)``  cosine similarity, best first
``delete(filter=None, ids=None)``        by scalar filter or id list
``get(doc_id)`` / ``scroll(...)`` / ``count(filter)``

A *point* is ``{"id", "vector", "text", "metadata"}``.  ``user_id`` and
``created_at`` are lifted out of ``metadata`` into scalar columns so the
per-user filter runs as a LanceDB ``WHERE`` prefilter; the complete
metadata map is stored as JSON.

Design decisions:
  • **Singleton DB connection**: one ``lancedb.DBConnection`` per path,
    cached at module level to avoid file-lock contention.
  • **Synchronous API**: LanceDB is synchronous; async callers wrap the
    calls in ``asyncio.to_thread``.
  • **Filter whitelist**: only scalar columns may be filtered on, and
    values are quoted, so user ids never reach the SQL string raw.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Protocol, runtime_checkable

import lancedb
import pyarrow as pa

from persona.config.settings import settings
from persona.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
Point = dict[str, Any]
Hit = dict[str, Any]
Filter = dict[str, str]

_FILTERABLE_COLUMNS = frozenset({"id", "user_id"})
_SCAN_LIMIT = 10_000
_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


@runtime_checkable
class VectorStore(Protocol):
    def upsert(self, points: list[Point]) -> int: ...

    def search(self, query_vector: list[float], limit: int = 5, filter_dict: Filter | None = None) -> list[Hit]: ...

    def delete(self, filter_dict: Filter | None = None, ids: list[str] | None = None) -> None: ...

    def get(self, doc_id: str) -> Hit | None: ...

    def scroll(self, filter_dict: Filter | None = None, limit: int = 20, offset: int = 0) -> list[Hit]: ...

    def count(self, filter_dict: Filter | None = None) -> int: ...


def build_schema(dimension: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.utf8()),
        pa.field("vector", pa.list_(pa.float32(), dimension)),
        pa.field("text", pa.utf8()),
        pa.field("user_id", pa.utf8()),
        pa.field("created_at", pa.utf8()),
        pa.field("metadata", pa.utf8()),
    ])


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """Return the shared ``lancedb.DBConnection`` for *db_path* (thread-safe)."""
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def where_clause(filter_dict: Filter | None = None, ids: list[str] | None = None) -> str | None:
    """
    Translate a scalar filter and/or id list into a LanceDB ``WHERE`` string.

    Raises
    ------
    ValueError
        If the filter names a column that is not filterable.
    """
    clauses: list[str] = []
    for key, value in (filter_dict or {}).items():
        if key not in _FILTERABLE_COLUMNS:
            raise ValueError(f"Cannot filter on '{key}'; allowed: {sorted(_FILTERABLE_COLUMNS)}")
        clauses.append(f"{key} = {_quote(value)}")
    if ids:
        clauses.append(f"id IN ({', '.join(_quote(i) for i in ids)})")
    return " AND ".join(clauses) if clauses else None


class LanceVectorStore:
    """
    User-partitioned document store on a LanceDB table.

    Parameters
    ----------
    db_path
        Database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    dimension
        Fixed vector width.  Defaults to ``settings.VECTOR_SIZE``.
    """

    __slots__ = ("_db_path", "_table_name", "_dimension", "db", "table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, dimension: int | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._dimension: int = dimension or settings.VECTOR_SIZE
        self.db: lancedb.DBConnection | None = None
        self.table: lancedb.table.Table | None = None
        self._connect()


    def _connect(self) -> None:
        """Open (or re-use) the connection and open or create the table."""
        try:
            self.db = _get_connection(self._db_path)
            if self._table_name in self.db.table_names():
                self.table = self.db.open_table(self._table_name)
                logger.info("[STORE] Opened table '%s' (%d rows).", self._table_name, self.table.count_rows())
            else:
                self.table = self.db.create_table(self._table_name, schema=build_schema(self._dimension))
                logger.info("[STORE] Created table '%s' (dim=%d).", self._table_name, self._dimension)
        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise


    def _require_table(self) -> lancedb.table.Table:
        if self.table is None:
            raise RuntimeError("Vector table is not initialised.")
        return self.table

    # ══════════════════════════════════════════════════════════════════
    #  WRITE PATH
    # ══════════════════════════════════════════════════════════════════

    def upsert(self, points: list[Point]) -> int:
        """
        Insert *points*, replacing any existing row with the same ``id``.

        Raises
        ------
        ValueError
            If a vector's width differs from the table dimension.
        """
        if not points:
            return 0
        table = self._require_table()

        records: list[dict[str, Any]] = []
        for point in points:
            vector = [float(v) for v in point["vector"]]
            if len(vector) != self._dimension:
                raise ValueError(f"Vector for '{point['id']}' has {len(vector)} dims; table expects {self._dimension}.")
            metadata = dict(point.get("metadata") or {})
            records.append({"id": str(point["id"]), "vector": vector, "text": point["text"], "user_id": str(metadata.get("user_id", "")), "created_at": str(metadata.get("created_at", "")), "metadata": json.dumps(metadata, ensure_ascii=False, default=str)})

        table.merge_insert("id").when_matched_update_all().when_not_matched_insert_all().execute(records)
        logger.info("[STORE] Upserted %d point(s) into '%s'.", len(records), self._table_name)
        return len(records)


    def delete(self, filter_dict: Filter | None = None, ids: list[str] | None = None) -> None:
        """Delete rows matching *filter_dict* and/or *ids*.  Refuses an empty predicate."""
        where = where_clause(filter_dict, ids)
        if where is None:
            raise ValueError("delete() needs a filter or ids; refusing to delete every row.")
        self._require_table().delete(where)
        logger.info("[STORE] Deleted rows where %s", where)

    # ══════════════════════════════════════════════════════════════════
    #  READ PATH
    # ══════════════════════════════════════════════════════════════════

    def search(self, query_vector: list[float], limit: int = 5, filter_dict: Filter | None = None) -> list[Hit]:
        """
        Cosine-similarity search, best match first.

        Each hit is ``{"id", "text", "score", "metadata"}`` with
        ``score = 1 - cosine_distance``.
        """
        query = self._require_table().search(query_vector).distance_type("cosine").limit(limit)
        where = where_clause(filter_dict)
        if where:
            query = query.where(where, prefilter=True)

        rows = query.to_list()
        hits = [self._to_hit(row, score=1.0 - float(row.get("_distance", 1.0))) for row in rows]
        hits.sort(key=lambda h: h["score"], reverse=True)
        logger.debug("[STORE] Search (limit=%d, where=%s) → %d hit(s).", limit, where, len(hits))
        return hits


    def get(self, doc_id: str) -> Hit | None:
        rows = self._scan(where_clause(ids=[doc_id]), limit=1)
        return self._to_hit(rows[0], score=1.0) if rows else None


    def scroll(self, filter_dict: Filter | None = None, limit: int = 20, offset: int = 0) -> list[Hit]:
        """Page through rows in storage order."""
        rows = self._scan(where_clause(filter_dict), limit=offset + limit)
        return [self._to_hit(row, score=1.0) for row in rows[offset:offset + limit]]


    def count(self, filter_dict: Filter | None = None) -> int:
        table = self._require_table()
        where = where_clause(filter_dict)
        return table.count_rows(where) if where else table.count_rows()


    def _scan(self, where: str | None, limit: int) -> list[dict[str, Any]]:
        query = self._require_table().search()
        if where:
            query = query.where(where)
        return query.limit(min(limit, _SCAN_LIMIT)).to_list()


    @staticmethod
    def _to_hit(row: dict[str, Any], score: float) -> Hit:
        try:
            metadata = json.loads(row.get("metadata") or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return {"id": row["id"], "text": row.get("text", ""), "score": score, "metadata": metadata}

    # ══════════════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════════════

    def drop_table(self) -> None:
        """Drop the table (re-ingestion / tests)."""
        if self.db is None:
            logger.warning("No database connection; nothing to drop.")
            return
        try:
            self.db.drop_table(self._table_name)
            self.table = None
            logger.info("[STORE] Dropped table '%s'.", self._table_name)
        except ValueError:
            logger.warning("Table '%s' does not exist, nothing to drop.", self._table_name)


    def __repr__(self) -> str:
        return f"LanceVectorStore(db='{self._db_path}', table='{self._table_name}', dim={self._dimension})"
