"""SQLite-backed cache generations.

Each generation is a named store of request -> response entries. The set of
stores lives in one database file and outlives any single proxy instance, so
every access goes through a CacheStorage bound to the generation its owner
is allowed to treat as current.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import CacheEntryKey, CacheGeneration, Request, Response

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a cache store operation fails."""

    pass


# SQLite allows concurrent reads but only one writer at a time.
# The lock serializes access from the lifecycle worker and request threads.
_db_lock = threading.Lock()


def init_storage(db_path: str) -> sqlite3.Connection:
    """Initialize the cache database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StoreError: If database initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS caches (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                cache_name TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                vary_values TEXT NOT NULL,
                status INTEGER NOT NULL,
                reason TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                response_url TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (cache_name, method, url, vary_values)
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StoreError(f"Failed to initialize cache storage: {e}")
    except OSError as e:
        raise StoreError(f"Failed to create cache storage directory: {e}")


def _vary_matches(vary_values: str, request: Request) -> bool:
    """Whether a request carries the header values a stored entry varied on."""
    for header, expected in json.loads(vary_values).items():
        if request.header(header) != expected:
            return False
    return True


class CacheStore:
    """A single named cache generation.

    Keys are (method, URL without fragment, values of the request headers
    named by the response's Vary). Several variants of one URL can be stored
    side by side; writing a request replaces only the variants it matches.
    """

    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self._conn = conn
        self.name = name

    def _row_for(self, request: Request, response: Response) -> tuple:
        vary = response.vary
        if "*" in vary:
            raise StoreError(f"Response for {request.cache_url} has 'Vary: *' and cannot be cached")
        vary_values = {header.lower(): request.header(header) for header in vary}
        return (
            self.name,
            request.method.upper(),
            request.cache_url,
            json.dumps(vary_values, sort_keys=True),
            response.status,
            response.reason,
            json.dumps(response.headers),
            response.body,
            response.url,
            datetime.now(UTC).isoformat(),
        )

    def _variants(self, request: Request) -> list[sqlite3.Row]:
        """Rows stored for the request's method and URL. Caller holds _db_lock."""
        return self._conn.execute(
            """
            SELECT vary_values, status, reason, headers, body, response_url
            FROM entries
            WHERE cache_name = ? AND method = ? AND url = ?
            ORDER BY stored_at
            """,
            (self.name, request.method.upper(), request.cache_url),
        ).fetchall()

    def _delete_matching(self, request: Request) -> int:
        """Delete the variants a request matches. Caller holds _db_lock."""
        deleted = 0
        for row in self._variants(request):
            if _vary_matches(row["vary_values"], request):
                cursor = self._conn.execute(
                    "DELETE FROM entries WHERE cache_name = ? AND method = ? AND url = ? AND vary_values = ?",
                    (self.name, request.method.upper(), request.cache_url, row["vary_values"]),
                )
                deleted += cursor.rowcount
        return deleted

    def match(self, request: Request) -> Response | None:
        """Look up the stored response for a request.

        Returns:
            The stored Response whose Vary headers the request matches, or
            None on a miss.

        Raises:
            StoreError: If the lookup fails.
        """
        try:
            with _db_lock:
                rows = self._variants(request)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read from cache '{self.name}': {e}")

        for row in rows:
            if _vary_matches(row["vary_values"], request):
                return Response(
                    status=row["status"],
                    reason=row["reason"],
                    headers=json.loads(row["headers"]),
                    body=bytes(row["body"]),
                    url=row["response_url"],
                )

        if rows:
            logger.debug("Vary mismatch for %s", request.cache_url)
        return None

    def put(self, request: Request, response: Response) -> None:
        """Store a response for a request, replacing the variants the request matches.

        Raises:
            StoreError: If the response cannot be stored.
        """
        self.put_all([(request, response)])

    def put_all(self, pairs: Iterable[tuple[Request, Response]]) -> None:
        """Store several entries in a single transaction.

        Either every entry is written or none is.

        Raises:
            StoreError: If any entry cannot be stored.
        """
        entries = [(request, self._row_for(request, response)) for request, response in pairs]
        try:
            with _db_lock:
                exists = self._conn.execute("SELECT 1 FROM caches WHERE name = ?", (self.name,)).fetchone()
                if exists is None:
                    raise StoreError(f"Cache '{self.name}' has been deleted")
                try:
                    for request, row in entries:
                        self._delete_matching(request)
                        self._conn.execute(
                            """
                            INSERT OR REPLACE INTO entries
                            (cache_name, method, url, vary_values, status, reason, headers, body,
                             response_url, stored_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            row,
                        )
                    self._conn.commit()
                except sqlite3.Error:
                    self._conn.rollback()
                    raise
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write to cache '{self.name}': {e}")

    def delete(self, request: Request) -> bool:
        """Delete the entries a request matches.

        Returns:
            True if an entry was removed.
        """
        try:
            with _db_lock:
                deleted = self._delete_matching(request)
                self._conn.commit()
                return deleted > 0
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete from cache '{self.name}': {e}")

    def keys(self) -> list[CacheEntryKey]:
        """Return the keys of all entries, ordered by URL."""
        try:
            with _db_lock:
                rows = self._conn.execute(
                    "SELECT method, url FROM entries WHERE cache_name = ? ORDER BY url, method",
                    (self.name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list cache '{self.name}': {e}")
        return [CacheEntryKey(method=row["method"], url=row["url"]) for row in rows]

    def count(self) -> int:
        """Return the number of entries in this store."""
        try:
            with _db_lock:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM entries WHERE cache_name = ?",
                    (self.name,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to count cache '{self.name}': {e}")
        return row[0]


class CacheStorage:
    """Manager for the named cache stores, bound to one current generation.

    The owner may open and write only the current generation. Other
    generations can be listed, and removed wholesale by sweep().
    """

    def __init__(self, conn: sqlite3.Connection, generation: str) -> None:
        if not generation:
            raise StoreError("Generation identifier cannot be empty")
        self._conn = conn
        self.generation = generation

    def open(self) -> CacheStore:
        """Open the current generation's store, creating it if absent."""
        try:
            with _db_lock:
                self._conn.execute(
                    "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
                    (self.generation, datetime.now(UTC).isoformat()),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open cache '{self.generation}': {e}")
        return CacheStore(self._conn, self.generation)

    def has(self, name: str) -> bool:
        """Check whether a store with this name exists."""
        return name in self.names()

    def names(self) -> list[str]:
        """Return the names of all existing stores, oldest first."""
        try:
            with _db_lock:
                rows = self._conn.execute("SELECT name FROM caches ORDER BY created_at, name").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list caches: {e}")
        return [row["name"] for row in rows]

    def describe(self) -> list[CacheGeneration]:
        """Return a summary of every stored generation."""
        try:
            with _db_lock:
                rows = self._conn.execute(
                    """
                    SELECT c.name, c.created_at, COUNT(e.url) AS entries
                    FROM caches c
                    LEFT JOIN entries e ON e.cache_name = c.name
                    GROUP BY c.name, c.created_at
                    ORDER BY c.created_at, c.name
                    """
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to describe caches: {e}")
        return [
            CacheGeneration(
                name=row["name"],
                entries=row["entries"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def delete(self, name: str) -> bool:
        """Delete a whole store and all of its entries.

        Returns:
            True if the store existed.

        Raises:
            StoreError: If name is the current generation or the delete fails.
        """
        if name == self.generation:
            raise StoreError(f"Refusing to delete the current generation '{name}'")
        return self._drop(name)

    def discard_current(self) -> bool:
        """Drop the current generation's store (used to undo a failed install)."""
        return self._drop(self.generation)

    def _drop(self, name: str) -> bool:
        try:
            with _db_lock:
                try:
                    self._conn.execute("DELETE FROM entries WHERE cache_name = ?", (name,))
                    cursor = self._conn.execute("DELETE FROM caches WHERE name = ?", (name,))
                    self._conn.commit()
                except sqlite3.Error:
                    self._conn.rollback()
                    raise
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete cache '{name}': {e}")

    def sweep(self) -> tuple[list[str], list[str]]:
        """Delete every store whose name is not the current generation.

        Failures are logged and reported, never raised, so a stale store that
        cannot be removed now is retried on the next sweep.

        Returns:
            Tuple of (deleted_names, failed_names).
        """
        deleted: list[str] = []
        failed: list[str] = []
        for name in self.names():
            if name == self.generation:
                continue
            try:
                self.delete(name)
                logger.info("Deleted old cache: %s", name)
                deleted.append(name)
            except StoreError as e:
                logger.error("Failed to delete old cache %s: %s", name, e)
                failed.append(name)
        return deleted, failed
