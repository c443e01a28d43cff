"""Tests for the cache storage module."""

import sqlite3
from pathlib import Path

import pytest

from offlineproxy.models import CacheEntryKey, Request, Response
from offlineproxy.store import CacheStorage, StoreError, init_storage


def _response(body: bytes = b"hello", status: int = 200, headers: dict | None = None) -> Response:
    return Response(status=status, reason="OK", headers=dict(headers or {"Content-Type": "text/plain"}), body=body)


def _get(url: str, headers: dict | None = None) -> Request:
    return Request(method="GET", url=url, headers=dict(headers or {}))


class TestInitStorage:
    """Tests for init_storage function."""

    def test_creates_database_file(self, tmp_path: Path) -> None:
        """Database file is created at specified path."""
        db_path = tmp_path / "cache.db"
        conn = init_storage(str(db_path))
        conn.close()
        assert db_path.exists()

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Parent directories are created if they don't exist."""
        nested = tmp_path / "nested" / "dir" / "cache.db"
        conn = init_storage(str(nested))
        conn.close()
        assert nested.exists()

    def test_creates_tables(self, db_conn: sqlite3.Connection) -> None:
        """Caches and entries tables exist."""
        rows = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        tables = {row[0] for row in rows}
        assert {"caches", "entries"} <= tables

    def test_accepts_memory_database(self) -> None:
        """In-memory storage is supported."""
        conn = init_storage(":memory:")
        assert CacheStorage(conn, "gen-1").names() == []
        conn.close()

    def test_idempotent_initialization(self, tmp_path: Path) -> None:
        """Multiple init calls don't cause errors or lose data."""
        db_path = str(tmp_path / "cache.db")
        conn1 = init_storage(db_path)
        CacheStorage(conn1, "gen-1").open().put(_get("http://app.test/"), _response())
        conn1.close()

        conn2 = init_storage(db_path)
        assert CacheStorage(conn2, "gen-1").open().count() == 1
        conn2.close()


class TestCacheStore:
    """Tests for a single named cache store."""

    def test_match_miss_returns_none(self, db_conn: sqlite3.Connection) -> None:
        """Unknown key is a miss."""
        store = CacheStorage(db_conn, "gen-1").open()
        assert store.match(_get("http://app.test/missing")) is None

    def test_put_then_match(self, db_conn: sqlite3.Connection) -> None:
        """Stored response is returned with status, headers and body."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/a"), _response(b"body-a", headers={"Content-Type": "text/css"}))

        cached = store.match(_get("http://app.test/a"))

        assert cached is not None
        assert cached.status == 200
        assert cached.body == b"body-a"
        assert cached.header("content-type") == "text/css"

    def test_put_overwrites_same_key(self, db_conn: sqlite3.Connection) -> None:
        """Writing a key again replaces the entry instead of duplicating it."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/a"), _response(b"first"))
        store.put(_get("http://app.test/a"), _response(b"second"))

        assert store.count() == 1
        assert store.match(_get("http://app.test/a")).body == b"second"

    def test_fragment_is_not_part_of_key(self, db_conn: sqlite3.Connection) -> None:
        """URLs differing only by fragment share an entry."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/page#top"), _response(b"page"))

        assert store.match(_get("http://app.test/page#bottom")).body == b"page"

    def test_query_string_is_part_of_key(self, db_conn: sqlite3.Connection) -> None:
        """Different query strings are different keys."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/data?page=1"), _response(b"one"))

        assert store.match(_get("http://app.test/data?page=2")) is None

    def test_method_is_part_of_key(self, db_conn: sqlite3.Connection) -> None:
        """A GET entry does not answer another method."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/a"), _response())

        assert store.match(Request(method="HEAD", url="http://app.test/a")) is None

    def test_vary_header_must_match(self, db_conn: sqlite3.Connection) -> None:
        """Content negotiation headers named by Vary must match the stored request."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(
            _get("http://app.test/data", {"Accept": "application/json"}),
            _response(b"{}", headers={"Vary": "Accept"}),
        )

        assert store.match(_get("http://app.test/data", {"accept": "application/json"})) is not None
        assert store.match(_get("http://app.test/data", {"Accept": "text/html"})) is None
        assert store.match(_get("http://app.test/data")) is None

    def test_vary_variants_are_stored_side_by_side(self, db_conn: sqlite3.Connection) -> None:
        """Two negotiated variants of one URL are both kept and matched separately."""
        store = CacheStorage(db_conn, "gen-1").open()
        json_req = _get("http://app.test/api/data", {"Accept": "application/json"})
        csv_req = _get("http://app.test/api/data", {"Accept": "text/csv"})
        store.put(json_req, _response(b"{}", headers={"Vary": "Accept"}))
        store.put(csv_req, _response(b"a,b", headers={"Vary": "Accept"}))

        assert store.count() == 2
        assert store.match(json_req).body == b"{}"
        assert store.match(csv_req).body == b"a,b"

    def test_put_replaces_only_matching_variant(self, db_conn: sqlite3.Connection) -> None:
        """Rewriting one variant leaves the other untouched."""
        store = CacheStorage(db_conn, "gen-1").open()
        json_req = _get("http://app.test/api/data", {"Accept": "application/json"})
        csv_req = _get("http://app.test/api/data", {"Accept": "text/csv"})
        store.put(json_req, _response(b"{}", headers={"Vary": "Accept"}))
        store.put(csv_req, _response(b"a,b", headers={"Vary": "Accept"}))

        store.put(json_req, _response(b'{"v": 2}', headers={"Vary": "Accept"}))

        assert store.count() == 2
        assert store.match(json_req).body == b'{"v": 2}'
        assert store.match(csv_req).body == b"a,b"

    def test_delete_removes_only_matching_variant(self, db_conn: sqlite3.Connection) -> None:
        store = CacheStorage(db_conn, "gen-1").open()
        json_req = _get("http://app.test/api/data", {"Accept": "application/json"})
        csv_req = _get("http://app.test/api/data", {"Accept": "text/csv"})
        store.put(json_req, _response(b"{}", headers={"Vary": "Accept"}))
        store.put(csv_req, _response(b"a,b", headers={"Vary": "Accept"}))

        assert store.delete(json_req) is True

        assert store.match(json_req) is None
        assert store.match(csv_req).body == b"a,b"

    def test_vary_star_is_rejected(self, db_conn: sqlite3.Connection) -> None:
        """Vary: * responses can never match and are refused."""
        store = CacheStorage(db_conn, "gen-1").open()
        with pytest.raises(StoreError, match="Vary"):
            store.put(_get("http://app.test/a"), _response(headers={"Vary": "*"}))
        assert store.count() == 0

    def test_put_all_is_atomic(self, db_conn: sqlite3.Connection) -> None:
        """A rejected entry leaves no entries from the batch behind."""
        store = CacheStorage(db_conn, "gen-1").open()
        pairs = [
            (_get("http://app.test/a"), _response()),
            (_get("http://app.test/b"), _response(headers={"Vary": "*"})),
        ]
        with pytest.raises(StoreError):
            store.put_all(pairs)
        assert store.count() == 0

    def test_delete_entry(self, db_conn: sqlite3.Connection) -> None:
        """Deleting an entry reports whether it existed."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/a"), _response())

        assert store.delete(_get("http://app.test/a")) is True
        assert store.delete(_get("http://app.test/a")) is False
        assert store.match(_get("http://app.test/a")) is None

    def test_keys_lists_entries(self, db_conn: sqlite3.Connection) -> None:
        """keys() returns one key per entry."""
        store = CacheStorage(db_conn, "gen-1").open()
        store.put(_get("http://app.test/b"), _response())
        store.put(_get("http://app.test/a"), _response())

        assert store.keys() == [
            CacheEntryKey(method="GET", url="http://app.test/a"),
            CacheEntryKey(method="GET", url="http://app.test/b"),
        ]

    def test_generations_are_isolated(self, db_conn: sqlite3.Connection) -> None:
        """The same key in two generations holds two independent entries."""
        old = CacheStorage(db_conn, "gen-1").open()
        new = CacheStorage(db_conn, "gen-2").open()
        old.put(_get("http://app.test/a"), _response(b"old"))

        assert new.match(_get("http://app.test/a")) is None
        new.put(_get("http://app.test/a"), _response(b"new"))
        assert old.match(_get("http://app.test/a")).body == b"old"

    def test_put_into_deleted_store_fails(self, db_conn: sqlite3.Connection) -> None:
        """A store removed by a sweep no longer accepts writes."""
        store = CacheStorage(db_conn, "gen-1").open()
        CacheStorage(db_conn, "gen-2").delete("gen-1")

        with pytest.raises(StoreError, match="has been deleted"):
            store.put(_get("http://app.test/a"), _response())
        count = db_conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        assert count == 0

    def test_read_failure_raises_store_error(self, tmp_path: Path) -> None:
        """SQLite errors surface as StoreError."""
        conn = init_storage(str(tmp_path / "cache.db"))
        store = CacheStorage(conn, "gen-1").open()
        conn.close()

        with pytest.raises(StoreError):
            store.match(_get("http://app.test/a"))


class TestCacheStorage:
    """Tests for the cache-store manager."""

    def test_rejects_empty_generation(self, db_conn: sqlite3.Connection) -> None:
        """A generation identifier is required."""
        with pytest.raises(StoreError, match="cannot be empty"):
            CacheStorage(db_conn, "")

    def test_open_creates_store(self, db_conn: sqlite3.Connection) -> None:
        """Opening the current generation registers its name."""
        storage = CacheStorage(db_conn, "gen-1")
        assert not storage.has("gen-1")

        storage.open()

        assert storage.has("gen-1")
        assert storage.names() == ["gen-1"]

    def test_open_is_idempotent(self, db_conn: sqlite3.Connection) -> None:
        """Opening twice keeps one store and its entries."""
        storage = CacheStorage(db_conn, "gen-1")
        storage.open().put(_get("http://app.test/a"), _response())
        storage.open()

        assert storage.names() == ["gen-1"]
        assert storage.open().count() == 1

    def test_delete_refuses_current_generation(self, db_conn: sqlite3.Connection) -> None:
        """The current generation cannot be deleted through delete()."""
        storage = CacheStorage(db_conn, "gen-1")
        storage.open()

        with pytest.raises(StoreError, match="current generation"):
            storage.delete("gen-1")
        assert storage.has("gen-1")

    def test_delete_other_generation(self, db_conn: sqlite3.Connection) -> None:
        """Deleting another generation removes the store and its entries."""
        CacheStorage(db_conn, "gen-1").open().put(_get("http://app.test/a"), _response())
        storage = CacheStorage(db_conn, "gen-2")

        assert storage.delete("gen-1") is True
        assert storage.delete("gen-1") is False
        count = db_conn.execute("SELECT COUNT(*) FROM entries WHERE cache_name = 'gen-1'").fetchone()[0]
        assert count == 0

    def test_sweep_leaves_only_current(self, db_conn: sqlite3.Connection) -> None:
        """Sweep deletes every store not named after the current generation."""
        for name in ("gen-1", "gen-2", "other-app-cache"):
            CacheStorage(db_conn, name).open().put(_get("http://app.test/a"), _response())
        storage = CacheStorage(db_conn, "gen-3")
        storage.open()

        deleted, failed = storage.sweep()

        assert sorted(deleted) == ["gen-1", "gen-2", "other-app-cache"]
        assert failed == []
        assert storage.names() == ["gen-3"]

    def test_sweep_reports_failures_without_raising(self, db_conn: sqlite3.Connection) -> None:
        """A store that cannot be deleted is reported and the sweep goes on."""
        CacheStorage(db_conn, "gen-1").open()
        CacheStorage(db_conn, "gen-2").open()
        storage = CacheStorage(db_conn, "gen-3")
        original_delete = storage.delete

        def flaky_delete(name: str) -> bool:
            if name == "gen-1":
                raise StoreError("database is locked")
            return original_delete(name)

        storage.delete = flaky_delete  # type: ignore[method-assign]

        deleted, failed = storage.sweep()

        assert deleted == ["gen-2"]
        assert failed == ["gen-1"]
        assert storage.has("gen-1")

    def test_discard_current(self, db_conn: sqlite3.Connection) -> None:
        """discard_current() drops the current generation's store."""
        storage = CacheStorage(db_conn, "gen-1")
        storage.open().put(_get("http://app.test/a"), _response())

        assert storage.discard_current() is True
        assert storage.names() == []

    def test_describe_counts_entries(self, db_conn: sqlite3.Connection) -> None:
        """describe() summarizes each generation."""
        storage = CacheStorage(db_conn, "gen-1")
        store = storage.open()
        store.put(_get("http://app.test/a"), _response())
        store.put(_get("http://app.test/b"), _response())
        CacheStorage(db_conn, "gen-0").open()

        summary = {g.name: g.entries for g in storage.describe()}

        assert summary == {"gen-1": 2, "gen-0": 0}
