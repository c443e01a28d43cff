"""Shared fixtures: an in-process network double and cache storage."""

import sqlite3
from pathlib import Path

import pytest

from offlineproxy.models import Request, Response
from offlineproxy.network import NetworkError
from offlineproxy.store import init_storage

BASE_URL = "http://app.test/"


class FakeNetwork:
    """Network double serving canned responses by URL.

    Unknown URLs answer 404. Setting ``offline`` makes every fetch fail the
    way a real network failure does.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Response | Exception] = {}
        self.calls: list[Request] = []
        self.offline = False

    def add(self, url: str, body: bytes = b"", status: int = 200, headers: dict | None = None) -> None:
        reason = {200: "OK", 301: "Moved Permanently", 404: "Not Found", 500: "Internal Server Error"}.get(status, "")
        self.routes[url] = Response(status=status, reason=reason, headers=dict(headers or {}), body=body, url=url)

    def fail(self, url: str, message: str = "connection refused") -> None:
        self.routes[url] = NetworkError(message)

    def calls_to(self, url: str) -> int:
        return sum(1 for call in self.calls if call.cache_url == url)

    def fetch(self, request: Request) -> Response:
        self.calls.append(request)
        if self.offline:
            raise NetworkError(f"offline: {request.url}")
        route = self.routes.get(request.cache_url)
        if route is None:
            return Response(status=404, reason="Not Found", headers={}, body=b"", url=request.url)
        if isinstance(route, Exception):
            raise route
        return route.clone()

    def close(self) -> None:
        pass


@pytest.fixture
def network() -> FakeNetwork:
    """Network double with the manifest assets routed."""
    fake = FakeNetwork()
    fake.add(BASE_URL, b"<html>app</html>", headers={"Content-Type": "text/html"})
    fake.add(BASE_URL + "index.html", b"<html>index</html>", headers={"Content-Type": "text/html"})
    fake.add(BASE_URL + "app.js", b"console.log('app')", headers={"Content-Type": "text/javascript"})
    fake.add("https://cdn.example.com/style.css", b"body{}", headers={"Content-Type": "text/css"})
    return fake


@pytest.fixture
def manifest() -> list[str]:
    return ["./", "./index.html", "./app.js", "https://cdn.example.com/style.css"]


@pytest.fixture
def db_conn(tmp_path: Path) -> sqlite3.Connection:
    """Create a cache database with initialized tables."""
    conn = init_storage(str(tmp_path / "cache.db"))
    yield conn
    conn.close()
