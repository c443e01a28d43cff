"""Data models for intercepted requests and cached responses."""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urldefrag

# The only method the proxy intercepts. Everything else goes straight to the network.
READ_METHOD = "GET"


def _find_header(headers: dict[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


@dataclass(frozen=True)
class Request:
    """An outbound request issued by the application.

    Attributes:
        method: HTTP method, upper case.
        url: Absolute URL of the resource.
        headers: Request headers as sent by the application.
        body: Request body for mutating requests, or None.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def is_read(self) -> bool:
        """Whether the request is eligible for interception."""
        return self.method.upper() == READ_METHOD

    @property
    def cache_url(self) -> str:
        """URL used as the cache key (fragment removed)."""
        return urldefrag(self.url).url

    def header(self, name: str) -> str | None:
        return _find_header(self.headers, name)


@dataclass(frozen=True)
class Response:
    """A fully read response, either from the network or from a cache store.

    Attributes:
        status: HTTP status code.
        reason: HTTP reason phrase (e.g., "OK", "Not Found").
        headers: Response headers (transport headers already stripped).
        body: Complete response body.
        url: Final URL the response was served from.
    """

    status: int
    reason: str
    headers: dict[str, str]
    body: bytes
    url: str = ""

    @property
    def ok(self) -> bool:
        """Whether the status is in the 2xx range."""
        return 200 <= self.status < 300

    @property
    def vary(self) -> list[str]:
        """Header names listed in the Vary response header."""
        raw = self.header("Vary")
        if not raw:
            return []
        return [name.strip() for name in raw.split(",") if name.strip()]

    def header(self, name: str) -> str | None:
        return _find_header(self.headers, name)

    def clone(self) -> "Response":
        """Return an independent copy of this response.

        One copy goes back to the caller and the other into a cache store,
        so neither may share mutable state with the other.
        """
        return dataclasses.replace(self, headers=dict(self.headers))


@dataclass(frozen=True)
class CacheEntryKey:
    """Identity of an entry inside a cache generation."""

    method: str
    url: str


@dataclass(frozen=True)
class CacheGeneration:
    """Summary of a stored cache generation.

    Attributes:
        name: Generation identifier.
        entries: Number of cached entries.
        created_at: When the store was first opened.
    """

    name: str
    entries: int
    created_at: datetime
