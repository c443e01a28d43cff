"""Network fetches for cache misses, pass-through requests and manifest population."""

import logging

import requests

from .models import Request, Response

logger = logging.getLogger(__name__)

# Default request timeout in seconds. A request that never resolves would
# otherwise leave the intercepted request hanging forever.
DEFAULT_TIMEOUT = 30.0

DEFAULT_USER_AGENT = "offlineproxy/0.1"

# Headers describing a single connection or the transfer encoding.
# The body handed back by requests is already decoded and complete, so these
# no longer describe it and must not be replayed or stored.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}
_STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "accept-encoding"}


class NetworkError(Exception):
    """Raised when a request gets no response at all (offline, DNS, timeout)."""

    pass


class Network:
    """Thin wrapper over a requests session returning fully read responses."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, user_agent: str | None = None) -> None:
        """Initialize the network client.

        Args:
            timeout: Seconds to wait for a response before giving up.
            user_agent: User-Agent used when the request does not carry one.
        """
        self.timeout = timeout
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self._session = requests.Session()

    def fetch(self, request: Request) -> Response:
        """Issue a request and read the whole response.

        Any HTTP status is returned as a Response; only the absence of a
        response raises.

        Raises:
            NetworkError: On connection failure, DNS failure, timeout or TLS error.
        """
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _STRIPPED_REQUEST_HEADERS}
        if not any(k.lower() == "user-agent" for k in headers):
            headers["User-Agent"] = self.user_agent

        try:
            resp = self._session.request(
                request.method,
                request.cache_url,
                headers=headers,
                data=request.body,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timed out after {self.timeout}s fetching {request.url}") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Connection failed for {request.url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed for {request.url}: {e}") from e

        logger.debug("%s %s -> %d", request.method, request.url, resp.status_code)

        return Response(
            status=resp.status_code,
            reason=resp.reason or "",
            headers={k: v for k, v in resp.headers.items() if k.lower() not in _STRIPPED_RESPONSE_HEADERS},
            body=resp.content,
            url=resp.url,
        )

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()
