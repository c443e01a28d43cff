"""URL validation for requests forwarded by the proxy."""

import logging
from collections.abc import Sequence
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Blocked ports (common internal services)
BLOCKED_PORTS = [
    22,  # SSH
    23,  # Telnet
    25,  # SMTP
    3306,  # MySQL
    5432,  # PostgreSQL
    6379,  # Redis
    27017,  # MongoDB
    9200,  # Elasticsearch
    9300,  # Elasticsearch
]


class ProxyURLError(Exception):
    """Raised when a URL may not be forwarded by the proxy."""

    pass


def origin_of(url: str) -> str:
    """Return the scheme://host[:port] origin of a URL, lower-cased."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def validate_proxy_url(url: str, allowed_origins: Sequence[str] = ()) -> None:
    """Validate a URL before the proxy forwards a request to it.

    Args:
        url: Absolute URL requested by the application.
        allowed_origins: Origins the proxy may reach. Empty means any origin.

    Raises:
        ProxyURLError: If the URL must not be forwarded.
    """
    try:
        parsed = urlparse(url)
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError as e:
        raise ProxyURLError(f"Invalid URL: {e}")

    # Only allow HTTP/HTTPS
    if parsed.scheme not in ("http", "https"):
        raise ProxyURLError(f"Scheme '{parsed.scheme}' not allowed. Only http:// and https:// are permitted.")

    if not parsed.hostname:
        raise ProxyURLError("No hostname in URL")

    if port in BLOCKED_PORTS:
        raise ProxyURLError(f"Port {port} is blocked for security reasons")

    if allowed_origins:
        origin = origin_of(url)
        if origin not in {o.rstrip("/").lower() for o in allowed_origins}:
            logger.warning("Blocked request to origin outside allow list: %s", origin)
            raise ProxyURLError(f"Origin '{origin}' is not in the allowed origins")
