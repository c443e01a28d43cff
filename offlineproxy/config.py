"""Configuration loader with type-safe dataclasses."""

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .network import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT
from .proxy import WRITE_MODE_AWAIT, WRITE_MODES


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_GENERATION_PREFIX = "controlfin-cache"

# Origin of the controlfin client during local development.
DEFAULT_BASE_URL = "http://localhost:3000"

# Assets the controlfin client needs to start offline.
DEFAULT_MANIFEST = (
    "./",
    "./index.html",
    "./index.tsx",
    "./manifest.json",
    "./icon-192x192.png",
    "./icon-512x512.png",
    "https://cdn.tailwindcss.com",
    "https://rsms.me/inter/inter.css",
    "https://www.transparenttextures.com/patterns/stardust.png",
)


def compute_generation(manifest: list[str] | tuple[str, ...], prefix: str = DEFAULT_GENERATION_PREFIX) -> str:
    """Compute a generation identifier from the manifest contents.

    Changing the manifest yields a new generation, so old caches are swept
    without a manual version bump.
    """
    content_hash = hashlib.sha256("\n".join(manifest).encode()).hexdigest()[:8]
    return f"{prefix}-{content_hash}"


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for the cache generation and its manifest.

    - generation: Identifier of the current generation. Bump it to invalidate
      every cached response. Computed from the manifest when not set.
    - manifest: Assets fetched eagerly at install time, relative paths or absolute URLs.
    - base_url: Application origin that relative manifest entries and
      origin-relative requests resolve against.
    - fallback: Manifest entry served when a read miss cannot reach the network.
    - write_mode: "await" (write before responding) or "background".
    """

    manifest: list[str] = field(default_factory=lambda: list(DEFAULT_MANIFEST))
    generation: str = ""
    base_url: str | None = DEFAULT_BASE_URL
    fallback: str | None = None
    write_mode: str = WRITE_MODE_AWAIT

    def __post_init__(self) -> None:
        if not isinstance(self.manifest, list):
            raise ConfigError("Cache manifest must be a list")
        if not all(isinstance(entry, str) and entry for entry in self.manifest):
            raise ConfigError("Cache manifest entries must be non-empty strings")
        if not self.generation:
            object.__setattr__(self, "generation", compute_generation(self.manifest))
        if self.base_url is not None and not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"Cache base_url must start with http:// or https://, got '{self.base_url}'")
        relative = [entry for entry in self.manifest if not entry.startswith(("http://", "https://"))]
        if relative and self.base_url is None:
            raise ConfigError(f"Cache base_url is required for relative manifest entries: {relative}")
        if self.fallback is not None and self.fallback not in self.manifest:
            raise ConfigError(f"Cache fallback '{self.fallback}' must be one of the manifest entries")
        if self.write_mode not in WRITE_MODES:
            raise ConfigError(f"Cache write_mode must be one of {WRITE_MODES}, got '{self.write_mode}'")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for outbound requests."""

    timeout: float = DEFAULT_TIMEOUT  # seconds before a request without a response fails
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("Network user_agent cannot be empty")


def _get_default_storage_path() -> str:
    """Get the default cache database path (XDG-compliant user data directory)."""
    home = Path.home()
    return str(home / ".local" / "share" / "offlineproxy" / "cache.db")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the SQLite cache storage."""

    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the HTTP proxy front end."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8899
    allowed_origins: list[str] = field(default_factory=list)  # empty: any origin

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")
        if not isinstance(self.allowed_origins, list):
            raise ConfigError("Server allowed_origins must be a list")
        for origin in self.allowed_origins:
            if not str(origin).startswith(("http://", "https://")):
                raise ConfigError(f"Allowed origin must start with http:// or https://, got '{origin}'")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain a 'cache' section")
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    manifest = data.get("manifest", list(DEFAULT_MANIFEST))
    if not isinstance(manifest, list):
        raise ConfigError("'cache.manifest' must be a list")

    base_url = data.get("base_url", DEFAULT_BASE_URL)
    fallback = data.get("fallback")

    return CacheConfig(
        manifest=[str(entry) for entry in manifest],
        generation=str(data.get("generation") or ""),
        base_url=str(base_url) if base_url is not None else None,
        fallback=str(fallback) if fallback is not None else None,
        write_mode=str(data.get("write_mode", WRITE_MODE_AWAIT)),
    )


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network' section must be a dictionary")

    return NetworkConfig(
        timeout=float(data.get("timeout", DEFAULT_TIMEOUT)),
        user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_STORAGE_PATH))))


def _parse_server_config(data: dict | None) -> ServerConfig:
    """Parse server configuration section."""
    if data is None:
        return ServerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'server' section must be a dictionary")

    allowed_origins = data.get("allowed_origins", [])
    if not isinstance(allowed_origins, list):
        raise ConfigError("'server.allowed_origins' must be a list")

    return ServerConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "127.0.0.1")),
        port=int(data.get("port", 8899)),
        allowed_origins=[str(origin) for origin in allowed_origins],
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - OFFLINEPROXY_GENERATION: Override cache.generation
    - OFFLINEPROXY_BASE_URL: Override cache.base_url
    - OFFLINEPROXY_SERVER_PORT: Override server.port
    - OFFLINEPROXY_STORAGE_PATH: Override storage.path
    - OFFLINEPROXY_NETWORK_TIMEOUT: Override network.timeout
    """
    for section in ("cache", "network", "storage", "server"):
        if config_data.get(section) is None:
            config_data[section] = {}
        elif not isinstance(config_data[section], dict):
            raise ConfigError(f"'{section}' section must be a dictionary")

    generation = os.environ.get("OFFLINEPROXY_GENERATION")
    if generation is not None:
        config_data["cache"]["generation"] = generation

    base_url = os.environ.get("OFFLINEPROXY_BASE_URL")
    if base_url is not None:
        config_data["cache"]["base_url"] = base_url

    server_port = os.environ.get("OFFLINEPROXY_SERVER_PORT")
    if server_port is not None:
        try:
            config_data["server"]["port"] = int(server_port)
        except ValueError:
            raise ConfigError(f"OFFLINEPROXY_SERVER_PORT must be an integer, got '{server_port}'")

    storage_path = os.environ.get("OFFLINEPROXY_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    timeout = os.environ.get("OFFLINEPROXY_NETWORK_TIMEOUT")
    if timeout is not None:
        try:
            config_data["network"]["timeout"] = float(timeout)
        except ValueError:
            raise ConfigError(f"OFFLINEPROXY_NETWORK_TIMEOUT must be a number, got '{timeout}'")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    if "cache" not in data:
        raise ConfigError("Configuration must contain a 'cache' section")

    data = _apply_env_overrides(data)

    try:
        return Config(
            cache=_parse_cache_config(data.get("cache")),
            network=_parse_network_config(data.get("network")),
            storage=_parse_storage_config(data.get("storage")),
            server=_parse_server_config(data.get("server")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
