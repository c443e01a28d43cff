"""Cache-first offline proxy with an explicit install/activate lifecycle.

One OfflineProxy instance represents one generation of the application's
cache. It moves through a fixed sequence of states:

    UNINSTALLED -> INSTALLING -> INSTALLED -> ACTIVATING -> ACTIVE -> REDUNDANT

Install populates the generation from the manifest (all or nothing).
Activate removes every other generation. Only an ACTIVE proxy answers
read requests; everything else passes straight through to the network.
"""

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from urllib.parse import urljoin

from .models import Request, Response
from .network import Network, NetworkError
from .store import CacheStorage, CacheStore, StoreError

logger = logging.getLogger(__name__)

# Only a plain 200 is stored; redirects, partial content and errors are served but not cached.
CACHEABLE_STATUS = 200

WRITE_MODE_AWAIT = "await"
WRITE_MODE_BACKGROUND = "background"
WRITE_MODES = (WRITE_MODE_AWAIT, WRITE_MODE_BACKGROUND)

FALLBACK_HEADER = "X-Offline-Fallback"


class LifecycleError(Exception):
    """Raised when an operation is not allowed in the proxy's current state."""

    pass


class InstallError(Exception):
    """Raised when a generation cannot be fully populated from its manifest."""

    pass


class ProxyState(Enum):
    """Lifecycle states of a proxy instance."""

    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVE = "active"
    REDUNDANT = "redundant"


_TRANSITIONS: dict[ProxyState, frozenset[ProxyState]] = {
    ProxyState.UNINSTALLED: frozenset({ProxyState.INSTALLING, ProxyState.INSTALLED}),
    ProxyState.INSTALLING: frozenset({ProxyState.INSTALLED, ProxyState.UNINSTALLED}),
    ProxyState.INSTALLED: frozenset({ProxyState.INSTALLING, ProxyState.ACTIVATING}),
    ProxyState.ACTIVATING: frozenset({ProxyState.ACTIVE}),
    ProxyState.ACTIVE: frozenset({ProxyState.REDUNDANT}),
    ProxyState.REDUNDANT: frozenset(),
}


def resolve_manifest(manifest: Sequence[str], base_url: str | None) -> list[str]:
    """Resolve manifest locators into absolute URLs, preserving order.

    Args:
        manifest: Relative paths ("./index.html") and absolute URLs.
        base_url: Origin the relative paths are resolved against.

    Raises:
        InstallError: If a relative locator is given without a base URL.
    """
    urls: list[str] = []
    for locator in manifest:
        if locator.startswith(("http://", "https://")):
            urls.append(locator)
        elif base_url:
            urls.append(urljoin(base_url, locator))
        else:
            raise InstallError(f"Relative manifest entry '{locator}' requires a base URL")
    return urls


class OfflineProxy:
    """Cache-first proxy for one cache generation."""

    def __init__(
        self,
        storage: CacheStorage,
        manifest: Sequence[str],
        network: Network,
        *,
        base_url: str | None = None,
        fallback: str | None = None,
        write_mode: str = WRITE_MODE_AWAIT,
    ) -> None:
        """Initialize a proxy in the UNINSTALLED state.

        Args:
            storage: Cache-store manager bound to this proxy's generation.
            manifest: Ordered list of assets to pre-populate at install time.
            network: Client used for every network request.
            base_url: Origin that relative manifest entries are resolved against.
            fallback: Manifest entry served when a read miss cannot reach the
                network. None means the failure propagates to the caller.
            write_mode: "await" to finish cache writes before returning a
                response, "background" to return first and write afterwards.
        """
        if write_mode not in WRITE_MODES:
            raise ValueError(f"Unknown write mode '{write_mode}', expected one of {WRITE_MODES}")

        self._storage = storage
        self._manifest = list(manifest)
        self._network = network
        self._base_url = base_url
        self._fallback = fallback
        self._write_mode = write_mode

        self._state = ProxyState.UNINSTALLED
        self._state_lock = threading.Lock()
        self._store: CacheStore | None = None
        self._writer: ThreadPoolExecutor | None = None

    @property
    def generation(self) -> str:
        return self._storage.generation

    @property
    def state(self) -> ProxyState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ProxyState.ACTIVE

    def _transition(self, target: ProxyState) -> ProxyState:
        """Move to target state, returning the previous one."""
        with self._state_lock:
            current = self._state
            if target not in _TRANSITIONS[current]:
                raise LifecycleError(
                    f"Cannot move generation '{self.generation}' from {current.value} to {target.value}"
                )
            self._state = target
        logger.debug("Generation %s: %s -> %s", self.generation, current.value, target.value)
        return current

    def manifest_requests(self) -> list[Request]:
        """Build the GET requests for every manifest entry, in order."""
        return [Request(method="GET", url=url) for url in resolve_manifest(self._manifest, self._base_url)]

    def resume(self) -> bool:
        """Adopt an already populated generation without reinstalling it.

        Used on restart: if the store for this generation exists and holds
        every manifest entry, the proxy moves straight to INSTALLED.

        Returns:
            True if the existing generation was adopted.
        """
        if self._state is not ProxyState.UNINSTALLED:
            return False
        try:
            if not self._storage.has(self.generation):
                return False
            store = self._storage.open()
            if any(store.match(request) is None for request in self.manifest_requests()):
                return False
        except (StoreError, InstallError) as e:
            logger.warning("Cannot resume generation %s: %s", self.generation, e)
            return False

        self._store = store
        self._transition(ProxyState.INSTALLED)
        logger.info("Resumed installed generation %s", self.generation)
        return True

    def install(self) -> None:
        """Populate this generation from the manifest.

        Every manifest entry is fetched before anything is written, and the
        entries are then stored in one transaction. If any entry fails the
        whole install fails and the proxy goes back to its previous state.

        Raises:
            InstallError: If any manifest entry cannot be fetched or stored.
            LifecycleError: If the proxy is not UNINSTALLED or INSTALLED.
        """
        previous = self._transition(ProxyState.INSTALLING)
        logger.info("Installing generation %s (%d manifest entries)", self.generation, len(self._manifest))

        existed = False
        try:
            existed = self._storage.has(self.generation)
            store = self._storage.open()
            logger.info("Opened cache %s and caching core assets", self.generation)

            fetched: list[tuple[Request, Response]] = []
            for request in self.manifest_requests():
                try:
                    response = self._network.fetch(request)
                except NetworkError as e:
                    raise InstallError(f"Manifest entry {request.url} unreachable: {e}") from e
                if not response.ok:
                    raise InstallError(f"Manifest entry {request.url} returned HTTP {response.status}")
                fetched.append((request, response))

            store.put_all(fetched)
        except (InstallError, StoreError) as e:
            if not existed:
                self._discard_partial_store()
            self._restore(previous)
            logger.error("Install of generation %s failed: %s", self.generation, e)
            if isinstance(e, InstallError):
                raise
            raise InstallError(f"Failed to store manifest for {self.generation}: {e}") from e

        self._store = store
        self._transition(ProxyState.INSTALLED)
        logger.info("Installed generation %s", self.generation)

    def _restore(self, previous: ProxyState) -> None:
        with self._state_lock:
            self._state = previous

    def _discard_partial_store(self) -> None:
        try:
            self._storage.discard_current()
        except StoreError as e:
            logger.error("Failed to discard partial cache %s: %s", self.generation, e)

    def activate(self) -> None:
        """Remove stale generations and start intercepting read requests.

        Stores that cannot be deleted are logged and left for the next
        activation; activation itself always completes.

        Raises:
            LifecycleError: If the proxy is not INSTALLED.
        """
        self._transition(ProxyState.ACTIVATING)
        logger.info("Activating generation %s", self.generation)

        try:
            deleted, failed = self._storage.sweep()
        except StoreError as e:
            logger.error("Could not list caches during activation: %s", e)
            deleted, failed = [], []
        if failed:
            logger.warning("%d stale cache(s) left for the next activation: %s", len(failed), ", ".join(failed))

        if self._write_mode == WRITE_MODE_BACKGROUND:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cache-writer-{self.generation}")

        self._transition(ProxyState.ACTIVE)
        logger.info("Generation %s active (%d stale cache(s) removed)", self.generation, len(deleted))

    def retire(self) -> None:
        """Mark this proxy as superseded and flush pending cache writes."""
        self._transition(ProxyState.REDUNDANT)
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None
        logger.info("Generation %s retired", self.generation)

    def handle(self, request: Request) -> Response:
        """Answer a request cache-first.

        Non-read requests go straight to the network without touching the
        cache. Read requests are served from the current generation when
        present, otherwise fetched and, on a 200, stored.

        Raises:
            NetworkError: If the network gives no response and there is no
                cached entry (or configured fallback) to answer with.
            LifecycleError: If a read request arrives before activation.
        """
        if not request.is_read:
            return self._network.fetch(request)

        if not self.is_active or self._store is None:
            raise LifecycleError(f"Generation '{self.generation}' is {self._state.value}, not active")

        store = self._store
        try:
            cached = store.match(request)
        except StoreError as e:
            logger.warning("Cache lookup failed for %s: %s", request.url, e)
            cached = None

        if cached is not None:
            logger.debug("Cache hit: %s", request.url)
            return cached

        logger.debug("Cache miss: %s", request.url)
        try:
            response = self._network.fetch(request)
        except NetworkError as e:
            logger.error("Fetch failed: %s", e)
            fallback = self._fallback_response(store)
            if fallback is None:
                raise
            return fallback

        if response.status == CACHEABLE_STATUS:
            self._write(store, request, response.clone())
        return response

    def _write(self, store: CacheStore, request: Request, copy: Response) -> None:
        writer = self._writer
        if writer is not None:
            try:
                future = writer.submit(store.put, request, copy)
            except RuntimeError:
                logger.debug("Cache writer stopped, not storing %s", request.url)
                return
            future.add_done_callback(lambda f: self._log_write_failure(request, f))
            return
        try:
            store.put(request, copy)
        except StoreError as e:
            logger.warning("Cache write skipped for %s: %s", request.url, e)

    @staticmethod
    def _log_write_failure(request: Request, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning("Cache write skipped for %s: %s", request.url, error)

    def _fallback_response(self, store: CacheStore) -> Response | None:
        """Return the configured fallback entry, marked as such, if stored."""
        if self._fallback is None:
            return None
        try:
            url = resolve_manifest([self._fallback], self._base_url)[0]
            cached = store.match(Request(method="GET", url=url))
        except (InstallError, StoreError) as e:
            logger.warning("Offline fallback unavailable: %s", e)
            return None
        if cached is None:
            return None
        headers = dict(cached.headers)
        headers[FALLBACK_HEADER] = "1"
        logger.info("Serving offline fallback %s", url)
        return Response(status=cached.status, reason=cached.reason, headers=headers, body=cached.body, url=cached.url)
