"""Registration: drives proxy lifecycles and routes requests to the active one."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from .models import Request, Response
from .network import Network
from .proxy import LifecycleError, OfflineProxy, ProxyState

logger = logging.getLogger(__name__)


class ProxyRegistration:
    """Owns the active proxy and serializes lifecycle work.

    Lifecycle jobs (install, activate, takeover) run one at a time on a
    single worker thread, so a generation is always fully installed before
    it activates and fully activated before it serves. Requests are answered
    on the caller's thread by whichever proxy is active at that moment.
    """

    def __init__(self, network: Network) -> None:
        self._network = network
        self._active: OfflineProxy | None = None
        self._waiting: OfflineProxy | None = None
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lifecycle")

    @property
    def active(self) -> OfflineProxy | None:
        """The proxy currently answering read requests, if any."""
        return self._active

    @property
    def state(self) -> ProxyState:
        """State of the newest registered proxy (waiting one first)."""
        proxy = self._waiting or self._active
        return proxy.state if proxy is not None else ProxyState.UNINSTALLED

    def register(self, proxy: OfflineProxy) -> Future:
        """Schedule install and activation of a new proxy generation.

        Returns:
            Future resolving to the proxy once it is active. It carries the
            InstallError if the generation could not be installed, in which
            case the previously active proxy keeps serving.
        """
        logger.info("Registering generation %s", proxy.generation)
        return self._executor.submit(self._run_lifecycle, proxy)

    def _run_lifecycle(self, proxy: OfflineProxy) -> OfflineProxy:
        with self._lock:
            self._waiting = proxy
        try:
            if not proxy.resume():
                proxy.install()
        finally:
            with self._lock:
                if proxy.state is not ProxyState.INSTALLED:
                    self._waiting = None

        # Take over immediately instead of waiting for in-flight clients to finish
        proxy.activate()
        with self._lock:
            previous = self._active
            self._active = proxy
            self._waiting = None
        logger.info("Generation %s now controls requests", proxy.generation)

        if previous is not None and previous is not proxy:
            previous.retire()
        return proxy

    def fetch(self, request: Request) -> Response:
        """Answer a request through the active proxy, or the network if none is active.

        Raises:
            NetworkError: If the request cannot be answered.
        """
        proxy = self._active
        if proxy is None:
            return self._network.fetch(request)
        try:
            return proxy.handle(request)
        except LifecycleError:
            # Superseded between lookup and handling
            current = self._active
            if current is None or current is proxy:
                raise
            return current.handle(request)

    def shutdown(self) -> None:
        """Stop the lifecycle worker and flush the active proxy's writes."""
        self._executor.shutdown(wait=True)
        with self._lock:
            proxy = self._active
            self._active = None
        if proxy is not None and proxy.is_active:
            proxy.retire()
        logger.info("Registration shut down")
