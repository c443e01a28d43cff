"""offlineproxy - Cache-first offline proxy for the controlfin web client."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _build_proxy(config, conn, network):
    """Create the proxy for the configured generation."""
    from .proxy import OfflineProxy
    from .store import CacheStorage

    storage = CacheStorage(conn, config.cache.generation)
    return OfflineProxy(
        storage,
        config.cache.manifest,
        network,
        base_url=config.cache.base_url,
        fallback=config.cache.fallback,
        write_mode=config.cache.write_mode,
    )


def _load_config_or_exit(path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_storage_or_exit(path: str):
    from .store import StoreError, init_storage

    try:
        return init_storage(path)
    except StoreError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install the generation and serve requests."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("offlineproxy %s starting...", __version__)

    from .network import Network
    from .proxy import InstallError
    from .registration import ProxyRegistration
    from .server import ProxyServer, ServerError

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)
    logger.info("Generation %s with %d manifest entries", config.cache.generation, len(config.cache.manifest))

    # 2. Open cache storage
    conn = _open_storage_or_exit(config.storage.path)
    logger.info("Cache storage at %s", config.storage.path)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    network = Network(timeout=config.network.timeout, user_agent=config.network.user_agent)
    registration = ProxyRegistration(network)
    server: Optional[ProxyServer] = None

    try:
        # 4. Start serving right away; requests pass through until the generation is active
        if config.server.enabled:
            server = ProxyServer(config.server, registration, base_url=config.cache.base_url)
            try:
                server.start()
            except ServerError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)

        # 5. Install and activate the configured generation
        future = registration.register(_build_proxy(config, conn, network))
        try:
            future.result()
        except InstallError as e:
            logger.error("Install failed, continuing with the previous state: %s", e)

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup
        logger.info("Shutting down components...")

        if server is not None:
            server.stop()

        registration.shutdown()
        network.close()
        conn.close()
        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - populate and activate the generation once."""
    _setup_logging(args.verbose)

    from .network import Network
    from .proxy import InstallError
    from .registration import ProxyRegistration

    config = _load_config_or_exit(args.config)
    conn = _open_storage_or_exit(config.storage.path)
    network = Network(timeout=config.network.timeout, user_agent=config.network.user_agent)
    registration = ProxyRegistration(network)

    try:
        proxy = registration.register(_build_proxy(config, conn, network)).result()
        print(f"Generation {proxy.generation} installed and active.")
    except InstallError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        registration.shutdown()
        network.close()
        conn.close()


def _cmd_generations(args: argparse.Namespace) -> None:
    """Execute the generations command - list stored cache generations."""
    from .store import CacheStorage, StoreError

    config = _load_config_or_exit(args.config)
    conn = _open_storage_or_exit(config.storage.path)

    try:
        generations = CacheStorage(conn, config.cache.generation).describe()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()

    if not generations:
        print("No cache generations stored.")
        return

    for generation in generations:
        marker = "*" if generation.name == config.cache.generation else " "
        print(f"{marker} {generation.name}  {generation.entries} entries  created {generation.created_at:%Y-%m-%d %H:%M:%S}")


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - delete stale (or all) cache generations."""
    from pathlib import Path

    from .store import CacheStorage, StoreError

    config = _load_config_or_exit(args.config)

    if not Path(config.storage.path).exists():
        print(f"Error: Cache storage not found at {config.storage.path}")
        sys.exit(1)

    conn = _open_storage_or_exit(config.storage.path)
    storage = CacheStorage(conn, config.cache.generation)

    try:
        deleted, failed = storage.sweep()
        if args.all and storage.discard_current():
            deleted.append(storage.generation)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()

    print(f"Deleted {len(deleted)} cache generation(s).")
    if failed:
        print(f"Failed to delete: {', '.join(failed)}")
        sys.exit(1)


def main() -> None:
    """Main entry point for the offlineproxy package."""
    parser = argparse.ArgumentParser(description="offlineproxy - Cache-first offline proxy")
    parser.add_argument(
        "--version",
        action="version",
        version=f"offlineproxy {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the configured generation and start the proxy (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Populate and activate the configured generation, then exit",
    )
    install_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    install_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    install_parser.set_defaults(func=_cmd_install)

    # Generations subcommand
    generations_parser = subparsers.add_parser(
        "generations",
        help="List stored cache generations",
    )
    generations_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    generations_parser.set_defaults(func=_cmd_generations)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Delete cache generations other than the configured one",
    )
    clean_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Also delete the configured generation",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
