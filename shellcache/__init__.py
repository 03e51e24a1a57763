"""shellcache - Offline-capable request interception and caching for web apps."""

import argparse
import asyncio
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


def _load_or_exit(config_path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _open_storage_or_exit(config):
    from .storage import StorageError, open_storage

    try:
        return open_storage(config.storage.backend, config.storage.path)
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the front server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("shellcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .config import ConfigError, load_config
    from .network import Fetcher
    from .registration import Registration
    from .server import AsyncRunner, ServerError, ShellServer
    from .storage import StorageError, open_storage

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
        logger.info(
            "Cache %s with %d precached asset(s) for %s",
            config.cache.cache_name,
            len(config.cache.precache),
            config.cache.origin,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Open cache storage
    try:
        storage = open_storage(config.storage.backend, config.storage.path)
        logger.info("Cache storage (%s) opened", config.storage.backend)
    except StorageError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    fetcher = Fetcher(config.network, config.cache.origin)
    registration = Registration()
    runner = AsyncRunner()
    server: Optional[ShellServer] = None

    try:
        # 4. Install and activate the worker for this cache generation
        runner.start()
        worker = registration.create_worker(config.cache, storage, fetcher)
        try:
            if not runner.submit(registration.register(worker)):
                logger.error("Worker installation failed")
                sys.exit(1)
        except StorageError as e:
            logger.error("Worker activation failed: %s", e)
            sys.exit(1)

        # 5. Start the front server
        if config.server.enabled:
            try:
                server = ShellServer(config.server, config.cache.origin, registration, fetcher, runner)
                server.start()
            except ServerError as e:
                logger.error("Failed to start front server: %s", e)
                sys.exit(1)
        else:
            logger.info("Front server disabled; cache is installed and active")

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if server is not None:
            server.stop()

        try:
            runner.submit(registration.drain(), timeout=10.0)
        except (RuntimeError, TimeoutError):
            logger.warning("Pending cache writes did not finish before shutdown")
        runner.stop()

        storage.close()
        logger.info("Shutdown complete")


async def _install(config, storage) -> tuple[bool, int]:
    from .network import Fetcher
    from .registration import Registration

    registration = Registration()
    worker = registration.create_worker(config.cache, storage, Fetcher(config.network, config.cache.origin))
    installed = await registration.register(worker)
    await registration.drain()
    cache = await storage.open(config.cache.cache_name)
    return installed, len(await cache.keys())


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - populate and activate the current cache once."""
    _setup_logging(args.verbose)

    from .storage import StorageError

    config = _load_or_exit(args.config)
    storage = _open_storage_or_exit(config)

    try:
        installed, count = asyncio.run(_install(config, storage))
        if not installed:
            print(f"Error: Installation of {config.cache.cache_name} failed")
            sys.exit(1)

        print(f"Installed {config.cache.cache_name}: {count} of {len(config.cache.precache)} asset(s) cached.")
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        storage.close()


async def _describe_caches(storage) -> list[tuple[str, int]]:
    result = []
    for name in await storage.keys():
        cache = await storage.open(name)
        result.append((name, len(await cache.keys())))
    return result


def _cmd_caches(args: argparse.Namespace) -> None:
    """Execute the caches command - list stored caches."""
    from .storage import StorageError

    config = _load_or_exit(args.config)
    storage = _open_storage_or_exit(config)

    try:
        caches = asyncio.run(_describe_caches(storage))
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        storage.close()

    if not caches:
        print("No caches stored.")
        return

    for name, count in caches:
        marker = "*" if name == config.cache.cache_name else " "
        print(f"{marker} {name}  ({count} entries)")


async def _delete_caches(storage, keep: Optional[str]) -> list[str]:
    deleted = []
    for name in await storage.keys():
        if name != keep and await storage.delete(name):
            deleted.append(name)
    return deleted


def _cmd_clean(args: argparse.Namespace) -> None:
    """Execute the clean command - delete stale caches."""
    from .storage import StorageError

    config = _load_or_exit(args.config)
    storage = _open_storage_or_exit(config)

    keep = None if args.all else config.cache.cache_name
    try:
        deleted = asyncio.run(_delete_caches(storage, keep))
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        storage.close()

    if args.all:
        print(f"Deleted all {len(deleted)} cache(s).")
    else:
        print(f"Deleted {len(deleted)} stale cache(s), kept {keep}.")


def main() -> None:
    """Main entry point for the shellcache package."""
    parser = argparse.ArgumentParser(
        description="shellcache - Offline-capable request interception and caching"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"shellcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the current cache and start the front server (default)",
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
        help="Populate the current cache and evict stale ones, then exit",
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

    # Caches subcommand
    caches_parser = subparsers.add_parser(
        "caches",
        help="List stored caches (current one marked with *)",
    )
    caches_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    caches_parser.set_defaults(func=_cmd_caches)

    # Clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Delete caches from previous versions",
    )
    clean_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Delete every cache, including the current one",
    )
    clean_parser.set_defaults(func=_cmd_clean)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
