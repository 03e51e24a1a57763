"""Lifecycle controller: install, activate, fetch and message handling.

A ServiceWorker is bound to one CacheConfig (and so to one Version Tag and
one store name). It moves through the states

    parsed -> installing -> installed -> activating -> activated

or ends up redundant when installation fails or a newer worker replaces it.
Lifecycle work is attached to events with wait_until(); the event is not
settled until all of that work has finished.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

from .clients import ClientRegistry
from .config import CacheConfig
from .control import Command, parse_command
from .models import Request, Response
from .network import NetworkError
from .storage import CacheStorage, CacheWriteError, NamedCache, StorageError
from .strategy import FetchFn, StrategySelector

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class ExtendableEvent:
    """A lifecycle event that stays open until all work passed to wait_until() settles."""

    type = ""

    def __init__(self) -> None:
        self._pending: list[asyncio.Future] = []

    def wait_until(self, work: Awaitable) -> None:
        self._pending.append(asyncio.ensure_future(work))

    async def settled(self) -> None:
        """Wait for all extended work. Re-raises the first failure after everything finished."""
        results = await asyncio.gather(*self._pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result


class InstallEvent(ExtendableEvent):
    type = "install"


class ActivateEvent(ExtendableEvent):
    type = "activate"


class FetchEvent:
    """An intercepted request. Unless respond_with() is called, the request goes to the network untouched."""

    type = "fetch"

    def __init__(self, request: Request, client_id: str | None = None) -> None:
        self.request = request
        self.client_id = client_id
        self._response: asyncio.Future | None = None

    @property
    def handled(self) -> bool:
        return self._response is not None

    def respond_with(self, response: Awaitable[Response]) -> None:
        if self._response is not None:
            raise RuntimeError("respond_with() already called for this event")
        self._response = asyncio.ensure_future(response)

    async def response(self) -> Response:
        if self._response is None:
            raise RuntimeError("Event was not handled")
        return await self._response


class MessageEvent:
    type = "message"

    def __init__(self, data: object, source: str | None = None) -> None:
        self.data = data
        self.source = source


Event = InstallEvent | ActivateEvent | FetchEvent | MessageEvent


class ServiceWorker:
    """Intercepts requests for one cache generation.

    Args:
        config: Cache configuration naming the current store and asset manifest.
        storage: Storage substrate holding the named stores.
        fetch: Coroutine function performing network fetches.
        clients: Registry of open client pages.
        on_skip_waiting: Called with this worker whenever skip_waiting() is invoked.
    """

    def __init__(
        self,
        config: CacheConfig,
        storage: CacheStorage,
        fetch: FetchFn,
        clients: ClientRegistry,
        on_skip_waiting: Callable[["ServiceWorker"], None] | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.fetch = fetch
        self.clients = clients
        self.on_skip_waiting = on_skip_waiting
        self.state = WorkerState.PARSED
        self.skip_waiting_requested = False
        self.selector = StrategySelector(config, storage, fetch, self.spawn)
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Callable[[Any], None]] = {
            "install": self.on_install,
            "activate": self.on_activate,
            "fetch": self.on_fetch,
            "message": self.on_message,
        }

    def __repr__(self) -> str:
        return f"ServiceWorker({self.config.cache_name!r}, state={self.state.value})"

    @property
    def cache_name(self) -> str:
        return self.config.cache_name

    # Event handlers

    def on_install(self, event: InstallEvent) -> None:
        self.skip_waiting()
        event.wait_until(self.populate())

    def on_activate(self, event: ActivateEvent) -> None:
        event.wait_until(self.evict_and_claim())

    def on_fetch(self, event: FetchEvent) -> None:
        if event.request.method != "GET":
            return
        event.respond_with(self.selector.respond(event.request))

    def on_message(self, event: MessageEvent) -> None:
        if parse_command(event.data) is Command.SKIP_WAITING:
            logger.info("Skip-waiting requested by client %s", event.source or "unknown")
            self.skip_waiting()

    async def dispatch(self, event: Event) -> None:
        """Run the handler for an event and, for lifecycle events, wait for it to settle."""
        self._handlers[event.type](event)
        if isinstance(event, ExtendableEvent):
            await event.settled()

    # Lifecycle phases

    async def populate(self) -> None:
        """Fill the current store with the asset manifest.

        A bulk all-or-nothing add is attempted first. If any single asset
        fails, every asset is added independently and individual failures
        are logged, so one missing file never blocks the rest of the shell.
        """
        cache = await self.storage.open(self.cache_name)
        requests = [Request.for_path(self.config.origin, path) for path in self.config.precache]

        try:
            await cache.add_all(requests, self.fetch)
            logger.info("Precached %d asset(s) into %s", len(requests), self.cache_name)
            return
        except (NetworkError, CacheWriteError, StorageError) as e:
            logger.warning("Bulk precache failed, falling back to individual caching: %s", e)

        results = await asyncio.gather(*(self._add_one(cache, req) for req in requests))
        logger.info("Precached %d of %d asset(s) into %s", sum(results), len(requests), self.cache_name)

    async def _add_one(self, cache: NamedCache, request: Request) -> bool:
        try:
            await cache.add(request, self.fetch)
            return True
        except (NetworkError, CacheWriteError, StorageError) as e:
            logger.warning("Failed to precache %s: %s", request.url, e)
            return False

    async def evict_and_claim(self) -> None:
        """Delete every store but the current one, then take control of all clients.

        A failed deletion propagates and clients are not claimed.
        """
        names = await self.storage.keys()
        stale = [name for name in names if name != self.cache_name]
        for name in stale:
            logger.info("Deleting stale cache %s", name)
        await asyncio.gather(*(self.storage.delete(name) for name in stale))
        self.clients.claim(self)

    async def install(self) -> bool:
        """Run the install phase. Returns False (and the worker becomes redundant) on failure."""
        self.state = WorkerState.INSTALLING
        logger.info("Installing %s", self.cache_name)
        try:
            await self.dispatch(InstallEvent())
        except (StorageError, OSError) as e:
            logger.error("Install of %s failed: %s", self.cache_name, e)
            self.state = WorkerState.REDUNDANT
            return False
        self.state = WorkerState.INSTALLED
        return True

    async def activate(self) -> None:
        """Run the activate phase.

        Raises:
            StorageError: If a stale store cannot be deleted; the worker stays installed.
        """
        self.state = WorkerState.ACTIVATING
        logger.info("Activating %s", self.cache_name)
        try:
            await self.dispatch(ActivateEvent())
        except StorageError:
            self.state = WorkerState.INSTALLED
            raise
        self.state = WorkerState.ACTIVATED
        logger.info("%s is active", self.cache_name)

    async def handle_fetch(self, request: Request, client_id: str | None = None) -> Response | None:
        """Intercept a request. Returns None when the request is not intercepted.

        Raises:
            NetworkError: When an intercepted request has no defined fallback.
        """
        if self.state is not WorkerState.ACTIVATED:
            return None
        event = FetchEvent(request, client_id)
        await self.dispatch(event)
        if not event.handled:
            return None
        return await event.response()

    async def handle_message(self, data: object, source: str | None = None) -> None:
        await self.dispatch(MessageEvent(data, source))

    def skip_waiting(self) -> None:
        self.skip_waiting_requested = True
        if self.on_skip_waiting is not None:
            self.on_skip_waiting(self)

    # Detached work

    def spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        """Run coro without blocking the caller; failures are logged when it completes."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for all detached work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
