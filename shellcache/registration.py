"""Registration: which worker is installing, waiting and active."""

import asyncio
import logging

from .clients import ClientRegistry
from .config import CacheConfig
from .storage import CacheStorage
from .strategy import FetchFn
from .worker import ServiceWorker, WorkerState

logger = logging.getLogger(__name__)


class Registration:
    """Holds the workers for one application scope.

    A newly installed worker waits while the active worker still controls
    open clients, unless it has called skip_waiting(). The gate is
    re-evaluated when a client disconnects or a skip-waiting command
    arrives.
    """

    def __init__(self, clients: ClientRegistry | None = None) -> None:
        self.clients = clients if clients is not None else ClientRegistry()
        self.installing: ServiceWorker | None = None
        self.waiting: ServiceWorker | None = None
        self.active: ServiceWorker | None = None
        self._tasks: set[asyncio.Task] = set()
        self._activation: asyncio.Task | None = None

    def create_worker(self, config: CacheConfig, storage: CacheStorage, fetch: FetchFn) -> ServiceWorker:
        return ServiceWorker(
            config,
            storage,
            fetch,
            self.clients,
            on_skip_waiting=self._on_skip_waiting,
        )

    async def register(self, worker: ServiceWorker) -> bool:
        """Install a worker and activate it as soon as the waiting gate allows.

        Returns False if installation failed.
        """
        self.installing = worker
        try:
            installed = await worker.install()
        finally:
            self.installing = None
        if not installed:
            return False

        if self.waiting is not None:
            logger.info("%s replaced by %s", self.waiting, worker)
            self.waiting.state = WorkerState.REDUNDANT
        self.waiting = worker
        await self.update_waiting()
        return True

    def _can_activate(self, worker: ServiceWorker) -> bool:
        if self.active is None or worker.skip_waiting_requested:
            return True
        return not self.clients.controlled_by(self.active)

    async def update_waiting(self) -> bool:
        """Promote the waiting worker if the gate is open. Returns True if a worker was activated.

        While the activation runs, controller() holds requests back so none
        of them skips the cache.

        Raises:
            StorageError: If activation fails; the worker stays waiting and
                the previous worker stays active.
        """
        worker = self.waiting
        if worker is None or self._activation is not None:
            return False
        if not self._can_activate(worker):
            logger.info(
                "%s waiting for %d client(s) of %s to close",
                worker,
                len(self.clients.controlled_by(self.active)),
                self.active,
            )
            return False

        self._activation = asyncio.ensure_future(self._activate(worker, self.active))
        try:
            await self._activation
        finally:
            self._activation = None
        return True

    async def _activate(self, worker: ServiceWorker, previous: ServiceWorker | None) -> None:
        self.waiting = None
        self.active = worker
        try:
            await worker.activate()
        except Exception:
            self.active = previous
            self.waiting = worker
            raise
        if previous is not None:
            previous.state = WorkerState.REDUNDANT

    async def controller(self) -> ServiceWorker | None:
        """Return the worker that intercepts requests, once any activation in progress has settled."""
        activation = self._activation
        if activation is not None:
            await asyncio.wait([activation])
        return self.active

    async def disconnect(self, client_id: str) -> None:
        if self.clients.disconnect(client_id) and self.waiting is not None:
            await self.update_waiting()

    def _on_skip_waiting(self, worker: ServiceWorker) -> None:
        if worker is self.waiting:
            self._schedule_update()

    def _schedule_update(self) -> None:
        task = asyncio.ensure_future(self.update_waiting())
        self._tasks.add(task)
        task.add_done_callback(self._update_done)

    def _update_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Activation failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for pending activations and the active worker's detached work."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.active is not None:
            await self.active.drain()
