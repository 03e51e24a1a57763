"""Client pages that a worker can control."""

import itertools
import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_client_ids = itertools.count(1)


@dataclass
class Client:
    """An open client page.

    Attributes:
        url: URL the client was loaded from.
        id: Unique client identifier.
        controller: Worker currently governing this client's requests, or None.
    """

    url: str
    id: str = field(default_factory=lambda: f"client-{next(_client_ids)}")
    controller: object | None = None


class ClientRegistry:
    """Tracks open clients. Thread-safe; the front server connects clients from handler threads."""

    def __init__(self) -> None:
        self._clients: dict[str, Client] = {}
        self._lock = threading.Lock()

    def connect(self, url: str, controller: object | None = None) -> Client:
        client = Client(url=url, controller=controller)
        with self._lock:
            self._clients[client.id] = client
        logger.debug("Client %s connected from %s", client.id, url)
        return client

    def disconnect(self, client_id: str) -> bool:
        with self._lock:
            removed = self._clients.pop(client_id, None)
        if removed is not None:
            logger.debug("Client %s disconnected", client_id)
        return removed is not None

    def get(self, client_id: str) -> Client | None:
        with self._lock:
            return self._clients.get(client_id)

    def all(self) -> list[Client]:
        with self._lock:
            return list(self._clients.values())

    def controlled_by(self, worker: object) -> list[Client]:
        """Return the clients whose controller is worker."""
        with self._lock:
            return [c for c in self._clients.values() if c.controller is worker]

    def claim(self, worker: object) -> int:
        """Make worker the controller of every open client. Returns the number of clients."""
        with self._lock:
            for client in self._clients.values():
                client.controller = worker
            count = len(self._clients)
        logger.info("Claimed %d client(s)", count)
        return count
