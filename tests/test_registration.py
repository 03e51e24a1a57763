"""Tests for the registration module."""

import asyncio
from unittest.mock import patch

import pytest

from shellcache.config import CacheConfig
from shellcache.models import Request
from shellcache.registration import Registration
from shellcache.storage import MemoryCacheStorage, StorageError
from shellcache.worker import ServiceWorker, WorkerState

from fakes import ORIGIN, FakeNetwork


def make_config(version: str) -> CacheConfig:
    return CacheConfig(app_name="app", version=version, origin=ORIGIN, precache=["/index.html", "/app.js"])


@pytest.fixture
def registration() -> Registration:
    return Registration()


@pytest.fixture
def shell_network(network: FakeNetwork) -> FakeNetwork:
    network.serve("/index.html", b"<html>shell</html>")
    network.serve("/app.js", b"js")
    return network


async def install_waiting(
    registration: Registration, storage: MemoryCacheStorage, network: FakeNetwork, version: str
) -> ServiceWorker:
    """Install a worker and park it as waiting, without skip-waiting."""
    worker = registration.create_worker(make_config(version), storage, network)
    await worker.install()
    worker.skip_waiting_requested = False
    registration.waiting = worker
    return worker


class TestRegister:
    """Tests for Registration.register()."""

    def test_first_worker_activates(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """With no active worker the first one activates immediately."""
        worker = registration.create_worker(make_config("v1"), memory_storage, shell_network)

        assert asyncio.run(registration.register(worker)) is True
        assert registration.active is worker
        assert registration.waiting is None
        assert worker.state is WorkerState.ACTIVATED

    def test_first_worker_claims_open_clients(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """Clients opened before activation are controlled once it completes."""
        client = registration.clients.connect(ORIGIN + "/")
        worker = registration.create_worker(make_config("v1"), memory_storage, shell_network)

        asyncio.run(registration.register(worker))
        assert client.controller is worker

    def test_new_version_replaces_old(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """A new version installs, skips waiting, and evicts the old store."""
        registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = registration.create_worker(make_config("v2"), memory_storage, shell_network)
            await registration.register(new)
            await registration.drain()
            return old, new, await memory_storage.keys()

        old, new, names = asyncio.run(scenario())
        assert registration.active is new
        assert old.state is WorkerState.REDUNDANT
        assert names == ["app-v2"]
        assert all(c.controller is new for c in registration.clients.all())

    def test_failed_install_is_not_registered(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """A worker whose install fails never becomes waiting or active."""
        worker = registration.create_worker(make_config("v1"), memory_storage, shell_network)
        with patch.object(memory_storage, "_create_cache", side_effect=StorageError("disk full")):
            assert asyncio.run(registration.register(worker)) is False
        assert registration.active is None
        assert registration.waiting is None
        assert registration.installing is None


class TestWaitingGate:
    """Tests for the activation gate."""

    def test_waits_while_clients_are_controlled(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """Without skip-waiting the new worker waits for open clients."""
        registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            return old, new, await registration.update_waiting()

        old, new, activated = asyncio.run(scenario())
        assert activated is False
        assert registration.active is old
        assert registration.waiting is new
        assert new.state is WorkerState.INSTALLED

    def test_old_worker_keeps_serving_while_new_waits(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """The old store keeps answering requests until the switch."""
        registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            await install_waiting(registration, memory_storage, shell_network, "v2")
            shell_network.offline = True
            return await registration.active.handle_fetch(Request(ORIGIN + "/app.js")), await memory_storage.keys()

        response, names = asyncio.run(scenario())
        assert response.body == b"js"
        assert names == ["app-v1", "app-v2"]

    def test_skip_waiting_message_opens_gate(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """A SKIP_WAITING message activates the waiting worker."""
        registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            await new.handle_message({"type": "SKIP_WAITING"}, source="client-1")
            await registration.drain()
            return old, new

        old, new = asyncio.run(scenario())
        assert registration.active is new
        assert registration.waiting is None
        assert old.state is WorkerState.REDUNDANT
        assert new.state is WorkerState.ACTIVATED

    def test_last_client_closing_opens_gate(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """Disconnecting the last controlled client activates the waiting worker."""
        client = registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            await registration.disconnect(client.id)
            return new

        new = asyncio.run(scenario())
        assert registration.active is new

    def test_unknown_client_disconnect_is_noop(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """Disconnecting an unknown client does not re-evaluate the gate."""
        registration.clients.connect(ORIGIN + "/")

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            await install_waiting(registration, memory_storage, shell_network, "v2")
            await registration.disconnect("client-does-not-exist")
            return old

        old = asyncio.run(scenario())
        assert registration.active is old

    def test_failed_activation_keeps_previous_worker(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """If eviction fails the previous worker stays active and the new one waits."""

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            new.skip_waiting_requested = True
            with patch.object(memory_storage, "_drop_cache", side_effect=StorageError("locked")):
                with pytest.raises(StorageError):
                    await registration.update_waiting()
            return old, new

        old, new = asyncio.run(scenario())
        assert registration.active is old
        assert registration.waiting is new
        assert old.state is WorkerState.ACTIVATED
        assert new.state is WorkerState.INSTALLED


class TestController:
    """Tests for Registration.controller()."""

    def test_no_worker(self, registration: Registration) -> None:
        """Without an active worker there is no controller."""
        assert asyncio.run(registration.controller()) is None

    def test_returns_active_worker(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """The active worker controls requests once activation is done."""

        async def scenario():
            worker = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(worker)
            return worker, await registration.controller()

        worker, controller = asyncio.run(scenario())
        assert controller is worker

    def test_failed_activation_hands_back_previous_worker(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """A request waiting on a failed activation is answered by the previous worker."""

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            new.skip_waiting_requested = True
            with patch.object(memory_storage, "_drop_cache", side_effect=StorageError("locked")):
                activation = asyncio.ensure_future(registration.update_waiting())
                await asyncio.sleep(0)
                controller = await registration.controller()
                with pytest.raises(StorageError):
                    await activation
            return old, controller

        old, controller = asyncio.run(scenario())
        assert controller is old
        assert old.state is WorkerState.ACTIVATED

    def test_second_update_during_activation_is_noop(
        self, registration: Registration, memory_storage: MemoryCacheStorage, shell_network: FakeNetwork
    ) -> None:
        """Only one activation runs at a time."""

        async def scenario():
            old = registration.create_worker(make_config("v1"), memory_storage, shell_network)
            await registration.register(old)
            new = await install_waiting(registration, memory_storage, shell_network, "v2")
            new.skip_waiting_requested = True
            first = asyncio.ensure_future(registration.update_waiting())
            await asyncio.sleep(0)
            second = await registration.update_waiting()
            return await first, second, new

        first, second, new = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert registration.active is new
