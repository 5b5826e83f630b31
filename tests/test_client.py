"""Tests for the remote client lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from shuttle_storage.exceptions import (
    ConfigurationError,
    RemoteUnavailableError,
    TransportError,
)
from shuttle_storage.remote import ClientState, RemoteClient, RemoteConfig

from .conftest import FakeRemoteStore, store_factory_for


def transport_error() -> TransportError:
    return TransportError("fake://remote", ConnectionError("connection reset"))


class TestConnect:
    """Tests for connecting and the connection check."""

    async def test_lazy_until_first_access(
        self, remote_config: RemoteConfig, fake_store: FakeRemoteStore
    ) -> None:
        client = RemoteClient(remote_config, store_factory=store_factory_for(fake_store))

        assert client.state == ClientState.UNINITIALIZED
        assert fake_store.calls == []

        assert await client.initialize() is True
        assert client.state == ClientState.READY
        assert fake_store.count("ping") == 1
        await client.close()

    async def test_missing_configuration_disables_client(self) -> None:
        factory_calls = 0

        async def factory(config):
            nonlocal factory_calls
            factory_calls += 1
            return FakeRemoteStore()

        client = RemoteClient(RemoteConfig(), store_factory=factory)

        assert await client.initialize() is False
        assert client.state == ClientState.UNINITIALIZED
        assert client.is_disabled
        assert "url" in (client.last_error or "")

        # No automatic retry while disabled
        assert await client.acquire() is None
        assert factory_calls == 0

    async def test_unreachable_store_retries_on_next_access(
        self, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.fail("ping", transport_error())

        assert await client.initialize() is False
        assert client.state == ClientState.UNINITIALIZED
        assert not client.is_disabled

        assert await client.initialize() is True
        assert client.state == ClientState.READY

    async def test_concurrent_callers_share_one_attempt(
        self, remote_config: RemoteConfig, fake_store: FakeRemoteStore
    ) -> None:
        gate = asyncio.Event()
        factory_calls = 0

        async def factory(config):
            nonlocal factory_calls
            factory_calls += 1
            await gate.wait()
            return fake_store

        client = RemoteClient(remote_config, store_factory=factory)
        callers = [asyncio.create_task(client.acquire()) for _ in range(3)]
        for _ in range(3):
            await asyncio.sleep(0)

        assert client.state == ClientState.CONNECTING

        gate.set()
        stores = await asyncio.gather(*callers)

        assert factory_calls == 1
        assert all(store is fake_store for store in stores)
        await client.close()

    async def test_context_manager(
        self, remote_config: RemoteConfig, fake_store: FakeRemoteStore
    ) -> None:
        async with RemoteClient(remote_config, store_factory_for(fake_store)) as client:
            assert client.state == ClientState.READY

        assert client.state == ClientState.UNINITIALIZED
        assert fake_store.closed


class TestStale:
    """Tests for recycling a READY client."""

    async def test_max_age_recycles_handle(self, fake_store: FakeRemoteStore) -> None:
        now = [0.0]
        factory_calls = 0

        async def factory(config):
            nonlocal factory_calls
            factory_calls += 1
            return fake_store

        config = RemoteConfig(url="https://test", api_key="key", max_client_age=10)
        client = RemoteClient(config, store_factory=factory, clock=lambda: now[0])
        states: list[ClientState] = []
        client.subscribe(states.append)

        await client.initialize()
        now[0] = 11.0
        await client.acquire()

        assert factory_calls == 2
        assert ClientState.STALE in states
        assert client.state == ClientState.READY
        await client.close()

    async def test_consecutive_transport_errors_make_client_stale(
        self, fake_store: FakeRemoteStore
    ) -> None:
        config = RemoteConfig(url="https://test", api_key="key", transport_error_threshold=2)
        client = RemoteClient(config, store_factory=store_factory_for(fake_store))
        await client.initialize()
        fake_store.fail("select", transport_error(), times=2)

        for _ in range(2):
            with pytest.raises(TransportError):
                await client.execute(lambda store: store.select("players"))

        assert client.state == ClientState.STALE
        assert client.consecutive_errors == 2

        rows = await client.execute(lambda store: store.select("players"))

        assert rows == []
        assert client.state == ClientState.READY
        assert client.consecutive_errors == 0
        await client.close()

    async def test_success_resets_error_count(
        self, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.fail("select", transport_error())

        with pytest.raises(TransportError):
            await client.execute(lambda store: store.select("players"))
        await client.execute(lambda store: store.select("players"))

        assert client.consecutive_errors == 0


class TestExecute:
    """Tests for running operations through the client."""

    async def test_unavailable_without_store(self) -> None:
        client = RemoteClient(RemoteConfig())

        with pytest.raises(RemoteUnavailableError):
            await client.execute(lambda store: store.select("players"))

    async def test_rejected_credentials_disable_until_reset(
        self, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.fail("select", ConfigurationError("api_key", "401 invalid key"))

        with pytest.raises(RemoteUnavailableError):
            await client.execute(lambda store: store.select("players"))

        assert client.is_disabled
        assert client.state == ClientState.UNINITIALIZED
        assert await client.acquire() is None

        await client.reset()

        assert not client.is_disabled
        assert await client.acquire() is fake_store

    async def test_reset_during_operation(self, client: RemoteClient) -> None:
        async def operation(store):
            await client.reset()
            return "done"

        with pytest.raises(RemoteUnavailableError):
            await client.execute(operation)


class TestListeners:
    """Tests for state listeners."""

    async def test_subscribe_is_idempotent(self, client: RemoteClient) -> None:
        states: list[ClientState] = []
        client.subscribe(states.append)
        client.subscribe(states.append)

        await client.initialize()

        assert states == [ClientState.CONNECTING, ClientState.READY]

    async def test_unsubscribe(self, client: RemoteClient) -> None:
        states: list[ClientState] = []
        unsubscribe = client.subscribe(states.append)
        unsubscribe()

        await client.initialize()

        assert states == []

    async def test_failing_listener_does_not_break_client(self, client: RemoteClient) -> None:
        states: list[ClientState] = []

        def broken(state: ClientState) -> None:
            raise RuntimeError("listener bug")

        client.subscribe(broken)
        client.subscribe(states.append)

        assert await client.initialize() is True
        assert states[-1] == ClientState.READY
