"""
Lazily connected, shared handle to the remote store.

Lifecycle:

    UNINITIALIZED -> CONNECTING -> READY -> STALE -> UNINITIALIZED -> ...

- The first access (or an explicit reset) starts a connection attempt.
- Concurrent callers during CONNECTING await the same attempt.
- Missing or rejected credentials disable the client until reset().
- Transport failures while connecting leave the client UNINITIALIZED; the
  next access tries again.
- A READY client goes STALE once it exceeds its maximum age or after a run
  of consecutive transport errors, and reconnects on the next access.

The client fails closed: acquire() returns None instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from ..exceptions import ConfigurationError, RemoteUnavailableError, TransportError
from .base import RemoteConfig, RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

StoreFactory = Callable[[RemoteConfig], Awaitable[RemoteStore]]
StateListener = Callable[["ClientState"], None]


class ClientState(Enum):
    """Connection state of the remote client."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    STALE = "stale"


class RemoteClient:
    """Shared remote handle with an explicit connect/reset lifecycle.

    Example:
        >>> client = RemoteClient(RemoteConfig.from_env())
        >>> rows = await client.execute(lambda store: store.select("players"))
        >>> await client.close()
    """

    def __init__(
        self,
        config: RemoteConfig | None = None,
        store_factory: StoreFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client without connecting.

        Args:
            config: Remote configuration (default: from environment)
            store_factory: Coroutine building a RemoteStore from config
            clock: Monotonic clock used for client age
        """
        if store_factory is None:
            from . import open_remote_store

            store_factory = open_remote_store

        self.config = config or RemoteConfig.from_env()
        self._store_factory = store_factory
        self._clock = clock

        self._state = ClientState.UNINITIALIZED
        self._store: RemoteStore | None = None
        self._connect_task: asyncio.Task[RemoteStore | None] | None = None
        self._connected_at: float | None = None
        self._consecutive_errors = 0
        self._generation = 0
        self._disabled_reason: str | None = None
        self._listeners: list[StateListener] = []
        self.last_error: str | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_disabled(self) -> bool:
        """True when configuration problems keep the client offline until reset."""
        return self._disabled_reason is not None

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Registering the same listener twice is a no-op.

        Returns:
            A callable that unsubscribes the listener
        """
        if listener not in self._listeners:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ClientState) -> None:
        if state == self._state:
            return
        logger.debug(f"Remote client state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Remote client state listener failed")

    def _is_expired(self) -> bool:
        if self._connected_at is None:
            return False
        return self._clock() - self._connected_at >= self.config.max_client_age

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> bool:
        """Connect eagerly. Returns True if the remote is usable."""
        return await self.acquire() is not None

    async def acquire(self) -> RemoteStore | None:
        """Return a connected store, or None when the remote is unavailable."""
        if self._disabled_reason is not None:
            return None

        if self._state == ClientState.READY and self._is_expired():
            logger.info("Remote client exceeded maximum age, recycling")
            self._set_state(ClientState.STALE)

        if self._state == ClientState.STALE:
            await self._collapse()

        if self._state == ClientState.READY and self._store is not None:
            return self._store

        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._connect(self._generation))
        # Shield so a cancelled caller does not cancel the shared attempt
        return await asyncio.shield(self._connect_task)

    async def _connect(self, generation: int) -> RemoteStore | None:
        self._set_state(ClientState.CONNECTING)
        store: RemoteStore | None = None
        try:
            self.config.require()
            store = await self._store_factory(self.config)
            await store.ping()
        except ConfigurationError as e:
            await self._discard(store)
            if generation == self._generation:
                self._disable(e)
                self._set_state(ClientState.UNINITIALIZED)
            return None
        except Exception as e:
            await self._discard(store)
            self.last_error = str(e)
            logger.warning(f"Remote store unreachable, using local cache: {e}")
            if generation == self._generation:
                self._set_state(ClientState.UNINITIALIZED)
            return None
        finally:
            if generation == self._generation:
                self._connect_task = None

        if generation != self._generation:
            # Reset while connecting; this handle is already obsolete
            await self._discard(store)
            return None

        self._store = store
        self._connected_at = self._clock()
        self._consecutive_errors = 0
        self.last_error = None
        self._set_state(ClientState.READY)
        logger.info(f"Remote store connected: {store.endpoint}")
        return store

    def _disable(self, error: ConfigurationError) -> None:
        self._disabled_reason = error.message
        self.last_error = error.message
        if error.reason:
            self.last_error = f"{error.message} ({error.reason})"
        logger.error(f"Remote store disabled, running cache-only: {self.last_error}")

    async def _discard(self, store: RemoteStore | None) -> None:
        if store is None:
            return
        try:
            await store.close()
        except Exception as e:
            logger.warning(f"Error closing remote store: {e}")

    async def _collapse(self) -> None:
        store = self._store
        self._store = None
        self._connected_at = None
        self._consecutive_errors = 0
        self._set_state(ClientState.UNINITIALIZED)
        await self._discard(store)

    async def reset(self) -> None:
        """Drop the current handle and clear any disabled state.

        In-flight operations observe the reset and fail with
        RemoteUnavailableError; the next access reconnects.
        """
        self._generation += 1
        self._connect_task = None
        self._disabled_reason = None
        await self._collapse()
        logger.info("Remote client reset")

    async def close(self) -> None:
        """Release the handle without clearing a disabled state."""
        self._generation += 1
        self._connect_task = None
        await self._collapse()

    async def __aenter__(self) -> RemoteClient:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # =========================================================================
    # Operations
    # =========================================================================

    async def execute(self, operation: Callable[[RemoteStore], Awaitable[T]]) -> T:
        """Run an operation against the connected store.

        Raises:
            RemoteUnavailableError: No store, or the client was reset meanwhile
            TransportError: Network failure (counted towards going stale)
            ConstraintViolation, RemoteQueryError: Passed through from the store
        """
        store = await self.acquire()
        if store is None:
            raise RemoteUnavailableError(self.last_error or "not connected")

        generation = self._generation
        try:
            result = await operation(store)
        except ConfigurationError as e:
            if generation != self._generation:
                raise RemoteUnavailableError("client reset during operation") from e
            self._disable(e)
            await self._collapse()
            raise RemoteUnavailableError(self.last_error or "credentials rejected") from e
        except TransportError as e:
            if generation != self._generation:
                raise RemoteUnavailableError("client reset during operation") from e
            self._record_transport_error(e)
            raise
        except Exception as e:
            if generation != self._generation:
                raise RemoteUnavailableError("client reset during operation") from e
            raise

        if generation != self._generation:
            raise RemoteUnavailableError("client reset during operation")
        self._consecutive_errors = 0
        return result

    def _record_transport_error(self, error: TransportError) -> None:
        self._consecutive_errors += 1
        self.last_error = str(error)
        logger.warning(
            f"Remote transport error {self._consecutive_errors}/"
            f"{self.config.transport_error_threshold}: {error.details.get('cause', error)}"
        )
        if (
            self._state == ClientState.READY
            and self._consecutive_errors >= self.config.transport_error_threshold
        ):
            self._set_state(ClientState.STALE)
