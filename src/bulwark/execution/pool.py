"""Connection Pool - bounded, lazily grown set of transport handles.

Manifesto:
Opening a transport handle (TLS session, gRPC channel, database connection)
is expensive; holding an unbounded number of them is worse. The pool keeps
between ``min_connections`` and ``max_connections`` handles per endpoint,
leases each one to exactly one in-flight attempt, and retires handles that
are too old or have sat idle too long.

ARCHITECTURE
────────────
::

    ConnectionPool
      ├── acquire()        ─ idle handle (validated) → new handle (< max) → wait
      ├── release(conn)    ─ back to idle, or closed when discarded / expired
      ├── lease()          ─ async context manager around acquire/release
      ├── maintain()       ─ evict expired idle handles, top up to min
      ├── start()/close()  ─ background maintenance task lifecycle
      └── stats()          ─ PoolStats snapshot

    Bookkeeping (idle list, leased map, pending opens) is guarded by one
    asyncio.Condition. Transport I/O (open / close / validate) always runs
    outside the condition's lock.

EVICTION
────────
A handle is retired when ``now - created_at > max_lifetime`` (checked on
checkout, release and maintenance) or when it has been idle longer than
``idle_timeout`` while the pool holds more than ``min_connections``.

Related modules:
    guard.py     - ScopedGuard used by the pipeline to guarantee release
    pipeline.py  - one lease per physical attempt

Example::

    pool = ConnectionPool(transport, PoolConfig(max_connections=4), name="jira")
    await pool.start()
    async with pool.lease() as conn:
        await transport.send(conn.handle, request)
    await pool.close()

Tags:
    bulwark, execution, pool, connections, asyncio

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from bulwark.core.errors import ErrorContext, PoolError, PoolExhaustedError
from bulwark.core.logging import get_logger
from bulwark.core.protocols import Transport
from bulwark.core.settings import PoolConfig

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle of a pooled connection."""

    AVAILABLE = "available"
    IN_USE = "in_use"
    EXPIRED = "expired"


@dataclass
class PooledConnection:
    """A transport handle owned by the pool.

    Attributes:
        id: Pool-unique identifier
        handle: Whatever ``Transport.open()`` returned
        created_at: Clock reading at creation
        last_used_at: Clock reading at the last checkout or release
        state: AVAILABLE, IN_USE or EXPIRED
    """

    id: int
    handle: Any
    created_at: float
    last_used_at: float
    state: ConnectionState = ConnectionState.AVAILABLE


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool counters."""

    name: str
    total: int
    in_use: int
    available: int
    opening: int
    waiting: int
    created: int
    evicted: int
    min_connections: int
    max_connections: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConnectionPool:
    """Async pool of transport handles for one endpoint.

    Args:
        transport: Opens and closes handles
        config: Sizing and lifecycle; defaults to ``PoolConfig()``
        validate: Optional async health check run on an idle handle before
            it is handed out; ``False`` or an exception discards the handle
        clock: Monotonic time source (seconds)
        name: Endpoint key, for logs
    """

    def __init__(
        self,
        transport: Transport,
        config: PoolConfig | None = None,
        *,
        validate: Callable[[Any], Awaitable[bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ):
        self.transport = transport
        self.config = config or PoolConfig()
        self.validate = validate
        self.clock = clock
        self.name = name

        self._cond = asyncio.Condition()
        self._available: list[PooledConnection] = []
        self._in_use: dict[int, PooledConnection] = {}
        self._opening = 0
        self._waiting = 0
        self._created = 0
        self._evicted = 0
        self._ids = itertools.count(1)
        self._closed = False
        self._maintenance_task: asyncio.Task[None] | None = None

    # ── Accounting (call with the condition held) ───────────────────

    def _total(self) -> int:
        return len(self._available) + len(self._in_use) + self._opening

    def _is_expired(self, conn: PooledConnection, now: float) -> bool:
        return now - conn.created_at > self.config.max_lifetime

    def _take_stale(self, now: float) -> list[PooledConnection]:
        """Remove idle connections past their lifetime or idle timeout."""
        stale: list[PooledConnection] = []
        keep: list[PooledConnection] = []
        total = self._total()
        # Oldest idle first; the list is ordered by release time
        for conn in self._available:
            idle_too_long = (
                now - conn.last_used_at > self.config.idle_timeout
                and total - len(stale) > self.config.min_connections
            )
            if self._is_expired(conn, now) or idle_too_long:
                conn.state = ConnectionState.EXPIRED
                stale.append(conn)
            else:
                keep.append(conn)
        self._available = keep
        if stale:
            self._cond.notify(len(stale))
        return stale

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolError(
                f"Pool '{self.name}' is closed",
                context=ErrorContext(target=self.name),
            )

    # ── Handle I/O ──────────────────────────────────────────────────

    async def _open(self) -> PooledConnection:
        """Open a handle for a slot already reserved in ``_opening``."""
        try:
            handle = await self.transport.open()
        except BaseException:
            async with self._cond:
                self._opening -= 1
                self._cond.notify()
            raise

        now = self.clock()
        conn = PooledConnection(
            id=next(self._ids),
            handle=handle,
            created_at=now,
            last_used_at=now,
        )
        async with self._cond:
            self._opening -= 1
            self._created += 1
        logger.debug("pool.connection_created", pool=self.name, connection_id=conn.id)
        return conn

    async def _close(self, conn: PooledConnection, reason: str) -> None:
        conn.state = ConnectionState.EXPIRED
        self._evicted += 1
        logger.debug("pool.connection_closed", pool=self.name, connection_id=conn.id, reason=reason)
        try:
            await self.transport.close(conn.handle)
        except Exception as e:
            logger.warning(
                "pool.close_failed",
                pool=self.name,
                connection_id=conn.id,
                error=str(e),
            )

    async def _close_all(self, conns: list[PooledConnection], reason: str) -> None:
        for conn in conns:
            await self._close(conn, reason)

    async def _is_healthy(self, conn: PooledConnection) -> bool:
        if self.validate is None:
            return True
        try:
            healthy = bool(await self.validate(conn.handle))
        except Exception as e:
            logger.warning(
                "pool.validation_failed",
                pool=self.name,
                connection_id=conn.id,
                error=str(e),
            )
            return False
        if not healthy:
            logger.warning("pool.validation_failed", pool=self.name, connection_id=conn.id)
        return healthy

    # ── Checkout ────────────────────────────────────────────────────

    async def _checkout(self) -> PooledConnection:
        while True:
            conn: PooledConnection | None = None
            reserved = False

            async with self._cond:
                self._ensure_open()
                stale = self._take_stale(self.clock())
                if self._available:
                    conn = self._available.pop()
                    conn.state = ConnectionState.IN_USE
                    self._in_use[conn.id] = conn
                elif self._total() < self.config.max_connections:
                    self._opening += 1
                    reserved = True
                elif not stale:
                    self._waiting += 1
                    try:
                        await self._cond.wait()
                    finally:
                        self._waiting -= 1
                    continue

            if stale:
                await self._close_all(stale, reason="expired")

            if reserved:
                conn = await self._open()
                async with self._cond:
                    closed = self._closed
                    if not closed:
                        conn.state = ConnectionState.IN_USE
                        self._in_use[conn.id] = conn
                if closed:
                    await self._close(conn, reason="pool_closed")
                    self._ensure_open()
                return conn

            if conn is None:
                continue

            try:
                healthy = await self._is_healthy(conn)
            except BaseException:
                await self.release(conn, discard=True)
                raise
            if healthy:
                return conn
            await self.release(conn, discard=True)

    async def acquire(self) -> PooledConnection:
        """Lease a connection, waiting up to ``acquire_timeout``.

        Raises:
            PoolExhaustedError: No connection became available in time
            PoolError: The pool is closed
        """
        timeout = asyncio.timeout(self.config.acquire_timeout)
        try:
            async with timeout:
                conn = await self._checkout()
        except TimeoutError:
            if not timeout.expired():
                raise
            logger.warning(
                "pool.exhausted",
                pool=self.name,
                acquire_timeout=self.config.acquire_timeout,
                in_use=len(self._in_use),
                waiting=self._waiting,
            )
            raise PoolExhaustedError(
                f"No connection available in pool '{self.name}' "
                f"within {self.config.acquire_timeout}s",
                context=ErrorContext(target=self.name),
            ) from None

        conn.last_used_at = self.clock()
        logger.debug("pool.acquired", pool=self.name, connection_id=conn.id)
        return conn

    async def release(self, conn: PooledConnection, discard: bool = False) -> None:
        """Return a leased connection.

        ``discard=True`` closes the handle instead of returning it to the
        idle list; expired handles and handles released into a closed pool
        are closed as well.

        Raises:
            PoolError: ``conn`` is not currently leased from this pool
        """
        async with self._cond:
            if self._in_use.pop(conn.id, None) is None:
                raise PoolError(
                    f"Connection {conn.id} is not leased from pool '{self.name}'",
                    context=ErrorContext(target=self.name),
                )
            now = self.clock()
            conn.last_used_at = now
            retire = discard or self._closed or self._is_expired(conn, now)
            if retire:
                conn.state = ConnectionState.EXPIRED
            else:
                conn.state = ConnectionState.AVAILABLE
                self._available.append(conn)
            self._cond.notify()

        if retire:
            reason = "discarded" if discard else ("pool_closed" if self._closed else "expired")
            await self._close(conn, reason=reason)
        else:
            logger.debug("pool.released", pool=self.name, connection_id=conn.id)

    @contextlib.asynccontextmanager
    async def lease(self) -> AsyncIterator[PooledConnection]:
        """Acquire for the duration of a block.

        The connection is discarded if the block raises or is cancelled.
        """
        conn = await self.acquire()
        try:
            yield conn
        except BaseException:
            await self.release(conn, discard=True)
            raise
        await self.release(conn)

    # ── Maintenance ─────────────────────────────────────────────────

    async def maintain(self) -> None:
        """Evict expired idle connections and top up to ``min_connections``."""
        async with self._cond:
            if self._closed:
                return
            stale = self._take_stale(self.clock())
            deficit = max(0, self.config.min_connections - self._total())
            self._opening += deficit

        if stale:
            await self._close_all(stale, reason="expired")

        for _ in range(deficit):
            try:
                conn = await self._open()
            except Exception as e:
                logger.warning("pool.replenish_failed", pool=self.name, error=str(e))
                continue
            async with self._cond:
                if not self._closed:
                    self._available.append(conn)
                    self._cond.notify()
                    continue
            await self._close(conn, reason="pool_closed")

        if stale or deficit:
            logger.debug(
                "pool.maintained",
                pool=self.name,
                evicted=len(stale),
                opened=deficit,
            )

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.maintenance_interval)
            await self.maintain()

    async def start(self) -> None:
        """Open ``min_connections`` and start the maintenance task."""
        self._ensure_open()
        await self.maintain()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(),
                name=f"bulwark-pool-{self.name}",
            )
        logger.info(
            "pool.started",
            pool=self.name,
            min_connections=self.config.min_connections,
            max_connections=self.config.max_connections,
        )

    async def close(self) -> None:
        """Stop maintenance and close idle connections.

        Waiters are woken and fail with ``PoolError``; leased connections
        are closed when they are released.
        """
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            idle = self._available
            self._available = []
            self._cond.notify_all()

        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None

        await self._close_all(idle, reason="pool_closed")
        logger.info("pool.closed", pool=self.name, leased=len(self._in_use))

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            total=len(self._available) + len(self._in_use),
            in_use=len(self._in_use),
            available=len(self._available),
            opening=self._opening,
            waiting=self._waiting,
            created=self._created,
            evicted=self._evicted,
            min_connections=self.config.min_connections,
            max_connections=self.config.max_connections,
        )


__all__ = [
    "ConnectionState",
    "PooledConnection",
    "PoolStats",
    "ConnectionPool",
]
