"""Tests for the async connection pool."""

import asyncio

import pytest

from bulwark.core.errors import PoolError, PoolExhaustedError
from bulwark.core.settings import PoolConfig
from bulwark.execution.pool import ConnectionPool, ConnectionState


def make_pool(transport, clock, **config):
    defaults = {"min_connections": 0, "max_connections": 2, "acquire_timeout": 0.2}
    defaults.update(config)
    return ConnectionPool(transport, PoolConfig(**defaults), clock=clock, name="jira")


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_creates_lazily(self, transport, clock):
        pool = make_pool(transport, clock)
        assert transport.opened == []

        conn = await pool.acquire()

        assert conn.handle == "conn-1"
        assert conn.state == ConnectionState.IN_USE
        assert pool.stats().in_use == 1

    @pytest.mark.asyncio
    async def test_released_connection_is_reused(self, transport, clock):
        pool = make_pool(transport, clock)
        first = await pool.acquire()
        await pool.release(first)
        assert first.state == ConnectionState.AVAILABLE

        second = await pool.acquire()

        assert second.id == first.id
        assert transport.opened == ["conn-1"]

    @pytest.mark.asyncio
    async def test_concurrent_leases_are_distinct(self, transport, clock):
        pool = make_pool(transport, clock)
        a, b = await asyncio.gather(pool.acquire(), pool.acquire())
        assert a.id != b.id
        assert pool.stats().total == 2

    @pytest.mark.asyncio
    async def test_waiter_gets_released_connection(self, transport, clock):
        pool = make_pool(transport, clock, max_connections=1, acquire_timeout=1.0)
        held = await pool.acquire()

        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert pool.stats().waiting == 1

        await pool.release(held)
        conn = await waiter

        assert conn.id == held.id
        assert pool.stats().waiting == 0

    @pytest.mark.asyncio
    async def test_exhausted_after_timeout(self, transport, clock):
        pool = make_pool(transport, clock, max_connections=1, acquire_timeout=0.05)
        await pool.acquire()

        with pytest.raises(PoolExhaustedError) as exc_info:
            await pool.acquire()

        assert exc_info.value.retryable is False
        assert pool.stats().waiting == 0

    @pytest.mark.asyncio
    async def test_double_release_raises(self, transport, clock):
        pool = make_pool(transport, clock)
        conn = await pool.acquire()
        await pool.release(conn)

        with pytest.raises(PoolError):
            await pool.release(conn)

    @pytest.mark.asyncio
    async def test_discard_closes_handle(self, transport, clock):
        pool = make_pool(transport, clock)
        conn = await pool.acquire()

        await pool.release(conn, discard=True)

        assert transport.closed == ["conn-1"]
        assert conn.state == ConnectionState.EXPIRED
        assert pool.stats().total == 0

    @pytest.mark.asyncio
    async def test_open_failure_frees_the_slot(self, transport, clock):
        pool = make_pool(transport, clock, max_connections=1)
        transport.fail_open = ConnectionRefusedError("refused")

        with pytest.raises(ConnectionRefusedError):
            await pool.acquire()

        transport.fail_open = None
        conn = await pool.acquire()
        assert conn.handle == "conn-1"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_no_trace(self, transport, clock):
        pool = make_pool(transport, clock, max_connections=1, acquire_timeout=5.0)
        await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert pool.stats().waiting == 0


class TestLease:
    @pytest.mark.asyncio
    async def test_lease_releases(self, transport, clock):
        pool = make_pool(transport, clock)
        async with pool.lease() as conn:
            assert pool.stats().in_use == 1
        assert pool.stats().available == 1
        assert conn.state == ConnectionState.AVAILABLE

    @pytest.mark.asyncio
    async def test_lease_discards_on_error(self, transport, clock):
        pool = make_pool(transport, clock)
        with pytest.raises(RuntimeError):
            async with pool.lease():
                raise RuntimeError("send blew up")

        assert transport.closed == ["conn-1"]
        assert pool.stats().total == 0


class TestEviction:
    @pytest.mark.asyncio
    async def test_lifetime_exceeded_on_release(self, transport, clock):
        pool = make_pool(transport, clock, max_lifetime=100)
        conn = await pool.acquire()
        clock.advance(101)

        await pool.release(conn)

        assert transport.closed == ["conn-1"]

    @pytest.mark.asyncio
    async def test_expired_idle_replaced_on_acquire(self, transport, clock):
        pool = make_pool(transport, clock, max_lifetime=100)
        conn = await pool.acquire()
        await pool.release(conn)
        clock.advance(101)

        fresh = await pool.acquire()

        assert fresh.handle == "conn-2"
        assert transport.closed == ["conn-1"]

    @pytest.mark.asyncio
    async def test_idle_timeout_evicted_by_maintenance(self, transport, clock):
        pool = make_pool(transport, clock, idle_timeout=10)
        conn = await pool.acquire()
        await pool.release(conn)
        clock.advance(11)

        await pool.maintain()

        assert transport.closed == ["conn-1"]
        assert pool.stats().total == 0
        assert pool.stats().evicted == 1

    @pytest.mark.asyncio
    async def test_idle_timeout_keeps_minimum(self, transport, clock):
        pool = make_pool(transport, clock, min_connections=1, idle_timeout=10)
        await pool.maintain()
        clock.advance(11)

        await pool.maintain()

        assert transport.closed == []
        assert pool.stats().available == 1

    @pytest.mark.asyncio
    async def test_maintenance_tops_up_to_min(self, transport, clock):
        pool = make_pool(transport, clock, min_connections=2, max_connections=4)
        await pool.maintain()
        assert pool.stats().available == 2
        assert pool.stats().created == 2


class TestValidation:
    @pytest.mark.asyncio
    async def test_failed_validation_discards(self, transport, clock):
        async def validate(handle):
            return handle != "conn-1"

        pool = ConnectionPool(
            transport,
            PoolConfig(min_connections=0, max_connections=2),
            validate=validate,
            clock=clock,
        )
        conn = await pool.acquire()
        await pool.release(conn)

        again = await pool.acquire()

        assert again.handle == "conn-2"
        assert transport.closed == ["conn-1"]

    @pytest.mark.asyncio
    async def test_validation_exception_discards(self, transport, clock):
        async def validate(handle):
            raise OSError("socket gone")

        pool = ConnectionPool(transport, PoolConfig(min_connections=0), validate=validate, clock=clock)
        conn = await pool.acquire()
        await pool.release(conn)

        again = await pool.acquire()
        assert again.handle == "conn-2"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_opens_min_and_close_drains(self, transport, clock):
        pool = make_pool(transport, clock, min_connections=2, max_connections=3)
        await pool.start()
        assert pool.stats().available == 2

        await pool.close()

        assert pool.closed
        assert sorted(transport.closed) == ["conn-1", "conn-2"]

    @pytest.mark.asyncio
    async def test_acquire_on_closed_pool(self, transport, clock):
        pool = make_pool(transport, clock)
        await pool.close()
        with pytest.raises(PoolError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_close_wakes_waiters(self, transport, clock):
        pool = make_pool(transport, clock, max_connections=1, acquire_timeout=5.0)
        held = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)

        await pool.close()

        with pytest.raises(PoolError):
            await waiter
        await pool.release(held)
        assert transport.closed == ["conn-1"]
