"""Tests for the pending-request table."""

import asyncio

import pytest

from pyYeeLAN.errors import RequestTimeoutError, TransportError
from pyYeeLAN.pending import PendingRequests


class TestResolveReject:

    @pytest.mark.asyncio
    async def test_resolve_completes_future(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=None)
        assert 1 in table

        assert table.resolve(1, "answer") is True
        assert await future == "answer"
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_reject_raises_error(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=None)

        assert table.reject(1, TransportError("gone")) is True
        with pytest.raises(TransportError, match="gone"):
            await future
        assert 1 not in table

    @pytest.mark.asyncio
    async def test_unknown_id_is_ignored(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=None)

        assert table.resolve(99, "nope") is False
        assert table.reject(98, TransportError("nope")) is False
        assert not future.done()
        table.reject_all(TransportError("cleanup"))
        with pytest.raises(TransportError):
            await future

    @pytest.mark.asyncio
    async def test_second_answer_is_discarded(self):
        table = PendingRequests("test")
        future = table.submit(5, timeout=None)
        table.resolve(5, "first")
        assert table.resolve(5, "second") is False
        assert await future == "first"

    @pytest.mark.asyncio
    async def test_out_of_order_answers(self):
        table = PendingRequests("test")
        first = table.submit(1, timeout=None)
        second = table.submit(2, timeout=None)

        table.resolve(2, "two")
        table.resolve(1, "one")

        assert await first == "one"
        assert await second == "two"

    @pytest.mark.asyncio
    async def test_reject_all(self):
        table = PendingRequests("test")
        futures = [table.submit(i, timeout=None) for i in range(1, 4)]

        assert table.reject_all(TransportError("Connection closed")) == 3
        assert len(table) == 0
        for future in futures:
            with pytest.raises(TransportError):
                await future


class TestTimeout:

    @pytest.mark.asyncio
    async def test_timeout_rejects_and_cleans_up(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=0.05)

        with pytest.raises(RequestTimeoutError, match="Bulb response timeout"):
            await future
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_zero_timeout_never_expires(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=0)
        await asyncio.sleep(0.05)
        assert not future.done()
        table.resolve(1, "late")
        assert await future == "late"

    @pytest.mark.asyncio
    async def test_resolved_before_timeout(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=0.05)
        table.resolve(1, "fast")
        await asyncio.sleep(0.1)
        assert await future == "fast"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_removes_entry(self):
        table = PendingRequests("test")
        future = table.submit(1, timeout=None)
        future.cancel()
        await asyncio.sleep(0)
        assert 1 not in table


class TestReusedId:

    @pytest.mark.asyncio
    async def test_reused_id_rejects_previous_entry(self):
        table = PendingRequests("test")
        old = table.submit(1, timeout=None)
        new = table.submit(1, timeout=None)

        with pytest.raises(RequestTimeoutError):
            await old
        assert len(table) == 1

        table.resolve(1, "ok")
        assert await new == "ok"
