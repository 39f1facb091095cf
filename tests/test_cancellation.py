"""
Tests for cancellation tokens and guarded awaits.
"""
import asyncio

import pytest

from multiwallet_sdk.cancellation import CancellationToken, run_guarded
from multiwallet_sdk.exceptions import OperationCancelledError, TimeoutError


class TestCancellationToken:

    def test_cancel_runs_callbacks_once(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert token.cancelled
        assert calls == [1]

    def test_callback_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_child_follows_parent(self):
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        parent.cancel()
        assert child.cancelled

    def test_detached_child_ignores_parent(self):
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        child.detach()
        parent.cancel()
        assert not child.cancelled

    def test_child_does_not_cancel_parent(self):
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        child.cancel()
        assert not parent.cancelled

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()


class TestRunGuarded:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 5
        assert await run_guarded(work(), timeout=1.0) == 5

    @pytest.mark.asyncio
    async def test_propagates_exceptions(self):
        async def work():
            raise ValueError("bad")
        with pytest.raises(ValueError):
            await run_guarded(work(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_timeout_cancels_inner_task(self):
        cancelled = []

        async def hang():
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        with pytest.raises(TimeoutError):
            await run_guarded(hang(), timeout=0.01)
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_cancel_token_interrupts(self):
        token = CancellationToken()
        cancelled = []

        async def hang():
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)
        with pytest.raises(OperationCancelledError):
            await run_guarded(hang(), timeout=5.0, cancel=token)
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts(self):
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(OperationCancelledError):
            await run_guarded(work(), cancel=token)
        assert started == []
