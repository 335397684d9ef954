"""
Tests for the keyed async debouncer.
"""

import asyncio

import pytest

from server.debounce import Debouncer


def run(coro):
    return asyncio.run(coro)


class TestDebouncer:
    """Coalescing of rapid calls."""

    def test_single_call_runs(self):
        async def scenario():
            debouncer = Debouncer(wait_ms=10)
            return await debouncer.submit("k", lambda x: x * 2, 21)

        assert run(scenario()) == 42

    def test_rapid_calls_share_last_result(self):
        calls = []

        def work(value):
            calls.append(value)
            return value

        async def scenario():
            debouncer = Debouncer(wait_ms=30)
            tasks = [asyncio.create_task(debouncer.submit("k", work, i)) for i in range(3)]
            return await asyncio.gather(*tasks)

        assert run(scenario()) == [2, 2, 2]
        assert calls == [2]

    def test_keys_are_independent(self):
        async def scenario():
            debouncer = Debouncer(wait_ms=10)
            return await asyncio.gather(
                debouncer.submit("a", str.upper, "a"),
                debouncer.submit("b", str.upper, "b"),
            )

        assert run(scenario()) == ["A", "B"]

    def test_exception_reaches_every_caller(self):
        def boom():
            raise ValueError("bad config")

        async def scenario():
            debouncer = Debouncer(wait_ms=10)
            return await asyncio.gather(
                debouncer.submit("k", boom),
                debouncer.submit("k", boom),
                return_exceptions=True,
            )

        results = run(scenario())
        assert all(isinstance(r, ValueError) for r in results)

    def test_coroutine_functions(self):
        async def work(value):
            await asyncio.sleep(0)
            return value + 1

        async def scenario():
            return await Debouncer(wait_ms=0).submit("k", work, 1)

        assert run(scenario()) == 2

    def test_calls_after_window_run_again(self):
        calls = []

        async def scenario():
            debouncer = Debouncer(wait_ms=5)
            await debouncer.submit("k", calls.append, 1)
            await debouncer.submit("k", calls.append, 2)
            return len(debouncer)

        assert run(scenario()) == 0
        assert calls == [1, 2]

    def test_cancel_all(self):
        async def scenario():
            debouncer = Debouncer(wait_ms=1000)
            task = asyncio.create_task(debouncer.submit("k", lambda: 1))
            await asyncio.sleep(0)
            debouncer.cancel_all()
            with pytest.raises(asyncio.CancelledError):
                await task

        run(scenario())
