"""
Keyed async debouncer.

Rapid calls sharing a key are coalesced: each new call restarts the timer,
only the last submitted call runs, and every waiting caller gets its result.

Usage:
    debouncer = Debouncer(wait_ms=200)

    # In a request handler:
    bundle = await debouncer.submit(session_id, build_chart, chart_type, config, ...)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("uvicorn.error")


class _Pending:
    def __init__(self, future: asyncio.Future) -> None:
        self.future = future
        self.timer: Optional[asyncio.TimerHandle] = None
        self.call: Tuple[Callable[..., Any], tuple, dict] = (lambda: None, (), {})
        self.coalesced = 0


class Debouncer:
    def __init__(self, wait_ms: int = 200) -> None:
        self.wait = max(0, wait_ms) / 1000
        self._pending: Dict[str, _Pending] = {}

    def __len__(self) -> int:
        return len(self._pending)

    async def submit(self, key: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        pending = self._pending.get(key)
        if pending is None:
            pending = _Pending(loop.create_future())
            self._pending[key] = pending
        else:
            pending.timer.cancel()
            pending.coalesced += 1

        pending.call = (fn, args, kwargs)
        pending.timer = loop.call_later(self.wait, self._fire, key)
        # A cancelled caller must not cancel the shared result.
        return await asyncio.shield(pending.future)

    def _fire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None or pending.future.done():
            return
        fn, args, kwargs = pending.call
        if pending.coalesced:
            logger.debug("Debounced %d call(s) for key=%s", pending.coalesced, key)
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            pending.future.set_exception(exc)
            return

        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(lambda t: _transfer(t, pending.future))
        else:
            pending.future.set_result(result)

    def cancel_all(self) -> None:
        for pending in self._pending.values():
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.cancel()
        self._pending.clear()


def _transfer(task: asyncio.Future, future: asyncio.Future) -> None:
    if future.done():
        return
    if task.cancelled():
        future.cancel()
    elif task.exception() is not None:
        future.set_exception(task.exception())
    else:
        future.set_result(task.result())
