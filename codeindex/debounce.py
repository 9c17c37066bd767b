"""Reset-on-trigger debounce timer for the asyncio event loop."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """Run *callback* once the triggers have been quiet for *delay_ms*.

    Only one timer is ever pending; each ``trigger()`` cancels and re-arms it.
    Coroutine callbacks are scheduled as tasks on the loop.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        delay_ms: int,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._callback = callback
        self._delay = delay_ms / 1000.0
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def trigger(self) -> None:
        """(Re)arm the timer."""
        loop = self._get_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Fire immediately if a call is pending."""
        if self._handle is not None:
            self._handle.cancel()
            self._fire()

    def _fire(self) -> None:
        self._handle = None
        try:
            result = self._callback()
        except Exception:
            logger.exception("Debounced callback failed")
            return
        if inspect.isawaitable(result):
            task = self._get_loop().create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for any coroutine started by a previous fire to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
