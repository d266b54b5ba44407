"""Periodic background task with explicit lifecycle.

The owner (normally the FastAPI lifespan) calls ``start()`` and ``stop()``.
Tests call ``tick()`` directly and never wait on the wall clock.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callback every ``interval`` seconds.

    Each interval spawns a fresh run, so a slow run never delays the next one.
    Runs may overlap; the callback must be safe under that.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval: float,
    ):
        """
        Initialize the periodic task.

        Args:
            name: Name used in log lines
            callback: Coroutine function executed on every tick
            interval: Seconds between ticks
        """
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.callback = callback
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start ticking in the background."""
        if self._running:
            logger.warning(f"Periodic task {self.name} already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Periodic task {self.name} started (interval={self.interval}s)")

    async def stop(self):
        """Stop ticking and wait for in-flight runs to finish."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        logger.info(f"Periodic task {self.name} stopped")

    async def tick(self) -> Any:
        """Run the callback once and return its result.

        Exceptions propagate to the caller.
        """
        return await self.callback()

    async def _guarded_tick(self):
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Error in periodic task {self.name}: {str(e)}", exc_info=True)

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break
            run = asyncio.create_task(self._guarded_tick())
            self._in_flight.add(run)
            run.add_done_callback(self._in_flight.discard)
