import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs `func` every `interval` seconds on one background task.

    Ticks run sequentially, so a slow tick delays the next one instead of
    overlapping it. `stop()` cancels the task and waits for it to finish.
    """

    def __init__(
        self,
        func: Callable[[], Awaitable[object]],
        interval: float,
        name: str = "periodic-task",
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._func = func
        self._interval = interval
        self._name = name
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name=self._name)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self) -> "PeriodicTask":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _run_loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while True:
            try:
                await self._func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s tick failed: %s", self._name, e)
            self.ticks += 1
            await asyncio.sleep(self._interval)
