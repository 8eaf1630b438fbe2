import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Observer = Callable[[T], None]


class LiveCache(Generic[T]):
    """
    In-memory snapshot for one cache key, rebuilt wholesale.

    Subclasses implement `build()`; `refresh()` runs it and publishes the
    result, `invalidate()` schedules a background rebuild. Rebuild triggers
    that arrive while one is running are collapsed into a single follow-up
    rebuild. Observers receive every published snapshot.
    """

    def __init__(self, key: str, empty: T):
        self.key = key
        self.snapshot: T = empty
        self.loaded = False
        self._observers: list[Observer] = []
        self._rebuild_task: Optional[asyncio.Task] = None
        self._rebuild_queued = False

    async def build(self) -> T:
        raise NotImplementedError

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, snapshot: T) -> None:
        self.snapshot = snapshot
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception(f"cache_observer_failed key={self.key}")

    async def refresh(self) -> T:
        """Rebuild now. Failures propagate and leave the snapshot untouched."""
        result = await self.build()
        self.loaded = True
        self.publish(self.merge(result))
        return self.snapshot

    def merge(self, built: T) -> T:
        return built

    def invalidate(self) -> Optional[asyncio.Task]:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_queued = True
            return self._rebuild_task
        self._rebuild_task = asyncio.ensure_future(self._rebuild_in_background())
        return self._rebuild_task

    async def _rebuild_in_background(self) -> None:
        while True:
            self._rebuild_queued = False
            try:
                await self.refresh()
            except Exception as e:
                logger.warning(f"cache_refresh_failed key={self.key} error={e!r}")
            if not self._rebuild_queued:
                return

    async def wait_idle(self) -> None:
        """Wait for a pending background rebuild, if any."""
        task = self._rebuild_task
        if task is not None and not task.done():
            await task

    def cancel_rebuild(self) -> None:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
        self._rebuild_queued = False
