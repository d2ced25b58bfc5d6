import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class RefreshSignal:
    """
    Data-version counter shared by every view that shows collection data.

    Any mutation path calls ``refresh()`` once its write has landed and the
    data cache was cleared; views either subscribe a callback or await
    ``wait_for_change()`` and refetch when the version moves. There is no
    per-collection granularity, matching the all-or-nothing cache reset.
    """

    def __init__(self):
        self._version = 0
        self._listeners: List[Callable[[int], None]] = []
        self._waiters: List[asyncio.Future] = []

    @property
    def version(self) -> int:
        return self._version

    def refresh(self) -> int:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self._version)
            except Exception:
                logger.exception("Refresh listener %r failed", listener)
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(self._version)
        logger.debug("data version -> %d", self._version)
        return self._version

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_for_change(self, since: int, timeout: Optional[float] = None) -> int:
        """Return the first version newer than ``since``, or the current one on timeout."""
        if self._version > since:
            return self._version
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            return self._version
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
