"""Cooperative stop signal shared by a run's long-running loops."""

import asyncio


class StopSignal:
    """
    One-way stop flag for a single run.

    Loops poll ``is_set`` between work units. ``wait`` doubles as an
    interruptible sleep: it returns early once the signal is set. An
    external call already in flight is never preempted.
    """

    def __init__(self):
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """
        Sleep up to ``timeout`` seconds, waking early on stop.

        Returns:
            True if the signal is set
        """
        if self._event.is_set():
            return True
        if timeout <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()
