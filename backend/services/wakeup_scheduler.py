"""
Per-room wake-up timer.

At most one pending wake-up per room: arming replaces the previous one, and
cancel() is best-effort. A wake-up that already woke up and is running its
callback is no longer pending, so re-arming from inside the callback (the next
round's deadline) never cancels the callback itself.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

WakeupCallback = Callable[[], Awaitable[None]]


class WakeupScheduler:

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, room_id: str, at: datetime, callback: WakeupCallback) -> None:
        self.cancel(room_id)
        self._tasks[room_id] = asyncio.create_task(self._fire_at(room_id, at, callback))

    def cancel(self, room_id: str) -> bool:
        """Returns True if a pending wake-up was cancelled."""
        task = self._tasks.pop(room_id, None)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def cancel_all(self) -> None:
        for room_id in list(self._tasks):
            self.cancel(room_id)

    def is_pending(self, room_id: str) -> bool:
        task = self._tasks.get(room_id)
        return task is not None and not task.done()

    async def _fire_at(self, room_id: str, at: datetime, callback: WakeupCallback) -> None:
        delay = (at - datetime.now(timezone.utc)).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if self._tasks.get(room_id) is asyncio.current_task():
            self._tasks.pop(room_id, None)
        try:
            await callback()
        except Exception:
            logger.exception("[%s] Wake-up callback failed", room_id)


# Module-level singleton shared by every room coordinator
wakeup_scheduler = WakeupScheduler()
