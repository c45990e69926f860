"""Per-prompt countdown with a single-fire expiry callback."""
import asyncio
import logging
from typing import Callable, Optional

from ssbprep.constants import TIMER_WARNING_SECONDS, TIMER_CRITICAL_SECONDS

logger = logging.getLogger(__name__)


class PromptTimer:
    """
    Count down a fixed number of whole seconds.

    The timer only moves while active. ``tick()`` removes one second and the
    tick that reaches zero invokes ``on_expire`` exactly once. The expiry latch
    is set before the callback runs, so a callback that stops or discards the
    timer cannot cause a second firing.

    Starting and stopping is reserved for the session state machine. Stopping
    and starting again resumes from the remaining time; it never restarts the
    countdown.

    Args:
        total_seconds: Countdown length, zero or positive
        on_expire: Called once when the remaining time reaches zero
        tick_interval: Wall-clock seconds between ticks when run in the background
    """

    def __init__(
        self,
        total_seconds: int,
        on_expire: Optional[Callable[[], None]] = None,
        tick_interval: float = 1.0,
    ):
        if total_seconds < 0:
            raise ValueError("Timer duration cannot be negative")
        self.total_seconds = int(total_seconds)
        self.remaining = int(total_seconds)
        self.on_expire = on_expire
        self.tick_interval = tick_interval
        self.is_active = False
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def expired(self) -> bool:
        return self._fired

    @property
    def elapsed(self) -> int:
        return self.total_seconds - self.remaining

    @property
    def progress(self) -> float:
        """Fraction of the countdown consumed, 0.0 to 1.0."""
        if self.total_seconds == 0:
            return 1.0 if self._fired else 0.0
        return self.elapsed / self.total_seconds

    @property
    def phase(self) -> str:
        if self.remaining <= TIMER_CRITICAL_SECONDS:
            return "critical"
        if self.remaining <= TIMER_WARNING_SECONDS:
            return "warning"
        return "normal"

    def format_remaining(self) -> str:
        minutes, seconds = divmod(self.remaining, 60)
        return f"{minutes}:{seconds:02d}"

    def start(self) -> None:
        self.is_active = True

    def stop(self) -> None:
        """Deactivate and cancel the background task, if any."""
        self.is_active = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def tick(self) -> bool:
        """
        Advance the countdown by one second.

        Returns:
            True if this tick fired the expiry callback
        """
        if not self.is_active or self._fired:
            return False

        self.remaining = max(0, self.remaining - 1)
        if self.remaining > 0:
            return False

        self._fired = True
        self.is_active = False
        if self.on_expire is not None:
            try:
                self.on_expire()
            except Exception:
                logger.error("Timer expiry callback failed", exc_info=True)
                raise
        return True

    def tick_many(self, count: int) -> bool:
        """Apply ``count`` ticks; returns True if expiry fired during them."""
        fired = False
        for _ in range(max(0, count)):
            if self._fired or not self.is_active:
                break
            fired = self.tick() or fired
        return fired

    async def run(self) -> None:
        """Tick once per interval until expired or stopped."""
        while self.is_active and not self._fired:
            await asyncio.sleep(self.tick_interval)
            if not self.is_active:
                break
            self.tick()

    def start_background(self) -> asyncio.Task:
        """Activate and schedule ``run()`` on the running event loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self.start()
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def snapshot(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "remaining_seconds": self.remaining,
            "display": self.format_remaining(),
            "progress": round(self.progress, 4),
            "phase": self.phase,
            "expired": self.expired,
        }
