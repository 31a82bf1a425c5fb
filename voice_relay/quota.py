"""
quota.py — Voice Relay · Quota Guard
====================================
Client-side lock for the backend's daily usage limit.

  lock(reason, unlock_at_ms)  disable input, persist deadline, banner + countdown
  unlock()                    clear deadline, re-enable input, remove banner
  restore()                   re-apply a persisted future deadline on start-up

The deadline lives in a small JSON file so it survives restarts without
asking the server again.  A model switch unlocks immediately: the new
model draws on a fresh quota bucket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from .surface import Surface

log = logging.getLogger("voice_relay.quota")


def _now_ms() -> int:
    return int(time.time() * 1000)


class QuotaStore:
    """Single persisted key: the quota unlock epoch in ms."""

    KEY = "quota_unlock_at_ms"

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[int]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            value = data.get(self.KEY)
            return int(value) if value is not None else None
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            log.warning("event=quota_store_unreadable path=%s error=%s", self._path, exc)
            return None

    def save(self, unlock_at_ms: int) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({self.KEY: int(unlock_at_ms)}), encoding="utf-8")

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class QuotaGuard:
    def __init__(
        self,
        store: QuotaStore,
        surface: Surface,
        *,
        models: Sequence[str] = (),
        countdown_interval: float = 1.0,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._surface = surface
        self._models = list(models)
        self._interval = countdown_interval
        self._clock = clock

        self._locked = False
        self._unlock_at_ms: Optional[int] = None
        self._countdown_task: Optional[asyncio.Task] = None

        # Wired by the Turn Controller
        self.on_lock: Optional[Callable[[], None]] = None
        self.on_unlock: Optional[Callable[[], None]] = None

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def unlock_at_ms(self) -> Optional[int]:
        return self._unlock_at_ms

    def remaining_ms(self) -> int:
        if self._unlock_at_ms is None:
            return 0
        return max(0, self._unlock_at_ms - self._clock())

    # -- transitions -------------------------------------------------------

    def lock(self, reason: str, unlock_at_ms: int, model: Optional[str] = None) -> bool:
        """Lock until *unlock_at_ms*.  Returns False (no-op) if already locked."""
        if self._locked:
            log.debug("event=quota_lock_skipped reason=already_locked")
            return False

        self._locked = True
        self._unlock_at_ms = int(unlock_at_ms)
        self._store.save(self._unlock_at_ms)
        self._surface.set_input_enabled(False)
        if self.on_lock is not None:
            self.on_lock()

        offers = [m for m in self._models if m != model]
        self._surface.show_quota_banner(reason, self.remaining_ms(), offers)
        log.warning(
            "event=quota_locked reason=%r model=%s unlock_at_ms=%d remaining_ms=%d",
            reason, model, self._unlock_at_ms, self.remaining_ms(),
        )
        self._start_countdown()
        return True

    def unlock(self, reason: str = "manual") -> bool:
        """Clear the lock.  Persisted state is cleared even when not locked."""
        self._store.clear()
        if not self._locked:
            return False

        self._locked = False
        self._unlock_at_ms = None
        self._cancel_countdown()
        self._surface.set_input_enabled(True)
        self._surface.hide_quota_banner()
        log.info("event=quota_unlocked reason=%s", reason)
        if self.on_unlock is not None:
            self.on_unlock()
        return True

    def restore(self) -> bool:
        """Re-apply a persisted lock whose deadline is still in the future."""
        unlock_at = self._store.load()
        if unlock_at is None:
            return False
        if unlock_at <= self._clock():
            log.info("event=quota_restore_expired unlock_at_ms=%d", unlock_at)
            self._store.clear()
            return False
        log.info("event=quota_restore unlock_at_ms=%d", unlock_at)
        return self.lock("Daily quota exceeded", unlock_at)

    # -- countdown ---------------------------------------------------------

    def _start_countdown(self) -> None:
        self._cancel_countdown()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            log.debug("event=quota_countdown_deferred reason=no_event_loop")
            return
        self._countdown_task = asyncio.create_task(self._countdown(), name="quota_countdown")

    def _cancel_countdown(self) -> None:
        task = self._countdown_task
        self._countdown_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _countdown(self) -> None:
        try:
            while self._locked:
                remaining = self.remaining_ms()
                if remaining <= 0:
                    self.unlock(reason="countdown")
                    return
                self._surface.update_quota_countdown(remaining)
                await asyncio.sleep(min(self._interval, remaining / 1000.0))
        except asyncio.CancelledError:
            log.debug("event=quota_countdown_cancelled")
            raise
