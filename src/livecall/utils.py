"""Miscellaneous small utilities shared across the call stack."""
from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
import os
import re
import time
from typing import Optional

DEFAULT_ROOM_ID = "knowledgehub-live-room"


def now_iso() -> str:
    """Return the current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    """Return the current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def env_bool(name: str, default: bool) -> bool:
    """Parse an environment variable as a boolean.

    Values like ``1``, ``true``, ``yes`` and ``on`` are treated as ``True`` while
    ``0``/``false``/``no``/``off`` map to ``False``.  If the variable is not set
    the ``default`` value is returned.
    """

    val = os.getenv(name)
    if val is None:
        return default
    try:
        return bool(int(val))
    except ValueError:
        return val.strip().lower() in {"true", "t", "yes", "y", "on"}


def derive_room_id(room_id: Optional[str] = None, meeting_link: Optional[str] = None) -> str:
    """Pick the room a call joins.

    An explicit ``room_id`` wins.  Otherwise the alphanumeric characters of
    the booking's meeting link are used as ``room-<token>``; with neither,
    every caller lands in the shared default room.
    """

    if room_id and room_id.strip():
        return room_id.strip()
    if meeting_link:
        sanitized = re.sub(r"[^a-zA-Z0-9]", "", meeting_link)
        if sanitized:
            return f"room-{sanitized}"
    return DEFAULT_ROOM_ID


def format_duration(seconds: int) -> str:
    """Render a second counter as ``MM:SS``."""
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


class SecondCounter:
    """Counter that increments once per second while running.

    Used for the call and recording duration displays.  ``start()`` resets
    the value to zero; ``stop()`` freezes it.
    """

    def __init__(self, interval: float = 1.0) -> None:
        self.value = 0
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self.value = 0
        self._task = asyncio.create_task(self._tick(), name="second-counter")

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    def reset(self) -> None:
        self.value = 0

    async def _tick(self) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            while True:
                await asyncio.sleep(self.interval)
                self.value += 1


__all__ = [
    "DEFAULT_ROOM_ID",
    "now_iso",
    "epoch_ms",
    "env_bool",
    "derive_room_id",
    "format_duration",
    "SecondCounter",
]
