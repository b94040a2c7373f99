"""Wall-clock access for the sync engine, injectable so tests never sleep."""

from __future__ import annotations

import time
from datetime import date, datetime, timezone


class SystemClock:
    def now(self) -> datetime:
        """Naive UTC, matching the DateTime storage convention."""
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


system_clock = SystemClock()
