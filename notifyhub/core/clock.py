from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable


class Clock:
    # Wall-clock seconds since the epoch; tests inject a controllable source.
    def __init__(self, time_source: Callable[[], float] | None = None) -> None:
        self._time_source = time_source or time.time

    def time(self) -> float:
        return float(self._time_source())

    def time_ms(self) -> int:
        return int(self.time() * 1000)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.time(), tz=timezone.utc)


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    # Calendar month in UTC containing moment, as [start, end).
    moment = moment.astimezone(timezone.utc)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def year_month(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m")
