"""
Timeframe filter.

A condition's timeframe is resolved once into an inclusive [start, end]
window. The SQL event store pushes the window into its WHERE clause; the
in-memory store applies it with ``restrict``. A missing or unreadable
timeframe resolves to no window, i.e. no restriction.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from analytics_engine.schemas.segment import Timeframe, TimeframeType

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive time window; a None bound is open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


def resolve_window(timeframe: Optional[Timeframe], now: Optional[datetime] = None) -> Optional[TimeWindow]:
    """Turn a condition timeframe into a window, or None when it restricts nothing."""
    if timeframe is None:
        return None
    now = as_utc(now or utcnow())
    value = timeframe.value

    if timeframe.type == TimeframeType.LAST_N_DAYS:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            try:
                return TimeWindow(start=now - timedelta(days=value))
            except OverflowError:
                # Outside the datetime range; treated like any other unusable value
                pass

    elif timeframe.type == TimeframeType.BETWEEN:
        if isinstance(value, dict):
            start = parse_timestamp(value.get("start"))
            end = parse_timestamp(value.get("end"))
            if start is not None and end is not None:
                return TimeWindow(start=start, end=end)

    elif timeframe.type == TimeframeType.SINCE:
        start = parse_timestamp(value)
        if start is not None:
            return TimeWindow(start=start)

    elif timeframe.type == TimeframeType.BEFORE:
        end = parse_timestamp(value)
        if end is not None:
            return TimeWindow(end=end)

    logger.debug("Ignoring %s timeframe with unusable value %r", timeframe.type.value, value)
    return None


def restrict(events: Iterable[Any], window: Optional[TimeWindow]) -> List[Any]:
    """Keep events whose created_at falls inside the window."""
    if window is None:
        return list(events)
    return [event for event in events if window.contains(event.created_at)]
