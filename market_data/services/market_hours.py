from __future__ import annotations

from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from market_data.schemas.market import MarketStatus

EXCHANGE_TZ_NAME = "America/New_York"
EXCHANGE_TZ = ZoneInfo(EXCHANGE_TZ_NAME)
MARKET_OPEN_TIME = time(9, 30)
MARKET_CLOSE_TIME = time(16, 0)

_WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _to_exchange_time(now: datetime | None) -> datetime:
    current = now or datetime.now(EXCHANGE_TZ)
    if current.tzinfo is None:
        return current.replace(tzinfo=EXCHANGE_TZ)
    return current.astimezone(EXCHANGE_TZ)


def is_market_open(now: datetime | None = None) -> bool:
    """Return whether the regular US equity session is open (no holiday calendar)."""
    local_now = _to_exchange_time(now)
    if local_now.weekday() >= 5:
        return False
    return MARKET_OPEN_TIME <= local_now.time() < MARKET_CLOSE_TIME


def _next_session_label(local_now: datetime) -> str:
    weekday = local_now.weekday()
    if weekday < 5 and local_now.time() < MARKET_OPEN_TIME:
        return f"{_WEEKDAYS[weekday]} {MARKET_OPEN_TIME:%H:%M}"
    if weekday < 4:
        return f"{_WEEKDAYS[weekday + 1]} {MARKET_OPEN_TIME:%H:%M}"
    return f"Monday {MARKET_OPEN_TIME:%H:%M}"


def build_market_status(now: datetime | None = None) -> MarketStatus:
    local_now = _to_exchange_time(now)
    open_now = is_market_open(local_now)
    return MarketStatus(
        is_open=open_now,
        timezone=EXCHANGE_TZ_NAME,
        current_time=local_now.strftime("%H:%M:%S"),
        market_open=MARKET_OPEN_TIME.strftime("%H:%M"),
        market_close=MARKET_CLOSE_TIME.strftime("%H:%M"),
        fetched_at=local_now.astimezone(timezone.utc).isoformat(),
        next_close=f"{_WEEKDAYS[local_now.weekday()]} {MARKET_CLOSE_TIME:%H:%M}" if open_now else None,
        next_open=None if open_now else _next_session_label(local_now),
    )
