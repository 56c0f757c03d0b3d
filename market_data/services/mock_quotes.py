"""Deterministic synthesized market data for simulation mode and fallback.

All numbers derive from a SHA-256 digest of the symbol, so the same symbol
produces the same base price in every process. Python's ``hash()`` is salted
per process and must not be used here.
"""
from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta, timezone

from market_data.schemas.market import IntradayBar, IntradaySeries
from market_data.schemas.quote import Quote
from market_data.services.market_hours import EXCHANGE_TZ

SIMULATED_SOURCE = "simulated"


def symbol_digest(symbol: str) -> int:
    raw = hashlib.sha256(symbol.upper().encode("utf-8")).digest()
    return int.from_bytes(raw[:8], "big")


def _unit(digest: int, shift: int) -> float:
    """Map 10 bits of the digest to [-0.5, 0.5)."""
    return ((digest >> shift) % 1000) / 1000 - 0.5


def base_price(symbol: str) -> float:
    return float(symbol_digest(symbol) % 500 + 50)


def volatility(symbol: str) -> float:
    return ((symbol_digest(symbol) >> 16) % 100) / 1000 + 0.01


def synthesize_quote(symbol: str, now: datetime | None = None) -> Quote:
    symbol = symbol.upper()
    current = now or datetime.now(timezone.utc)
    digest = symbol_digest(symbol)
    base = base_price(symbol)
    vol = volatility(symbol)

    change = base * vol * _unit(digest, 32)
    price = base + change

    return Quote(
        symbol=symbol,
        price=round(price, 2),
        change=round(change, 2),
        change_percent=round(change / base * 100, 2),
        volume=digest % 10_000_000 + 100_000,
        open=round(base * (1 + vol * _unit(digest, 48)), 2),
        high=round(base * (1 + vol), 2),
        low=round(base * (1 - vol), 2),
        previous_close=round(base, 2),
        last_updated=current.astimezone(EXCHANGE_TZ).date().isoformat(),
        fetched_at=current.astimezone(timezone.utc).isoformat(),
        source=SIMULATED_SOURCE,
        simulated=True,
        market_cap=f"{digest % 1000 + 100}B",
        pe=float(digest % 30 + 5),
    )


def synthesize_intraday(
    symbol: str,
    interval: str,
    outputsize: str,
    now: datetime | None = None,
    *,
    max_points: int,
) -> IntradaySeries:
    symbol = symbol.upper()
    current = (now or datetime.now(timezone.utc)).astimezone(EXCHANGE_TZ)
    step_min = int(interval.removesuffix("min"))
    end = current.replace(second=0, microsecond=0)
    end = end - timedelta(minutes=end.minute % step_min)

    digest = symbol_digest(symbol)
    base = base_price(symbol)
    vol = volatility(symbol)
    phase = digest % 97

    bars: list[IntradayBar] = []
    for i in range(max_points):
        ts = end - timedelta(minutes=step_min * (max_points - 1 - i))
        mid = base * (1 + vol * 0.5 * math.sin((i + phase) / 7))
        spread = base * vol * 0.1
        open_ = mid - spread * math.cos((i + phase) / 3) / 2
        close = mid + spread * math.cos((i + phase) / 3) / 2
        bars.append(
            IntradayBar(
                time=ts.strftime("%Y-%m-%d %H:%M:%S"),
                open=round(open_, 2),
                high=round(max(open_, close) + spread / 2, 2),
                low=round(min(open_, close) - spread / 2, 2),
                close=round(close, 2),
                volume=(digest >> (i % 32)) % 50_000 + 1_000,
            )
        )

    return IntradaySeries(
        symbol=symbol,
        interval=interval,
        outputsize=outputsize,
        data_points=len(bars),
        data=bars,
        last_refreshed=bars[-1].time if bars else end.strftime("%Y-%m-%d %H:%M:%S"),
        fetched_at=current.astimezone(timezone.utc).isoformat(),
        simulated=True,
    )
