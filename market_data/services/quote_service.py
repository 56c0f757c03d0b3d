from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from market_data.errors import (
    CacheUnavailableError,
    InvalidBatchError,
    InvalidRequestError,
    InvalidSymbolError,
    MarketDataError,
    NotFoundError,
    ProviderNotConfiguredError,
    RateLimitedError,
)
from market_data.schemas.market import (
    IntradayBar,
    IntradaySeries,
    MarketStatus,
    SymbolMatch,
    SymbolSearchResult,
)
from market_data.schemas.quote import BatchQuoteError, Quote
from market_data.services.kv_store import KeyValueStore
from market_data.services.market_hours import EXCHANGE_TZ, build_market_status
from market_data.services.mock_quotes import synthesize_intraday, synthesize_quote

logger = logging.getLogger(__name__)

T = TypeVar("T")

FALLBACK_FAIL = "fail"
FALLBACK_SYNTHESIZE = "synthesize"

PROVIDER_SOURCE = "alpha-vantage"
MARKET_STATUS_KEY = "market:status"
CLEARABLE_NAMESPACES = ("quote", "intraday", "search")

VALID_INTERVALS = ("1min", "5min", "15min", "30min", "60min")
OUTPUTSIZE_LIMITS = {"compact": 100, "full": 500}
SEARCH_RESULT_LIMIT = 10

_SYMBOL_RE = re.compile(r"^[A-Z0-9]{1,10}$")


def normalize_symbol(symbol: Any) -> str:
    value = str(symbol or "").strip().upper()
    if not _SYMBOL_RE.match(value):
        raise InvalidSymbolError(f"invalid symbol format: {value!r}")
    return value


def quote_key(symbol: str) -> str:
    return f"quote:{symbol}"


def intraday_key(symbol: str, interval: str, outputsize: str) -> str:
    return f"intraday:{symbol}:{interval}:{outputsize}"


def search_key(keywords: str) -> str:
    return f"search:{keywords.lower()}"


class QuoteCacheService:
    """Cache-first market data resolver.

    Every read goes to the key-value store first; a miss is filled from the
    provider (or synthesized in simulation mode) and written back with a
    fixed TTL. Concurrent misses on the same key may each hit the provider;
    the last write wins.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore,
        provider=None,
        simulation_mode: bool = False,
        fallback_policy: str = FALLBACK_FAIL,
        market_open_checker: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        quote_ttl_sec: int = 300,
        intraday_ttl_sec: int = 60,
        search_ttl_sec: int = 3600,
        market_status_ttl_sec: int = 300,
        batch_delay_sec: float = 1.0,
        batch_max_symbols: int = 10,
    ) -> None:
        if fallback_policy not in (FALLBACK_FAIL, FALLBACK_SYNTHESIZE):
            raise ValueError(f"unknown fallback policy: {fallback_policy}")

        self.store = store
        self.provider = provider
        self.simulation_mode = simulation_mode
        self.fallback_policy = fallback_policy
        self.market_open_checker = market_open_checker or (lambda: self.get_market_status().is_open)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep_fn = sleep_fn
        self.quote_ttl_sec = quote_ttl_sec
        self.intraday_ttl_sec = intraday_ttl_sec
        self.search_ttl_sec = search_ttl_sec
        self.market_status_ttl_sec = market_status_ttl_sec
        self.batch_delay_sec = batch_delay_sec
        self.batch_max_symbols = batch_max_symbols

        self.cache_hits = 0
        self.cache_misses = 0
        self.cache_errors = 0
        self.provider_calls = 0
        self.provider_errors = 0
        self.rate_limited = 0
        self.synthesized = 0
        self.fallbacks = 0
        self.batch_requested = 0
        self.batch_succeeded = 0

    @classmethod
    def from_settings(cls, settings, *, store: KeyValueStore, provider=None) -> "QuoteCacheService":
        return cls(
            store=store,
            provider=provider,
            simulation_mode=settings.simulation_mode,
            fallback_policy=settings.FALLBACK_POLICY,
            quote_ttl_sec=settings.QUOTE_CACHE_TTL_SEC,
            intraday_ttl_sec=settings.INTRADAY_CACHE_TTL_SEC,
            search_ttl_sec=settings.SEARCH_CACHE_TTL_SEC,
            market_status_ttl_sec=settings.MARKET_STATUS_CACHE_TTL_SEC,
            batch_delay_sec=settings.BATCH_REQUEST_DELAY_SEC,
            batch_max_symbols=settings.BATCH_MAX_SYMBOLS,
        )

    @property
    def uses_provider(self) -> bool:
        return not self.simulation_mode and self.provider is not None

    # -- cache plumbing -------------------------------------------------

    def _read_cache(self, key: str) -> str | None:
        try:
            return self.store.get(key)
        except CacheUnavailableError as exc:
            self.cache_errors += 1
            logger.warning("[CACHE][read_failed] key=%s error=%s", key, exc)
            return None

    def _write_cache(self, key: str, value: str, ttl_sec: int) -> None:
        try:
            self.store.set(key, value, ttl_sec)
        except CacheUnavailableError as exc:
            self.cache_errors += 1
            logger.warning("[CACHE][write_failed] key=%s error=%s", key, exc)

    def _load_cached(self, key: str, model: type[T]) -> T | None:
        raw = self._read_cache(key)
        if raw is None:
            self.cache_misses += 1
            return None
        try:
            row = model.model_validate_json(raw)
        except ValidationError as exc:
            self.cache_misses += 1
            logger.warning("[CACHE][malformed_entry] key=%s error_count=%d", key, exc.error_count())
            return None
        if isinstance(row, Quote) and row.price <= 0:
            self.cache_misses += 1
            return None
        self.cache_hits += 1
        return row.model_copy(update={"cached": True})

    def _store_model(self, key: str, row, ttl_sec: int) -> None:
        self._write_cache(key, row.model_dump_json(by_alias=True), ttl_sec)

    # -- provider plumbing ----------------------------------------------

    def _provider_or_fallback(
        self,
        symbol: str,
        call: Callable[[], T],
        synthesize: Callable[[], T],
    ) -> T:
        self.provider_calls += 1
        try:
            return call()
        except MarketDataError as exc:
            self.provider_errors += 1
            if isinstance(exc, RateLimitedError):
                self.rate_limited += 1
            if self.fallback_policy != FALLBACK_SYNTHESIZE:
                logger.warning("[PROVIDER][error] symbol=%s code=%s error=%s", symbol, exc.code, exc)
                raise
            logger.warning(
                "[PROVIDER][fallback_synthesized] symbol=%s code=%s error=%s", symbol, exc.code, exc
            )
            self.fallbacks += 1
            self.synthesized += 1
            return synthesize()

    # -- quotes -----------------------------------------------------------

    @staticmethod
    def apply_market_closed_price(quote: Quote) -> Quote:
        """Use the session high as the price estimate outside trading hours."""
        if quote.high <= 0:
            return quote
        change = quote.high - quote.previous_close
        change_percent = change / quote.previous_close * 100 if quote.previous_close > 0 else 0.0
        return quote.model_copy(
            update={
                "price": quote.high,
                "change": round(change, 2),
                "change_percent": round(change_percent, 2),
                "market_closed_price": True,
            }
        )

    def _quote_from_provider(self, symbol: str, now: datetime) -> Quote:
        payload = self.provider.get_quote(symbol)
        if payload is None or payload.get("price", 0) <= 0:
            raise NotFoundError(f"no quote data for {symbol}")

        quote = Quote(
            symbol=symbol,
            price=payload["price"],
            change=payload.get("change", 0.0),
            change_percent=payload.get("change_percent", 0.0),
            volume=payload.get("volume", 0),
            open=payload.get("open", 0.0),
            high=payload.get("high", 0.0),
            low=payload.get("low", 0.0),
            previous_close=payload.get("previous_close", 0.0),
            last_updated=payload.get("last_updated") or now.astimezone(EXCHANGE_TZ).date().isoformat(),
            fetched_at=now.astimezone(timezone.utc).isoformat(),
            source=PROVIDER_SOURCE,
        )
        if not self.market_open_checker():
            quote = self.apply_market_closed_price(quote)
        return quote

    def _fetch_and_store_quote(self, symbol: str) -> Quote:
        now = self.clock()
        if self.uses_provider:
            quote = self._provider_or_fallback(
                symbol,
                lambda: self._quote_from_provider(symbol, now),
                lambda: synthesize_quote(symbol, now),
            )
        else:
            self.synthesized += 1
            quote = synthesize_quote(symbol, now)

        self._store_model(quote_key(symbol), quote, self.quote_ttl_sec)
        logger.info(
            "[QUOTE][cache_fill] symbol=%s source=%s price=%s market_closed_price=%s",
            symbol,
            quote.source,
            quote.price,
            quote.market_closed_price,
        )
        return quote

    def get_quote(self, symbol: str) -> Quote:
        symbol = normalize_symbol(symbol)
        cached = self._load_cached(quote_key(symbol), Quote)
        if cached is not None:
            logger.debug("[QUOTE][cache_hit] symbol=%s", symbol)
            return cached
        return self._fetch_and_store_quote(symbol)

    def get_batch_quotes(self, symbols: list[str]) -> list[Quote | BatchQuoteError]:
        if not symbols:
            raise InvalidBatchError("at least one symbol is required")
        if len(symbols) > self.batch_max_symbols:
            raise InvalidBatchError(f"maximum {self.batch_max_symbols} symbols allowed")

        unique_symbols: list[str] = []
        seen: set[str] = set()
        for symbol in symbols:
            value = str(symbol).strip().upper()
            if value in seen:
                continue
            seen.add(value)
            unique_symbols.append(value)

        out: list[Quote | BatchQuoteError] = []
        provider_hits = 0
        rate_limited: RateLimitedError | None = None
        for symbol in unique_symbols:
            try:
                normalized = normalize_symbol(symbol)
                cached = self._load_cached(quote_key(normalized), Quote)
                if cached is not None:
                    out.append(cached)
                    continue

                if self.uses_provider:
                    # remaining misses are not sent once the provider has throttled this batch
                    if rate_limited is not None:
                        raise RateLimitedError(f"skipped after rate limit: {rate_limited}")
                    # only provider calls are spaced out; cache hits never wait
                    if provider_hits and self.batch_delay_sec > 0:
                        self.sleep_fn(self.batch_delay_sec)
                    provider_hits += 1
                out.append(self._fetch_and_store_quote(normalized))
            except MarketDataError as exc:
                if isinstance(exc, RateLimitedError) and rate_limited is None:
                    rate_limited = exc
                out.append(BatchQuoteError(symbol=symbol, error=str(exc), code=exc.code))

        succeeded = sum(1 for row in out if isinstance(row, Quote))
        self.batch_requested += len(unique_symbols)
        self.batch_succeeded += succeeded

        logger.info(
            "[QUOTE][batch_resolve] target_count=%d provider_calls=%d final_count=%d failed_count=%d",
            len(unique_symbols),
            provider_hits,
            succeeded,
            len(out) - succeeded,
        )
        return out

    # -- market status ----------------------------------------------------

    def get_market_status(self) -> MarketStatus:
        cached = self._load_cached(MARKET_STATUS_KEY, MarketStatus)
        if cached is not None:
            return cached
        status = build_market_status(self.clock())
        self._store_model(MARKET_STATUS_KEY, status, self.market_status_ttl_sec)
        return status

    # -- intraday / search ------------------------------------------------

    def _intraday_from_provider(self, symbol: str, interval: str, outputsize: str, now: datetime) -> IntradaySeries:
        payload = self.provider.get_intraday(symbol, interval, outputsize)
        if payload is None or not payload.get("bars"):
            raise NotFoundError(f"no intraday data for {symbol}")

        newest_first = sorted(payload["bars"], key=lambda bar: bar["time"], reverse=True)
        bars = [IntradayBar(**bar) for bar in reversed(newest_first[: OUTPUTSIZE_LIMITS[outputsize]])]
        return IntradaySeries(
            symbol=symbol,
            interval=interval,
            outputsize=outputsize,
            data_points=len(bars),
            data=bars,
            last_refreshed=payload.get("last_refreshed") or bars[-1].time,
            fetched_at=now.astimezone(timezone.utc).isoformat(),
        )

    def get_intraday(self, symbol: str, interval: str = "5min", outputsize: str = "compact") -> IntradaySeries:
        symbol = normalize_symbol(symbol)
        if interval not in VALID_INTERVALS:
            raise InvalidRequestError(f"invalid interval, must be one of: {', '.join(VALID_INTERVALS)}")
        if outputsize not in OUTPUTSIZE_LIMITS:
            raise InvalidRequestError("invalid outputsize, must be compact or full")

        key = intraday_key(symbol, interval, outputsize)
        cached = self._load_cached(key, IntradaySeries)
        if cached is not None:
            return cached

        now = self.clock()

        def synthesize() -> IntradaySeries:
            return synthesize_intraday(
                symbol, interval, outputsize, now, max_points=OUTPUTSIZE_LIMITS[outputsize]
            )

        if self.uses_provider:
            series = self._provider_or_fallback(
                symbol,
                lambda: self._intraday_from_provider(symbol, interval, outputsize, now),
                synthesize,
            )
        else:
            self.synthesized += 1
            series = synthesize()

        self._store_model(key, series, self.intraday_ttl_sec)
        return series

    def search_symbols(self, keywords: str) -> SymbolSearchResult:
        text = (keywords or "").strip()
        if len(text) < 2:
            raise InvalidRequestError("keywords must be at least 2 characters long")

        key = search_key(text)
        cached = self._load_cached(key, SymbolSearchResult)
        if cached is not None:
            return cached

        if not self.uses_provider:
            raise ProviderNotConfiguredError("symbol search needs a configured market data provider")

        self.provider_calls += 1
        try:
            matches = self.provider.search_symbols(text)
        except MarketDataError as exc:
            self.provider_errors += 1
            if isinstance(exc, RateLimitedError):
                self.rate_limited += 1
            logger.warning("[PROVIDER][error] keywords=%s code=%s error=%s", text, exc.code, exc)
            raise

        results = [SymbolMatch(**match) for match in matches[:SEARCH_RESULT_LIMIT]]
        result = SymbolSearchResult(
            keywords=text,
            results=results,
            count=len(results),
            fetched_at=self.clock().astimezone(timezone.utc).isoformat(),
        )
        self._store_model(key, result, self.search_ttl_sec)
        return result

    # -- maintenance --------------------------------------------------------

    def clear_cache(self, symbol: str | None = None) -> int:
        if symbol is not None:
            symbol = normalize_symbol(symbol)
            patterns = [quote_key(symbol), f"intraday:{symbol}:*", search_key(symbol)]
        else:
            patterns = [f"{namespace}:*" for namespace in CLEARABLE_NAMESPACES]

        try:
            keys: list[str] = []
            for pattern in patterns:
                keys.extend(self.store.keys(pattern))
            removed = self.store.delete(*keys) if keys else 0
        except CacheUnavailableError as exc:
            self.cache_errors += 1
            logger.warning("[CACHE][clear_failed] symbol=%s error=%s", symbol, exc)
            return 0

        logger.info("[CACHE][cleared] symbol=%s keys_cleared=%d", symbol or "*", removed)
        return removed

    def cache_available(self) -> bool:
        return self.store.ping()

    def metrics(self) -> dict[str, int | bool | str]:
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_errors": self.cache_errors,
            "provider_calls": self.provider_calls,
            "provider_errors": self.provider_errors,
            "rate_limited": self.rate_limited,
            "synthesized": self.synthesized,
            "fallbacks": self.fallbacks,
            "batch_requested": self.batch_requested,
            "batch_succeeded": self.batch_succeeded,
            "simulation_mode": not self.uses_provider,
            "fallback_policy": self.fallback_policy,
        }
