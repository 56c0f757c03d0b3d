import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

from market_data.errors import (
    CacheUnavailableError,
    InvalidBatchError,
    InvalidSymbolError,
    NotFoundError,
    RateLimitedError,
    UpstreamTimeoutError,
)
from market_data.schemas.quote import BatchQuoteError, Quote
from market_data.services.kv_store import InMemoryKeyValueStore, RedisKeyValueStore
from market_data.services.quote_service import QuoteCacheService

NY = ZoneInfo("America/New_York")

AAPL_PAYLOAD = {
    "price": 175.50,
    "change": 2.50,
    "change_percent": 1.45,
    "volume": 51234567,
    "open": 174.10,
    "high": 178.00,
    "low": 173.40,
    "previous_close": 173.00,
    "last_updated": "2026-01-07",
}


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StubProvider:
    def __init__(self, payload: dict | None = None, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[str] = []

    def get_quote(self, symbol: str) -> dict | None:
        self.calls.append(symbol)
        if self.error is not None:
            raise self.error
        if self.payload is None:
            return None
        data = dict(self.payload)
        data["symbol"] = symbol
        return data


class SelectiveFailProvider(StubProvider):
    def __init__(self, payload: dict, fail_symbols: set[str]) -> None:
        super().__init__(payload)
        self.fail_symbols = fail_symbols

    def get_quote(self, symbol: str) -> dict | None:
        if symbol in self.fail_symbols:
            self.calls.append(symbol)
            raise UpstreamTimeoutError(f"timeout:{symbol}")
        return super().get_quote(symbol)


class RateLimitedAfterProvider(StubProvider):
    def __init__(self, payload: dict, limited_symbols: set[str]) -> None:
        super().__init__(payload)
        self.limited_symbols = limited_symbols

    def get_quote(self, symbol: str) -> dict | None:
        if symbol in self.limited_symbols:
            self.calls.append(symbol)
            raise RateLimitedError()
        return super().get_quote(symbol)


class BrokenStore:
    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args, **kwargs):
        self.calls += 1
        raise CacheUnavailableError("connection refused")

    get = _fail
    set = _fail
    delete = _fail
    keys = _fail

    def ping(self) -> bool:
        return False


def make_service(provider=None, *, market_open=True, now=None, **kwargs):
    clock = FakeClock(now or datetime(2026, 1, 7, 10, 0, tzinfo=NY))
    store = kwargs.pop("store", None) or InMemoryKeyValueStore(clock=clock.monotonic)
    sleeps: list[float] = []
    service = QuoteCacheService(
        store=store,
        provider=provider,
        market_open_checker=(lambda: market_open) if market_open is not None else None,
        clock=clock,
        sleep_fn=sleeps.append,
        **kwargs,
    )
    return service, store, clock, sleeps


class QuoteCacheServiceTest(unittest.TestCase):
    def test_second_call_within_ttl_is_served_from_cache(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, clock, _ = make_service(provider)

        first = service.get_quote("AAPL")
        clock.advance(120)
        second = service.get_quote("AAPL")

        self.assertFalse(first.cached)
        self.assertTrue(second.cached)
        self.assertEqual(provider.calls, ["AAPL"])
        for field in ("price", "change", "change_percent", "volume", "open", "high", "low", "previous_close"):
            self.assertEqual(getattr(first, field), getattr(second, field))
        self.assertEqual(service.metrics()["cache_hits"], 1)

    def test_entry_expires_after_quote_ttl(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, clock, _ = make_service(provider)

        service.get_quote("AAPL")
        clock.advance(301)
        refreshed = service.get_quote("AAPL")

        self.assertFalse(refreshed.cached)
        self.assertEqual(provider.calls, ["AAPL", "AAPL"])

    def test_clear_cache_forces_next_lookup_to_refetch(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, _ = make_service(provider)

        service.get_quote("AAPL")
        removed = service.clear_cache("AAPL")
        after = service.get_quote("AAPL")

        self.assertEqual(removed, 1)
        self.assertFalse(after.cached)
        self.assertEqual(len(provider.calls), 2)

    def test_market_open_keeps_last_trade_price(self):
        service, _, _, _ = make_service(StubProvider(AAPL_PAYLOAD), market_open=True)

        quote = service.get_quote("AAPL")

        self.assertEqual(quote.price, 175.50)
        self.assertEqual(quote.change, 2.50)
        self.assertFalse(quote.market_closed_price)
        self.assertEqual(quote.source, "alpha-vantage")
        self.assertEqual(quote.last_updated, "2026-01-07")

    def test_market_closed_uses_session_high_against_previous_close(self):
        service, _, _, _ = make_service(StubProvider(AAPL_PAYLOAD), market_open=False)

        quote = service.get_quote("AAPL")

        self.assertEqual(quote.price, 178.00)
        self.assertEqual(quote.change, 5.00)
        self.assertEqual(quote.change_percent, 2.89)
        self.assertTrue(quote.market_closed_price)

    def test_market_closed_without_high_keeps_provider_price(self):
        payload = dict(AAPL_PAYLOAD, high=0.0)
        service, _, _, _ = make_service(StubProvider(payload), market_open=False)

        quote = service.get_quote("AAPL")

        self.assertEqual(quote.price, 175.50)
        self.assertFalse(quote.market_closed_price)

    def test_default_market_checker_uses_market_status(self):
        saturday = datetime(2026, 1, 10, 11, 0, tzinfo=NY)
        service, store, _, _ = make_service(StubProvider(AAPL_PAYLOAD), market_open=None, now=saturday)

        quote = service.get_quote("AAPL")

        self.assertEqual(quote.price, 178.00)
        self.assertIsNotNone(store.get("market:status"))

    def test_invalid_symbol_is_rejected_before_any_io(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, store, _, _ = make_service(provider)

        for bad in ("INVALID$YMBOL", "", "   ", "ABCDEFGHIJK", "BRK.B"):
            with self.assertRaises(InvalidSymbolError):
                service.get_quote(bad)

        self.assertEqual(provider.calls, [])
        self.assertEqual(store.keys("*"), [])

    def test_symbol_is_normalized_to_uppercase(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, store, _, _ = make_service(provider)

        quote = service.get_quote("  aapl ")

        self.assertEqual(quote.symbol, "AAPL")
        self.assertEqual(provider.calls, ["AAPL"])
        self.assertIsNotNone(store.get("quote:AAPL"))

    def test_rate_limit_propagates_and_writes_nothing(self):
        provider = StubProvider(error=RateLimitedError("provider call frequency limit reached"))
        service, store, _, _ = make_service(provider)

        with self.assertRaises(RateLimitedError):
            service.get_quote("AAPL")

        self.assertEqual(store.keys("quote:*"), [])
        self.assertEqual(service.metrics()["rate_limited"], 1)

    def test_rate_limit_synthesizes_when_policy_prefers_availability(self):
        provider = StubProvider(error=RateLimitedError())
        service, store, _, _ = make_service(provider, fallback_policy="synthesize")

        quote = service.get_quote("AAPL")

        self.assertTrue(quote.simulated)
        self.assertEqual(quote.source, "simulated")
        self.assertGreater(quote.price, 0)
        self.assertIsNotNone(store.get("quote:AAPL"))
        self.assertEqual(service.metrics()["fallbacks"], 1)

    def test_timeout_propagates_without_retry(self):
        provider = StubProvider(error=UpstreamTimeoutError())
        service, _, _, _ = make_service(provider)

        with self.assertRaises(UpstreamTimeoutError):
            service.get_quote("AAPL")

        self.assertEqual(provider.calls, ["AAPL"])

    def test_unknown_symbol_and_zero_price_are_not_found(self):
        service, _, _, _ = make_service(StubProvider(None))
        with self.assertRaises(NotFoundError):
            service.get_quote("ZZZZ")

        service, store, _, _ = make_service(StubProvider(dict(AAPL_PAYLOAD, price=0.0)))
        with self.assertRaises(NotFoundError):
            service.get_quote("AAPL")
        self.assertIsNone(store.get("quote:AAPL"))

    def test_simulation_mode_never_contacts_provider(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, _ = make_service(provider, simulation_mode=True)

        quote = service.get_quote("AAPL")

        self.assertEqual(provider.calls, [])
        self.assertTrue(quote.simulated)
        self.assertEqual(service.metrics()["synthesized"], 1)

    def test_missing_provider_synthesizes_quotes(self):
        service, _, _, _ = make_service(None)

        first = service.get_quote("MSFT")
        second = service.get_quote("MSFT")

        self.assertTrue(first.simulated)
        self.assertTrue(second.cached)
        self.assertEqual(first.price, second.price)

    def test_cache_outage_degrades_to_direct_provider_calls(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, _ = make_service(provider, store=BrokenStore())

        first = service.get_quote("AAPL")
        second = service.get_quote("AAPL")

        self.assertFalse(first.cached)
        self.assertFalse(second.cached)
        self.assertEqual(provider.calls, ["AAPL", "AAPL"])
        self.assertEqual(service.metrics()["cache_errors"], 4)

    def test_malformed_cache_entry_is_treated_as_miss_and_overwritten(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, store, _, _ = make_service(provider)
        store.set("quote:AAPL", "{not json", 300)

        quote = service.get_quote("AAPL")

        self.assertFalse(quote.cached)
        self.assertEqual(provider.calls, ["AAPL"])
        self.assertEqual(Quote.model_validate_json(store.get("quote:AAPL")).price, 175.50)

    def test_undecodable_redis_entry_is_refetched(self):
        client = MagicMock()
        client.get.side_effect = UnicodeDecodeError("utf-8", b"\xff\xfe\x00garbage", 0, 1, "invalid start byte")
        service, _, _, _ = make_service(None, store=RedisKeyValueStore(client), simulation_mode=True)

        quote = service.get_quote("AAPL")

        self.assertFalse(quote.cached)
        self.assertTrue(quote.simulated)
        self.assertEqual(service.metrics()["cache_misses"], 1)
        client.set.assert_called_once()

    def test_cached_value_is_stored_without_cached_flag(self):
        service, store, _, _ = make_service(StubProvider(AAPL_PAYLOAD))

        service.get_quote("AAPL")
        service.get_quote("AAPL")

        self.assertIn('"cached":false', store.get("quote:AAPL"))
        self.assertIn('"previousClose":173.0', store.get("quote:AAPL"))


class BatchQuotesTest(unittest.TestCase):
    def test_batch_reports_invalid_symbol_as_entry(self):
        service, _, _, _ = make_service(StubProvider(AAPL_PAYLOAD))

        rows = service.get_batch_quotes(["AAPL", "INVALID$YMBOL"])

        self.assertEqual(len(rows), 2)
        self.assertIsInstance(rows[0], Quote)
        self.assertEqual(rows[0].symbol, "AAPL")
        self.assertIsInstance(rows[1], BatchQuoteError)
        self.assertEqual(rows[1].symbol, "INVALID$YMBOL")
        self.assertEqual(rows[1].code, "INVALID_SYMBOL")

    def test_batch_stops_calling_provider_after_rate_limit(self):
        provider = RateLimitedAfterProvider(AAPL_PAYLOAD, limited_symbols={"NFLX", "MSFT"})
        service, _, _, sleeps = make_service(provider)
        service.get_quote("GOOG")
        provider.calls.clear()

        rows = service.get_batch_quotes(["AAPL", "NFLX", "MSFT", "GOOG", "TSLA"])

        self.assertEqual(provider.calls, ["AAPL", "NFLX"])
        self.assertEqual(sleeps, [1.0])
        self.assertEqual(
            [type(r).__name__ for r in rows],
            ["Quote", "BatchQuoteError", "BatchQuoteError", "Quote", "BatchQuoteError"],
        )
        self.assertEqual({rows[i].code for i in (1, 2, 4)}, {"PROVIDER_RATE_LIMITED"})
        self.assertTrue(rows[3].cached)

    def test_batch_provider_failure_does_not_abort_batch(self):
        provider = SelectiveFailProvider(AAPL_PAYLOAD, fail_symbols={"NFLX"})
        service, _, _, _ = make_service(provider)

        rows = service.get_batch_quotes(["AAPL", "NFLX", "MSFT"])

        self.assertEqual([type(r).__name__ for r in rows], ["Quote", "BatchQuoteError", "Quote"])
        self.assertEqual(rows[1].code, "UPSTREAM_TIMEOUT")
        self.assertEqual(service.metrics()["batch_succeeded"], 2)

    def test_batch_rejects_empty_and_oversized_requests(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, _ = make_service(provider)

        with self.assertRaises(InvalidBatchError):
            service.get_batch_quotes([])
        with self.assertRaises(InvalidBatchError):
            service.get_batch_quotes([f"S{i}" for i in range(11)])

        self.assertEqual(provider.calls, [])

    def test_batch_delays_only_between_provider_calls(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, sleeps = make_service(provider)
        service.get_quote("MSFT")
        provider.calls.clear()

        rows = service.get_batch_quotes(["AAPL", "MSFT", "GOOG", "TSLA"])

        self.assertEqual(provider.calls, ["AAPL", "GOOG", "TSLA"])
        self.assertEqual(sleeps, [1.0, 1.0])
        self.assertTrue(rows[1].cached)

    def test_batch_in_simulation_mode_never_sleeps(self):
        service, _, _, sleeps = make_service(None)

        rows = service.get_batch_quotes(["AAPL", "MSFT", "GOOG"])

        self.assertEqual(len(rows), 3)
        self.assertEqual(sleeps, [])

    def test_batch_deduplicates_case_insensitively_in_order(self):
        provider = StubProvider(AAPL_PAYLOAD)
        service, _, _, _ = make_service(provider)

        rows = service.get_batch_quotes(["msft", "AAPL", "MSFT", "aapl"])

        self.assertEqual([r.symbol for r in rows], ["MSFT", "AAPL"])
        self.assertEqual(provider.calls, ["MSFT", "AAPL"])


class MarketStatusTest(unittest.TestCase):
    def test_wednesday_morning_is_open(self):
        service, _, _, _ = make_service(now=datetime(2026, 1, 7, 10, 0, tzinfo=NY))
        status = service.get_market_status()
        self.assertTrue(status.is_open)
        self.assertEqual(status.next_close, "Wednesday 16:00")

    def test_wednesday_evening_is_closed(self):
        service, _, _, _ = make_service(now=datetime(2026, 1, 7, 20, 0, tzinfo=NY))
        status = service.get_market_status()
        self.assertFalse(status.is_open)
        self.assertEqual(status.next_open, "Thursday 09:30")

    def test_saturday_is_closed_at_any_hour(self):
        for hour in (0, 10, 12, 15, 23):
            service, _, _, _ = make_service(now=datetime(2026, 1, 10, hour, 0, tzinfo=NY))
            self.assertFalse(service.get_market_status().is_open)

    def test_status_is_cached_for_five_minutes(self):
        service, _, clock, _ = make_service(now=datetime(2026, 1, 7, 15, 58, tzinfo=NY))

        first = service.get_market_status()
        clock.advance(180)
        second = service.get_market_status()
        clock.advance(180)
        third = service.get_market_status()

        self.assertTrue(first.is_open)
        self.assertTrue(second.cached)
        self.assertTrue(second.is_open)
        self.assertFalse(third.cached)
        self.assertFalse(third.is_open)


class ClearCacheTest(unittest.TestCase):
    def _seed(self, store):
        for key in (
            "quote:AAPL",
            "quote:AAPLX",
            "quote:MSFT",
            "intraday:AAPL:5min:compact",
            "intraday:AAPL:1min:full",
            "search:aapl",
            "search:apple",
            "market:status",
        ):
            store.set(key, "{}", 300)

    def test_clear_symbol_removes_only_that_symbols_keys(self):
        service, store, _, _ = make_service(None)
        self._seed(store)

        removed = service.clear_cache("aapl")

        self.assertEqual(removed, 4)
        self.assertEqual(
            sorted(store.keys("*")),
            ["market:status", "quote:AAPLX", "quote:MSFT", "search:apple"],
        )

    def test_clear_all_removes_quote_intraday_and_search_namespaces(self):
        service, store, _, _ = make_service(None)
        self._seed(store)

        removed = service.clear_cache()

        self.assertEqual(removed, 7)
        self.assertEqual(store.keys("*"), ["market:status"])
        self.assertEqual(service.clear_cache(), 0)

    def test_clear_with_invalid_symbol_is_rejected(self):
        service, _, _, _ = make_service(None)
        with self.assertRaises(InvalidSymbolError):
            service.clear_cache("BAD$")

    def test_clear_during_cache_outage_reports_zero(self):
        service, _, _, _ = make_service(None, store=BrokenStore())
        self.assertEqual(service.clear_cache(), 0)


if __name__ == "__main__":
    unittest.main()
