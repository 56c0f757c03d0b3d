from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from market_data.errors import (
    NotFoundError,
    RateLimitedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

_RATE_LIMIT_MARKERS = ("Note", "Information")


def validate_payload(payload: Any) -> Dict[str, Any]:
    """Reject provider error/advisory payloads before trusting their shape."""
    if not isinstance(payload, dict):
        raise UpstreamUnavailableError("provider returned a non-object payload")
    if payload.get("Error Message"):
        raise NotFoundError(f"provider error: {payload['Error Message']}")
    for marker in _RATE_LIMIT_MARKERS:
        if payload.get(marker):
            raise RateLimitedError("provider call frequency limit reached")
    return payload


class AlphaVantageClient:
    """Alpha Vantage REST client for quotes, intraday series and symbol search."""

    _DEFAULT_BASE_URL = "https://www.alphavantage.co"
    _USER_AGENT = "Stock-Portfolio-System/1.0"

    def __init__(
        self,
        api_key: str,
        session: Optional[Any] = None,
        base_url: Optional[str] = None,
        quote_timeout_sec: float = 10.0,
        series_timeout_sec: float = 15.0,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")

        self.api_key = api_key
        self.base_url = (base_url or self._DEFAULT_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.quote_timeout_sec = quote_timeout_sec
        self.series_timeout_sec = series_timeout_sec

    @staticmethod
    def _to_float(value: Any, default: float = 0.0) -> float:
        try:
            if value is None or value == "":
                return default
            return float(str(value).rstrip("%"))
        except (TypeError, ValueError):
            return default

    @classmethod
    def _to_int(cls, value: Any, default: int = 0) -> int:
        return int(cls._to_float(value, float(default)))

    @staticmethod
    def _status_code_from_error(exc: Exception) -> int | None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
        return None

    def _query(self, params: Dict[str, str], *, timeout: float) -> Dict[str, Any]:
        try:
            response = self.session.get(
                f"{self.base_url}/query",
                params={**params, "apikey": self.api_key},
                headers={"User-Agent": self._USER_AGENT},
                timeout=timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise UpstreamTimeoutError(f"provider timed out after {timeout}s") from exc
        except requests.HTTPError as exc:
            if self._status_code_from_error(exc) == 429:
                raise RateLimitedError("provider returned HTTP 429") from exc
            raise UpstreamUnavailableError(f"provider HTTP error: {exc}") from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"provider request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailableError("provider returned invalid JSON") from exc

        return validate_payload(payload)

    def get_quote(self, symbol: str) -> Dict[str, Any] | None:
        payload = self._query(
            {"function": "GLOBAL_QUOTE", "symbol": symbol},
            timeout=self.quote_timeout_sec,
        )
        quote = payload.get("Global Quote") or {}
        if not quote.get("01. symbol"):
            return None

        return {
            "symbol": str(quote["01. symbol"]).upper(),
            "open": self._to_float(quote.get("02. open")),
            "high": self._to_float(quote.get("03. high")),
            "low": self._to_float(quote.get("04. low")),
            "price": self._to_float(quote.get("05. price")),
            "volume": self._to_int(quote.get("06. volume")),
            "last_updated": quote.get("07. latest trading day") or None,
            "previous_close": self._to_float(quote.get("08. previous close")),
            "change": self._to_float(quote.get("09. change")),
            "change_percent": self._to_float(quote.get("10. change percent")),
        }

    def get_intraday(self, symbol: str, interval: str, outputsize: str) -> Dict[str, Any] | None:
        payload = self._query(
            {
                "function": "TIME_SERIES_INTRADAY",
                "symbol": symbol,
                "interval": interval,
                "outputsize": outputsize,
            },
            timeout=self.series_timeout_sec,
        )
        series = payload.get(f"Time Series ({interval})")
        if not series:
            return None

        bars = [
            {
                "time": ts,
                "open": self._to_float(values.get("1. open")),
                "high": self._to_float(values.get("2. high")),
                "low": self._to_float(values.get("3. low")),
                "close": self._to_float(values.get("4. close")),
                "volume": self._to_int(values.get("5. volume")),
            }
            for ts, values in series.items()
        ]
        meta = payload.get("Meta Data") or {}
        return {
            "symbol": symbol,
            "bars": bars,
            "last_refreshed": meta.get("3. Last Refreshed"),
        }

    def search_symbols(self, keywords: str) -> List[Dict[str, Any]]:
        payload = self._query(
            {"function": "SYMBOL_SEARCH", "keywords": keywords},
            timeout=self.quote_timeout_sec,
        )
        return [
            {
                "symbol": match.get("1. symbol", ""),
                "name": match.get("2. name", ""),
                "type": match.get("3. type"),
                "region": match.get("4. region"),
                "market_open": match.get("5. marketOpen"),
                "market_close": match.get("6. marketClose"),
                "timezone": match.get("7. timezone"),
                "currency": match.get("8. currency"),
                "match_score": self._to_float(match.get("9. matchScore")),
            }
            for match in payload.get("bestMatches") or []
        ]
