from __future__ import annotations


class MarketDataError(Exception):
    """Base error carrying the HTTP status and machine code for the API boundary."""

    status_code = 500
    code = "MARKET_DATA_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class InvalidSymbolError(MarketDataError):
    status_code = 400
    code = "INVALID_SYMBOL"


class InvalidBatchError(MarketDataError):
    status_code = 400
    code = "INVALID_BATCH"


class InvalidRequestError(MarketDataError):
    status_code = 400
    code = "INVALID_REQUEST"


class NotFoundError(MarketDataError):
    status_code = 404
    code = "SYMBOL_NOT_FOUND"


class RateLimitedError(MarketDataError):
    status_code = 429
    code = "PROVIDER_RATE_LIMITED"
    retry_after_sec = 60


class UpstreamUnavailableError(MarketDataError):
    status_code = 502
    code = "UPSTREAM_UNAVAILABLE"


class ProviderNotConfiguredError(MarketDataError):
    status_code = 503
    code = "PROVIDER_NOT_CONFIGURED"


class UpstreamTimeoutError(MarketDataError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class CacheUnavailableError(MarketDataError):
    # internal: quote paths degrade to uncached operation instead of surfacing this
    status_code = 503
    code = "CACHE_UNAVAILABLE"
