
from market_data.schemas.base import ApiModel


class Quote(ApiModel):
    symbol: str
    price: float
    change: float
    change_percent: float
    volume: int
    open: float
    high: float
    low: float
    previous_close: float
    last_updated: str
    fetched_at: str
    source: str = "alpha-vantage"
    simulated: bool = False
    market_closed_price: bool = False
    market_cap: str | None = None
    pe: float | None = None
    cached: bool = False


class BatchQuotesRequest(ApiModel):
    symbols: list[str]


class BatchQuoteError(ApiModel):
    symbol: str
    error: str
    code: str


class BatchQuotesResponse(ApiModel):
    quotes: list[Quote | BatchQuoteError]
    requested_symbols: int
    successful_fetches: int
