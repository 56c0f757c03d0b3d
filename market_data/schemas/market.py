from market_data.schemas.base import ApiModel


class MarketStatus(ApiModel):
    is_open: bool
    timezone: str
    current_time: str
    market_open: str
    market_close: str
    fetched_at: str
    next_open: str | None = None
    next_close: str | None = None
    cached: bool = False


class IntradayBar(ApiModel):
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int


class IntradaySeries(ApiModel):
    symbol: str
    interval: str
    outputsize: str
    data_points: int
    data: list[IntradayBar]
    last_refreshed: str
    fetched_at: str
    simulated: bool = False
    cached: bool = False


class SymbolMatch(ApiModel):
    symbol: str
    name: str
    type: str | None = None
    region: str | None = None
    market_open: str | None = None
    market_close: str | None = None
    timezone: str | None = None
    currency: str | None = None
    match_score: float = 0.0


class SymbolSearchResult(ApiModel):
    keywords: str
    results: list[SymbolMatch]
    count: int
    fetched_at: str
    cached: bool = False


class CacheClearResult(ApiModel):
    message: str
    keys_cleared: int
