from fastapi import APIRouter, HTTPException, Request

from market_data.errors import MarketDataError, RateLimitedError
from market_data.schemas.market import CacheClearResult
from market_data.schemas.quote import BatchQuotesRequest, BatchQuotesResponse, Quote

router = APIRouter()


def _http_error(exc: MarketDataError) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_sec)}
    return HTTPException(status_code=exc.status_code, detail=exc.code, headers=headers)


@router.get('/quote/{symbol}')
def get_quote(symbol: str, request: Request):
    service = request.app.state.quote_service
    try:
        quote = service.get_quote(symbol)
    except MarketDataError as exc:
        raise _http_error(exc) from exc
    return quote.to_json_dict()


@router.post('/batch-quotes')
def get_batch_quotes(req: BatchQuotesRequest, request: Request):
    service = request.app.state.quote_service
    try:
        rows = service.get_batch_quotes(req.symbols)
    except MarketDataError as exc:
        raise _http_error(exc) from exc

    response = BatchQuotesResponse(
        quotes=rows,
        requested_symbols=len(rows),
        successful_fetches=sum(1 for row in rows if isinstance(row, Quote)),
    )
    return response.to_json_dict()


@router.get('/status')
def get_market_status(request: Request):
    service = request.app.state.quote_service
    return service.get_market_status().to_json_dict()


@router.get('/intraday/{symbol}')
def get_intraday(symbol: str, request: Request, interval: str = '5min', outputsize: str = 'compact'):
    service = request.app.state.quote_service
    try:
        series = service.get_intraday(symbol, interval=interval, outputsize=outputsize)
    except MarketDataError as exc:
        raise _http_error(exc) from exc
    return series.to_json_dict()


@router.get('/search')
def search_symbols(request: Request, keywords: str = ''):
    service = request.app.state.quote_service
    try:
        result = service.search_symbols(keywords)
    except MarketDataError as exc:
        raise _http_error(exc) from exc
    return result.to_json_dict()


@router.delete('/cache')
def clear_all_cache(request: Request):
    service = request.app.state.quote_service
    removed = service.clear_cache()
    return CacheClearResult(message='All market data cache cleared', keys_cleared=removed).to_json_dict()


@router.delete('/cache/{symbol}')
def clear_symbol_cache(symbol: str, request: Request):
    service = request.app.state.quote_service
    try:
        removed = service.clear_cache(symbol)
    except MarketDataError as exc:
        raise _http_error(exc) from exc
    return CacheClearResult(
        message=f'Cache cleared for {symbol.strip().upper()}',
        keys_cleared=removed,
    ).to_json_dict()


@router.get('/metrics')
def quote_metrics(request: Request):
    return request.app.state.quote_service.metrics()
