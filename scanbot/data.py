"""
Data Module - Acesso a dados de mercado da Binance (spot) via ccxt

- Snapshot de tickers 24h de todos os pares
- Klines históricos por símbolo/timeframe (com delta fetch por `since`)
- Últimos preços
- KlineStorage: klines persistidos em JSON por símbolo para o delta fetch

Respostas que não são lista/dict são tratadas como falha de fetch
(FetchError); nunca seguimos com dados parcialmente parseados.
"""
import os
import re
import threading
from typing import Dict, List, Optional, Sequence

import ccxt

from .candles import Candle, MAX_CANDLES
from .config import Config, API_KEY, SECRET_KEY, get_circuit_breaker_config
from .error_handling import FetchError, get_circuit_breaker, scan_call
from .utils import get_category_logger, BINANCE_API, load_json_safe, save_json_atomic, safe_float

log = get_category_logger(__name__, BINANCE_API)

_data_cb = get_circuit_breaker('data_fetch', get_circuit_breaker_config('data_fetch'))


def create_exchange(api_key: str = API_KEY, secret: str = SECRET_KEY) -> ccxt.Exchange:
    """Cliente ccxt Binance spot com timeout limitado."""
    exchange_cls = getattr(ccxt, Config.get('exchange.id', 'binance'))
    return exchange_cls({
        'apiKey': api_key,
        'secret': secret,
        'enableRateLimit': Config.get('exchange.enable_rate_limit', True),
        'timeout': int(Config.get('exchange.timeout_ms', 10000)),
        'options': {
            'defaultType': 'spot',
            'adjustForTimeDifference': True,
        }
    })


def to_exchange_symbol(raw_symbol: str, quote: str = 'USDT') -> str:
    """BTCUSDT -> BTC/USDT (formato ccxt)."""
    if '/' in raw_symbol:
        return raw_symbol
    if raw_symbol.endswith(quote):
        return f"{raw_symbol[:-len(quote)]}/{quote}"
    return raw_symbol


def to_raw_symbol(symbol: str) -> str:
    """BTC/USDT -> BTCUSDT."""
    return symbol.split(':')[0].replace('/', '')


class MarketData:
    """Consultas REST usadas pelo scanner."""

    def __init__(self, exchange, quote: str = 'USDT'):
        self.exchange = exchange
        self.quote = quote

    @scan_call(_data_cb)
    def fetch_ticker_snapshot(self) -> List[Dict]:
        """
        Tickers 24h de todos os pares.

        Returns:
            Lista de {symbol, quote_volume, last_price} com symbol no formato da
            exchange (ex: 'BTCUSDT')

        Raises:
            FetchError: resposta malformada ou circuit breaker aberto
        """
        tickers = self.exchange.fetch_tickers()
        if not isinstance(tickers, dict):
            raise FetchError(f"Resposta de tickers invalida: {type(tickers).__name__}")

        result = []
        for unified, ticker in tickers.items():
            if not isinstance(ticker, dict):
                continue
            info = ticker.get('info') or {}
            symbol = info.get('symbol') if isinstance(info, dict) else None
            result.append({
                'symbol': symbol or to_raw_symbol(unified),
                'quote_volume': safe_float(ticker.get('quoteVolume'), 0.0),
                'last_price': safe_float(ticker.get('last'), 0.0),
            })
        return result

    @scan_call(_data_cb)
    def fetch_klines(
        self,
        symbol: str,
        timeframe: str,
        since: Optional[int] = None,
        limit: int = MAX_CANDLES
    ) -> List[Candle]:
        """
        Klines de um símbolo.

        Args:
            symbol: Par no formato da exchange ('BTCUSDT')
            timeframe: '1m', '4h', ...
            since: Timestamp inicial em ms (delta fetch)
            limit: Máximo de candles

        Raises:
            FetchError: resposta não é lista de linhas OHLCV
        """
        rows = self.exchange.fetch_ohlcv(
            to_exchange_symbol(symbol, self.quote), timeframe, since=since, limit=limit
        )
        if not isinstance(rows, list):
            raise FetchError(f"{symbol} {timeframe}: resposta de klines invalida ({type(rows).__name__})")

        candles = []
        for row in rows:
            if not isinstance(row, (list, tuple)) or len(row) < 6:
                raise FetchError(f"{symbol} {timeframe}: linha OHLCV malformada")
            try:
                candles.append(Candle.from_ohlcv(row))
            except (TypeError, ValueError) as e:
                raise FetchError(f"{symbol} {timeframe}: valor OHLCV invalido ({e})") from e
        return candles

    @scan_call(_data_cb)
    def fetch_prices(self, symbols: Sequence[str]) -> Dict[str, float]:
        """Último preço por símbolo (formato da exchange)."""
        if not symbols:
            return {}
        unified = [to_exchange_symbol(s, self.quote) for s in symbols]
        tickers = self.exchange.fetch_tickers(unified)
        if not isinstance(tickers, dict):
            raise FetchError(f"Resposta de precos invalida: {type(tickers).__name__}")

        prices = {}
        for key, ticker in tickers.items():
            if not isinstance(ticker, dict):
                continue
            price = safe_float(ticker.get('last'))
            if price and price > 0:
                prices[to_raw_symbol(key)] = price
        return prices


# =============================================================================
# KLINE STORAGE (delta fetch)
# =============================================================================

_SAFE_NAME = re.compile(r'[^A-Za-z0-9_-]')


class KlineStorage:
    """
    Klines persistidos em JSON, um arquivo por (symbol, timeframe).
    Mantém no máximo MAX_CANDLES candles por arquivo.
    """

    def __init__(self, directory: str, max_candles: int = MAX_CANDLES):
        self.directory = directory
        self.max_candles = max_candles
        self._lock = threading.Lock()

    def _path(self, symbol: str, timeframe: str) -> str:
        name = f"{_SAFE_NAME.sub('_', symbol)}_{_SAFE_NAME.sub('_', timeframe)}.json"
        return os.path.join(self.directory, name)

    def load(self, symbol: str, timeframe: str) -> List[Candle]:
        """Candles armazenados; lista vazia se ausente ou corrompido."""
        with self._lock:
            rows = load_json_safe(self._path(symbol, timeframe), default=[])
        if not isinstance(rows, list):
            log.warning(f"Klines armazenados invalidos para {symbol} {timeframe}, descartando")
            return []
        try:
            return [Candle.from_ohlcv(r) for r in rows]
        except (TypeError, ValueError, IndexError):
            log.warning(f"Klines armazenados invalidos para {symbol} {timeframe}, descartando")
            return []

    def save(self, symbol: str, timeframe: str, candles: Sequence[Candle]):
        trimmed = list(candles)[-self.max_candles:]
        with self._lock:
            save_json_atomic(self._path(symbol, timeframe), [c.to_ohlcv() for c in trimmed], indent=None)

    def merge(self, symbol: str, timeframe: str, stored: Sequence[Candle],
              fresh: Sequence[Candle]) -> List[Candle]:
        """Unir candles (timestamp novo substitui o antigo), ordenar e salvar."""
        by_ts = {c.timestamp: c for c in stored}
        for c in fresh:
            by_ts[c.timestamp] = c
        merged = [by_ts[ts] for ts in sorted(by_ts)][-self.max_candles:]
        self.save(symbol, timeframe, merged)
        return merged

    def clear(self):
        """Remover todos os arquivos de klines."""
        with self._lock:
            if not os.path.isdir(self.directory):
                return
            for name in os.listdir(self.directory):
                if name.endswith('.json'):
                    os.remove(os.path.join(self.directory, name))
