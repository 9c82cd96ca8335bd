"""Builders de candles e exchange falsa usados pelos testes."""
import time
from dataclasses import replace
from typing import Dict, List, Optional

import ccxt

from scanbot.candles import Candle
from scanbot.config import BotSettings

MINUTE_MS = 60 * 1000


def make_settings(**overrides) -> BotSettings:
    return replace(BotSettings(), **overrides)


def flat_candles(closes, volume=100.0, start_ts=0, step_ms=MINUTE_MS, spread=0.1) -> List[Candle]:
    return [
        Candle(start_ts + i * step_ms, c, c + spread, c - spread, c, volume)
        for i, c in enumerate(closes)
    ]


def trending_candles(n=60, start=100.0, start_ts=0, step_ms=MINUTE_MS, volume=100.0) -> List[Candle]:
    """
    Alta em degraus: candle de alta (+1.0) seguido de correção (-0.7) dentro
    do range anterior. ADX alto, close acima da SMA20, RSI entre 55 e 62.
    """
    candles = [Candle(start_ts, start, start + 0.1, start - 0.1, start, volume)]
    for i in range(1, n):
        prev = candles[-1]
        ts = start_ts + i * step_ms
        if i % 2 == 1:
            close = prev.close + 1.0
            candles.append(Candle(ts, prev.close, close + 0.1, prev.close, close, volume))
        else:
            close = prev.close - 0.7
            candles.append(Candle(ts, prev.close, prev.high, prev.low, close, volume))
    return candles


def squeeze_candles(n=69, volume=100.0, start_ts=0) -> List[Candle]:
    """Oscilação em torno de 100 com amplitude decrescente (bandas estreitando)."""
    closes = [100 + (2.0 - 0.025 * i) * (-1) ** i for i in range(n)]
    return flat_candles(closes, volume=volume, start_ts=start_ts)


class FakeExchange:
    """
    Substituto do cliente ccxt para testes.

    tickers: {'BTC/USDT': {'quoteVolume': ..., 'last': ...}}
    ohlcv: {(symbol_unificado, timeframe): [[ts, o, h, l, c, v], ...]}
    fail_ohlcv: símbolos unificados cujo fetch_ohlcv levanta NetworkError
    """

    def __init__(self, tickers: Optional[Dict] = None, ohlcv: Optional[Dict] = None):
        self.tickers = tickers or {}
        self.ohlcv = ohlcv or {}
        self.fail_tickers = False
        self.fail_ohlcv = set()
        self.ohlcv_calls = []
        self.orders = []

    def fetch_tickers(self, symbols=None):
        if self.fail_tickers:
            raise ccxt.NetworkError('tickers indisponiveis')
        if symbols is None:
            return dict(self.tickers)
        return {s: t for s, t in self.tickers.items() if s in symbols}

    def fetch_ohlcv(self, symbol, timeframe='1m', since=None, limit=None):
        self.ohlcv_calls.append({'symbol': symbol, 'timeframe': timeframe, 'since': since, 'limit': limit})
        if symbol in self.fail_ohlcv:
            raise ccxt.NetworkError(f'{symbol} indisponivel')
        rows = self.ohlcv.get((symbol, timeframe), [])
        if since is not None:
            rows = [r for r in rows if r[0] >= since]
        if limit is not None:
            rows = rows[-limit:]
        return [list(r) for r in rows]

    def amount_to_precision(self, symbol, amount):
        return f"{amount:.6f}"

    def create_market_buy_order(self, symbol, amount):
        self.orders.append(('buy', symbol, amount))
        return {'id': str(len(self.orders)), 'average': None, 'filled': amount}

    def create_market_sell_order(self, symbol, amount):
        self.orders.append(('sell', symbol, amount))
        return {'id': str(len(self.orders)), 'average': None, 'filled': amount}


def ticker(quote_volume: float, last: float, raw_symbol: str) -> Dict:
    return {'quoteVolume': quote_volume, 'last': last, 'info': {'symbol': raw_symbol}}


def recent_start_ts(n: int, step_ms: int) -> int:
    """Timestamp inicial para que o último de `n` candles seja o período atual."""
    now = int(time.time() * 1000)
    aligned = now - now % step_ms
    return aligned - (n - 1) * step_ms
