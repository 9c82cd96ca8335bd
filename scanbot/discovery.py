"""
Pair Discovery - Seleção periódica dos pares monitorados

Ciclo:
1. Snapshot de tickers 24h (falha aqui aborta o ciclo inteiro)
2. Filtro: quote asset, volume 24h > MIN_VOLUME_USD, fora de EXCLUDED_PAIRS
3. Por par: klines de 1h (confirmação) e do timeframe longo (delta fetch
   via KlineStorage), regime (SMA50 x SMA200), tendência (ADX + SMA20) e RSI
   dos dois timeframes.
   Falha em um par exclui apenas esse par do ciclo. Circuit breaker aberto
   aborta o ciclo: o conjunto anterior é mantido.

O filtro de regime NÃO é aplicado aqui: pares em queda continuam
monitorados e o scorer decide (USE_MARKET_REGIME_FILTER).
"""
import time
from typing import List, Optional

import ccxt

from . import indicators as ind
from .candles import Candle, MAX_CANDLES
from .config import BotSettings
from .data import MarketData, KlineStorage
from .error_handling import ExchangeUnavailable, TradingBotError
from .scoring import (
    ScannedPair, classify_regime, classify_trend,
    RSI_PERIOD, ADX_PERIOD, TREND_SMA_PERIOD,
)
from .utils import get_category_logger, SCANNER

log = get_category_logger(__name__, SCANNER)

REGIME_FAST_SMA = 50
REGIME_SLOW_SMA = 200
CONFIRMATION_TIMEFRAME = '1h'


class DiscoveryError(TradingBotError):
    """Ciclo de discovery abortado (tickers indisponíveis ou exchange fora)."""
    pass


class PairDiscovery:
    """Monta a lista de ScannedPair candidatos a partir da exchange."""

    def __init__(self, market_data: MarketData, storage: Optional[KlineStorage] = None):
        self.market_data = market_data
        self.storage = storage
        self.last_run: Optional[float] = None
        self.last_count = 0

    def filter_tickers(self, tickers: List[dict], settings: BotSettings) -> List[dict]:
        """Filtrar por quote asset, volume mínimo e lista de exclusão."""
        excluded = set(settings.excluded_pairs)
        quote = settings.QUOTE_ASSET
        selected = []
        for t in tickers:
            symbol = str(t.get('symbol') or '')
            if not symbol.endswith(quote) or symbol == quote:
                continue
            if symbol in excluded:
                continue
            if (t.get('quote_volume') or 0.0) <= settings.MIN_VOLUME_USD:
                continue
            selected.append(t)
        return sorted(selected, key=lambda t: t['quote_volume'], reverse=True)

    def discover(self, settings: BotSettings) -> List[ScannedPair]:
        """
        Executar um ciclo de discovery.

        Raises:
            DiscoveryError: snapshot de tickers falhou ou circuit breaker abriu
                no meio do ciclo; o conjunto anterior deve ser mantido e o ciclo
                refeito no próximo intervalo
        """
        started = time.time()
        try:
            tickers = self.market_data.fetch_ticker_snapshot()
        except (TradingBotError, ccxt.BaseError) as e:
            raise DiscoveryError(f"Falha ao buscar tickers: {e}") from e

        candidates = self.filter_tickers(tickers, settings)
        log.info(f"Discovery: {len(candidates)}/{len(tickers)} pares passaram no filtro de volume")

        pairs = []
        for ticker in candidates:
            symbol = ticker['symbol']
            try:
                hourly = self.market_data.fetch_klines(symbol, CONFIRMATION_TIMEFRAME, limit=MAX_CANDLES)
                candles = self._long_timeframe_candles(symbol, settings.DISCOVERY_TIMEFRAME)
            except ExchangeUnavailable as e:
                raise DiscoveryError(f"Discovery abortado em {symbol}: {e}") from e
            except (TradingBotError, ccxt.BaseError) as e:
                log.warning(f"Discovery: {symbol} ignorado neste ciclo ({e})")
                continue
            pairs.append(self.build_pair(symbol, ticker, candles, hourly))

        self.last_run = time.time()
        self.last_count = len(pairs)
        log.info(f"Discovery concluido: {len(pairs)} pares em {self.last_run - started:.1f}s")
        return pairs

    @staticmethod
    def build_pair(symbol: str, ticker: dict, candles: List[Candle],
                   hourly: Optional[List[Candle]] = None) -> ScannedPair:
        """ScannedPair com os campos vindos do discovery."""
        closes = [c.close for c in candles]
        highs = [c.high for c in candles]
        lows = [c.low for c in candles]

        # Menos de 200 candles: regime NEUTRAL, par continua monitorado
        regime = classify_regime(
            ind.sma(closes, REGIME_FAST_SMA),
            ind.sma(closes, REGIME_SLOW_SMA)
        )
        trend = classify_trend(
            ind.adx(highs, lows, closes, ADX_PERIOD),
            closes[-1] if closes else None,
            ind.sma(closes, TREND_SMA_PERIOD)
        )
        hourly = hourly or []
        hourly_closes = [c.close for c in hourly]
        trend_1h = classify_trend(
            ind.adx([c.high for c in hourly], [c.low for c in hourly], hourly_closes, ADX_PERIOD),
            hourly_closes[-1] if hourly_closes else None,
            ind.sma(hourly_closes, TREND_SMA_PERIOD)
        )
        return ScannedPair(
            symbol=symbol,
            price=ticker.get('last_price') or 0.0,
            volume=ticker.get('quote_volume') or 0.0,
            market_regime=regime,
            trend_longer_horizon=trend,
            rsi_longer_horizon=ind.rsi(closes, RSI_PERIOD),
            trend_1h=trend_1h,
            rsi_1h=ind.rsi(hourly_closes, RSI_PERIOD),
            needs_hydration=True,
        )

    def _long_timeframe_candles(self, symbol: str, timeframe: str) -> List[Candle]:
        """Klines do timeframe longo com delta fetch a partir do último armazenado."""
        stored = self.storage.load(symbol, timeframe) if self.storage else []

        since = None
        if stored:
            tf_ms = ccxt.Exchange.parse_timeframe(timeframe) * 1000
            gap = time.time() * 1000 - stored[-1].timestamp
            # O último candle salvo pode ter sido gravado ainda aberto: rebuscar a partir dele
            if gap < MAX_CANDLES * tf_ms:
                since = stored[-1].timestamp
            else:
                stored = []

        fresh = self.market_data.fetch_klines(symbol, timeframe, since=since, limit=MAX_CANDLES)
        if self.storage:
            return self.storage.merge(symbol, timeframe, stored, fresh)
        return fresh

    def hydrate(self, symbol: str, timeframe: str, limit: int = MAX_CANDLES) -> List[Candle]:
        """
        Histórico recente do timeframe de scoring para um par recém admitido.
        O último candle (ainda aberto) é descartado.
        """
        candles = self.market_data.fetch_klines(symbol, timeframe, limit=limit + 1)
        return candles[:-1]
