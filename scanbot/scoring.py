"""
Sistema de Score dos Pares Monitorados
======================================
Classifica cada par monitorado a cada candle fechado do timeframe de scoring.

Scores: HOLD, BUY, STRONG_BUY, COOLDOWN, COMPRESSION, FAKE_BREAKOUT

Estratégias (plugáveis via SCORING_STRATEGY):
- filter_chain (padrão): regime -> tendência longa -> ADX/SMA20 -> volatilidade
  -> volume, depois faixa de RSI define BUY/STRONG_BUY
- breakout: squeeze de Bollinger seguido de rompimento com volume

Cooldown ativo rebaixa BUY/STRONG_BUY para COOLDOWN; o score técnico antes
do rebaixamento fica em `technical_score`.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import indicators as ind
from .candles import Candle, CandleStore, candles_to_frame
from .config import BotSettings
from .cooldown import CooldownRegistry
from .utils import get_category_logger, SCANNER, now_ms

log = get_category_logger(__name__, SCANNER)

# Parametros fixos dos indicadores
RSI_PERIOD = 14
ADX_PERIOD = 14
ATR_PERIOD = 14
TREND_SMA_PERIOD = 20
VOLUME_AVG_PERIOD = 20
BB_PERIOD = 20
BB_STD = 2.0

ADX_TREND_MIN = 25
RSI_BUY_MIN = 50
RSI_STRONG_MAX = 70
RSI_OVERBOUGHT = 70


class Score(str, Enum):
    HOLD = 'HOLD'
    BUY = 'BUY'
    STRONG_BUY = 'STRONG_BUY'
    COOLDOWN = 'COOLDOWN'
    COMPRESSION = 'COMPRESSION'
    FAKE_BREAKOUT = 'FAKE_BREAKOUT'


BUY_SCORES = (Score.BUY, Score.STRONG_BUY)


class Trend(str, Enum):
    UP = 'UP'
    DOWN = 'DOWN'
    NEUTRAL = 'NEUTRAL'


class Regime(str, Enum):
    UPTREND = 'UPTREND'
    DOWNTREND = 'DOWNTREND'
    NEUTRAL = 'NEUTRAL'


def classify_trend(adx: Optional[float], close: Optional[float], sma20: Optional[float]) -> Trend:
    """ADX > 25 define tendência; close vs SMA20 define direção."""
    if adx is None or close is None or sma20 is None:
        return Trend.NEUTRAL
    if adx > ADX_TREND_MIN:
        return Trend.UP if close > sma20 else Trend.DOWN
    return Trend.NEUTRAL


def classify_regime(sma_fast: Optional[float], sma_slow: Optional[float]) -> Regime:
    """Cruzamento de médias: rápida > lenta = UPTREND."""
    if sma_fast is None or sma_slow is None:
        return Regime.NEUTRAL
    if sma_fast > sma_slow:
        return Regime.UPTREND
    if sma_fast < sma_slow:
        return Regime.DOWNTREND
    return Regime.NEUTRAL


@dataclass
class ScannedPair:
    """Registro de um par monitorado (um escritor: SignalScorer)."""
    symbol: str
    price: float = 0.0
    volume: float = 0.0
    volatility: float = 0.0
    trend: Trend = Trend.NEUTRAL
    trend_longer_horizon: Trend = Trend.NEUTRAL
    market_regime: Regime = Regime.NEUTRAL
    rsi: Optional[float] = None
    adx: Optional[float] = None
    atr: Optional[float] = None
    score: Score = Score.HOLD
    technical_score: Score = Score.HOLD

    # Discovery
    rsi_longer_horizon: Optional[float] = None
    trend_1h: Trend = Trend.NEUTRAL
    rsi_1h: Optional[float] = None
    needs_hydration: bool = True

    # filter_chain
    sma20: Optional[float] = None
    macd_histogram: Optional[float] = None

    # breakout
    bb_width: Optional[float] = None
    is_in_squeeze: bool = False
    stop_loss_hint: Optional[float] = None

    last_update: int = 0

    def to_dict(self) -> Dict:
        data = asdict(self)
        for key in ('trend', 'trend_longer_horizon', 'trend_1h', 'market_regime', 'score', 'technical_score'):
            data[key] = getattr(self, key).value
        return data


@dataclass
class IndicatorSnapshot:
    """Indicadores do último candle fechado."""
    close: float
    rsi: float
    adx: float
    sma20: float
    volatility: float
    volume: float
    atr: Optional[float] = None
    volume_avg: Optional[float] = None
    macd_histogram: Optional[float] = None

    @property
    def trend(self) -> Trend:
        return classify_trend(self.adx, self.close, self.sma20)


@dataclass
class ScoreResult:
    score: Score
    snapshot: IndicatorSnapshot
    stop_loss_hint: Optional[float] = None
    bb_width: Optional[float] = None
    is_in_squeeze: bool = False


def compute_snapshot(candles: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
    """
    Calcular indicadores da série.
    None se RSI, ADX, SMA20 ou volatilidade ainda não estão disponíveis.
    """
    if not candles:
        return None

    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]

    rsi = ind.rsi(closes, RSI_PERIOD)
    adx = ind.adx(highs, lows, closes, ADX_PERIOD)
    sma20 = ind.sma(closes, TREND_SMA_PERIOD)
    volatility = ind.volatility_pct(closes)
    if rsi is None or adx is None or sma20 is None or volatility is None:
        return None

    macd = ind.macd(closes)
    return IndicatorSnapshot(
        close=closes[-1],
        rsi=rsi,
        adx=adx,
        sma20=sma20,
        volatility=volatility,
        volume=volumes[-1],
        atr=ind.atr(highs, lows, closes, ATR_PERIOD),
        volume_avg=ind.average_volume(volumes, VOLUME_AVG_PERIOD),
        macd_histogram=macd[2] if macd else None,
    )


# =============================================================================
# ESTRATEGIAS
# =============================================================================

class Scorer(ABC):
    """Interface de estratégia de scoring."""
    name = ''

    @abstractmethod
    def evaluate(self, symbol: str, candles: Sequence[Candle], settings: BotSettings,
                 prior: ScannedPair) -> Optional[ScoreResult]:
        """Score técnico do último candle fechado, ou None se faltam dados."""


class FilterChainScorer(Scorer):
    """Cadeia de filtros em ordem fixa; primeira falha resulta em HOLD."""
    name = 'filter_chain'

    def evaluate(self, symbol, candles, settings, prior):
        snapshot = compute_snapshot(candles)
        if snapshot is None:
            return None
        return ScoreResult(score=self.classify(snapshot, prior, settings), snapshot=snapshot)

    @staticmethod
    def classify(snapshot: IndicatorSnapshot, pair: ScannedPair, settings: BotSettings) -> Score:
        # a. Regime de mercado
        if settings.USE_MARKET_REGIME_FILTER and pair.market_regime != Regime.UPTREND:
            return Score.HOLD

        # b. Tendência do timeframe longo
        if settings.USE_MULTI_TIMEFRAME_CONFIRMATION and pair.trend_longer_horizon != Trend.UP:
            return Score.HOLD
        if settings.USE_1H_CONFIRMATION and pair.trend_1h != Trend.UP:
            return Score.HOLD

        # c. Tendência curta
        if not (snapshot.adx > ADX_TREND_MIN and snapshot.close > snapshot.sma20):
            return Score.HOLD

        # d. Volatilidade minima
        if snapshot.volatility < settings.MIN_VOLATILITY_PCT:
            return Score.HOLD

        # e. Volume acima da media
        if settings.USE_VOLUME_CONFIRMATION:
            if snapshot.volume_avg is None or snapshot.volume < snapshot.volume_avg:
                return Score.HOLD

        if RSI_BUY_MIN < snapshot.rsi < RSI_STRONG_MAX:
            return Score.STRONG_BUY
        if snapshot.rsi > RSI_BUY_MIN:
            return Score.BUY
        return Score.HOLD


class BreakoutScorer(Scorer):
    """
    Squeeze de Bollinger seguido de rompimento.

    - Squeeze: largura das bandas no percentil SQUEEZE_PERCENTILE das
      últimas SQUEEZE_LOOKBACK larguras
    - Candle após squeeze fechando acima da banda superior, com volume
      > VOLUME_SPIKE_FACTOR x média dos 20 candles anteriores e filtro de
      segurança do timeframe longo -> STRONG_BUY (stop = mínima do candle anterior)
    - Rompimento que falha na validação -> FAKE_BREAKOUT
    - Ainda comprimido -> COMPRESSION
    """
    name = 'breakout'

    def evaluate(self, symbol, candles, settings, prior):
        lookback = int(settings.SQUEEZE_LOOKBACK)
        if len(candles) < BB_PERIOD + lookback:
            return None
        snapshot = compute_snapshot(candles)
        if snapshot is None:
            return None

        df = candles_to_frame(candles)
        width = ind.calculate_bb_width(df['close'], BB_PERIOD, BB_STD)
        upper, _, _ = ind.calculate_bollinger(df['close'], BB_PERIOD, BB_STD)

        was_squeezed = self._in_squeeze(width.iloc[:-1], lookback, settings.SQUEEZE_PERCENTILE)
        is_squeezed = self._in_squeeze(width, lookback, settings.SQUEEZE_PERCENTILE)

        close = float(df['close'].iloc[-1])
        result = ScoreResult(
            score=Score.HOLD,
            snapshot=snapshot,
            bb_width=float(width.iloc[-1]),
            is_in_squeeze=is_squeezed,
        )

        if was_squeezed and close > float(upper.iloc[-1]):
            prior_volumes = df['volume'].iloc[-VOLUME_AVG_PERIOD - 1:-1]
            volume_ok = float(df['volume'].iloc[-1]) > settings.VOLUME_SPIKE_FACTOR * float(prior_volumes.mean())
            if volume_ok and self._safety_filter(prior, settings):
                result.score = Score.STRONG_BUY
                result.stop_loss_hint = candles[-2].low
            else:
                result.score = Score.FAKE_BREAKOUT
        elif is_squeezed:
            result.score = Score.COMPRESSION

        return result

    @staticmethod
    def _in_squeeze(width, lookback: int, percentile: float) -> bool:
        window = width.iloc[-lookback:].dropna()
        if len(window) < lookback:
            return False
        threshold = float(np.percentile(window.to_numpy(), percentile))
        return float(window.iloc[-1]) <= threshold

    @staticmethod
    def _safety_filter(pair: ScannedPair, settings: BotSettings) -> bool:
        """Timeframe longo não pode estar em queda nem sobrecomprado."""
        if settings.USE_MARKET_REGIME_FILTER and pair.market_regime != Regime.UPTREND:
            return False
        if pair.trend_longer_horizon == Trend.DOWN:
            return False
        if pair.rsi_longer_horizon is not None and pair.rsi_longer_horizon >= RSI_OVERBOUGHT:
            return False
        return True


SCORERS = {
    FilterChainScorer.name: FilterChainScorer,
    BreakoutScorer.name: BreakoutScorer,
}


def get_scorer(name: str) -> Scorer:
    """Instanciar estratégia pelo nome; desconhecida cai no filter_chain."""
    scorer_cls = SCORERS.get(name)
    if scorer_cls is None:
        log.warning(f"Estrategia de scoring desconhecida '{name}', usando filter_chain")
        scorer_cls = FilterChainScorer
    return scorer_cls()


# =============================================================================
# SIGNAL SCORER (componente com estado)
# =============================================================================

class SignalScorer:
    """
    Mantém os ScannedPair monitorados e reavalia a cada candle fechado.

    Não é thread-safe por si: o engine serializa as chamadas.
    """

    def __init__(self, candles: CandleStore, cooldowns: CooldownRegistry):
        self.candles = candles
        self.cooldowns = cooldowns
        self.pairs: Dict[str, ScannedPair] = {}
        self._scorer: Optional[Scorer] = None
        self._subscribers: List[Callable[[ScannedPair], None]] = []

    def subscribe(self, callback: Callable[[ScannedPair], None]):
        self._subscribers.append(callback)

    def scorer_for(self, settings: BotSettings) -> Scorer:
        if self._scorer is None or self._scorer.name != settings.SCORING_STRATEGY:
            self._scorer = get_scorer(settings.SCORING_STRATEGY)
        return self._scorer

    def on_candle_closed(self, symbol: str, timeframe: str, settings: BotSettings,
                         now=None) -> Optional[ScannedPair]:
        """
        Reavaliar o par após um candle fechado.

        Returns:
            Par atualizado, ou None (par não monitorado ou dados insuficientes)
        """
        pair = self.pairs.get(symbol)
        if pair is None:
            return None

        candles = self.candles.get(symbol, timeframe)
        result = self.scorer_for(settings).evaluate(symbol, candles, settings, pair)
        if result is None:
            log.info(f"{symbol}: dados insuficientes para indicadores ({len(candles)} candles), aguardando")
            return None

        snap = result.snapshot
        pair.price = snap.close
        pair.rsi = snap.rsi
        pair.adx = snap.adx
        pair.atr = snap.atr
        pair.sma20 = snap.sma20
        pair.volatility = snap.volatility
        pair.macd_histogram = snap.macd_histogram
        pair.trend = snap.trend
        pair.bb_width = result.bb_width
        pair.is_in_squeeze = result.is_in_squeeze
        pair.stop_loss_hint = result.stop_loss_hint
        pair.technical_score = result.score

        if result.score in BUY_SCORES and self.cooldowns.is_active(symbol, now):
            pair.score = Score.COOLDOWN
        else:
            pair.score = result.score
        pair.last_update = now_ms()

        if pair.score != Score.HOLD:
            log.info(f"{symbol}: {pair.score.value} (RSI={pair.rsi:.1f} ADX={pair.adx:.1f} vol={pair.volatility:.2f}%)")

        for callback in list(self._subscribers):
            callback(pair)
        return pair

    def update_price(self, symbol: str, price: float):
        pair = self.pairs.get(symbol)
        if pair is not None:
            pair.price = price

    def merge_discovery(self, discovered: Sequence[ScannedPair]) -> Tuple[List[str], List[str]]:
        """
        Mesclar resultado do discovery no conjunto monitorado.

        Pares existentes mantêm campos ao vivo e recebem só os campos do
        discovery; pares novos entram marcados para hidratação; pares que
        sumiram do resultado são removidos.

        Returns:
            (adicionados, removidos)
        """
        merged: Dict[str, ScannedPair] = {}
        added = []
        for found in discovered:
            existing = self.pairs.get(found.symbol)
            if existing is not None:
                existing.volume = found.volume
                existing.market_regime = found.market_regime
                existing.trend_longer_horizon = found.trend_longer_horizon
                existing.rsi_longer_horizon = found.rsi_longer_horizon
                existing.trend_1h = found.trend_1h
                existing.rsi_1h = found.rsi_1h
                if not existing.price:
                    existing.price = found.price
                merged[found.symbol] = existing
            else:
                found.needs_hydration = True
                merged[found.symbol] = found
                added.append(found.symbol)

        removed = sorted(set(self.pairs) - set(merged))
        self.pairs = merged

        if added or removed:
            log.info(f"Discovery: {len(merged)} pares monitorados (+{len(added)} / -{len(removed)})")
        return added, removed

    def pending_hydration(self) -> List[str]:
        return [s for s, p in self.pairs.items() if p.needs_hydration]

    def to_list(self) -> List[Dict]:
        return [p.to_dict() for p in sorted(self.pairs.values(), key=lambda p: p.symbol)]
