"""
Indicators Module - Indicadores técnicos (funções puras)

Duas camadas:
- calculate_*: séries pandas completas (Wilder smoothing, padrão TradingView/Binance)
- rsi(), adx(), sma()...: último valor como float, ou None quando a entrada é
  menor que o mínimo necessário. Nunca devolvem um default numérico durante
  o warm-up; quem chama trata None como "indicador ainda indisponível".
"""
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

Values = Union[pd.Series, np.ndarray, Sequence[float]]


def _as_series(values: Values) -> pd.Series:
    if isinstance(values, pd.Series):
        return values.astype(float).reset_index(drop=True)
    return pd.Series(np.asarray(values, dtype=float))


def _last(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    value = series.iloc[-1]
    if pd.isna(value):
        return None
    return float(value)


# =============================================================================
# SERIES (pandas)
# =============================================================================

def calculate_rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """
    Calcular RSI usando Wilder's Smoothed Moving Average.
    Série sem variação nenhuma retorna 50 (neutro).
    """
    delta = close.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)

    alpha = 1 / period
    avg_gain = gain.ewm(alpha=alpha, adjust=False).mean()
    avg_loss = loss.ewm(alpha=alpha, adjust=False).mean()

    rs = avg_gain / (avg_loss + 1e-10)
    rsi = 100 - (100 / (1 + rs))
    return rsi.where((avg_gain + avg_loss) > 0, 50.0)


def calculate_atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    """Calcular ATR usando Wilder's Smoothed Moving Average."""
    tr1 = high - low
    tr2 = (high - close.shift()).abs()
    tr3 = (low - close.shift()).abs()
    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)

    alpha = 1 / period
    return tr.ewm(alpha=alpha, adjust=False).mean()


def calculate_sma(close: pd.Series, period: int) -> pd.Series:
    return close.rolling(period).mean()


def calculate_ema(close: pd.Series, period: int) -> pd.Series:
    """Calcular EMA."""
    return close.ewm(span=period, adjust=False).mean()


def calculate_bollinger(close: pd.Series, period: int = 20, std_mult: float = 2.0) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    Calcular Bollinger Bands.
    Usa ddof=0 (population std) para match com TradingView/Binance.
    """
    mid = close.rolling(period).mean()
    std_dev = close.rolling(period).std(ddof=0)
    upper = mid + (std_dev * std_mult)
    lower = mid - (std_dev * std_mult)
    return upper, mid, lower


def calculate_bb_width(close: pd.Series, period: int = 20, std_mult: float = 2.0) -> pd.Series:
    """Largura relativa das bandas: (upper - lower) / mid."""
    upper, mid, lower = calculate_bollinger(close, period, std_mult)
    return (upper - lower) / mid.replace(0, np.nan)


def calculate_adx(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    """Calcular ADX usando Wilder's Smoothed Moving Average."""
    up = high.diff()
    down = -low.diff()

    plus_dm = up.where((up > down) & (up > 0), 0.0)
    minus_dm = down.where((down > up) & (down > 0), 0.0)

    atr = calculate_atr(high, low, close, period)
    alpha = 1 / period

    plus_dm_smooth = plus_dm.ewm(alpha=alpha, adjust=False).mean()
    minus_dm_smooth = minus_dm.ewm(alpha=alpha, adjust=False).mean()

    plus_di = 100 * plus_dm_smooth / (atr + 1e-10)
    minus_di = 100 * minus_dm_smooth / (atr + 1e-10)

    di_sum = plus_di + minus_di
    di_diff = (plus_di - minus_di).abs()
    dx = 100 * di_diff / (di_sum + 1e-10)

    return dx.ewm(alpha=alpha, adjust=False).mean()


def calculate_macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    Calcular MACD.

    Returns:
        macd_line, signal_line, histogram
    """
    ema_fast = close.ewm(span=fast, adjust=False).mean()
    ema_slow = close.ewm(span=slow, adjust=False).mean()
    macd_line = ema_fast - ema_slow
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()
    histogram = macd_line - signal_line
    return macd_line, signal_line, histogram


# =============================================================================
# ULTIMO VALOR (None durante warm-up)
# =============================================================================

def rsi(close: Values, period: int = 14) -> Optional[float]:
    series = _as_series(close)
    if len(series) < period + 1:
        return None
    return _last(calculate_rsi(series, period))


def adx(high: Values, low: Values, close: Values, period: int = 14) -> Optional[float]:
    h, lo, c = _as_series(high), _as_series(low), _as_series(close)
    if min(len(h), len(lo), len(c)) < 2 * period:
        return None
    return _last(calculate_adx(h, lo, c, period))


def atr(high: Values, low: Values, close: Values, period: int = 14) -> Optional[float]:
    h, lo, c = _as_series(high), _as_series(low), _as_series(close)
    if min(len(h), len(lo), len(c)) < period + 1:
        return None
    return _last(calculate_atr(h, lo, c, period))


def sma(values: Values, period: int) -> Optional[float]:
    series = _as_series(values)
    if period <= 0 or len(series) < period:
        return None
    return _last(calculate_sma(series, period))


def ema(values: Values, period: int) -> Optional[float]:
    series = _as_series(values)
    if period <= 0 or len(series) < period:
        return None
    return _last(calculate_ema(series, period))


def bollinger_bands(close: Values, period: int = 20, std_mult: float = 2.0) -> Optional[Tuple[float, float, float]]:
    """(upper, mid, lower) do último candle, ou None."""
    series = _as_series(close)
    if len(series) < period:
        return None
    upper, mid, lower = calculate_bollinger(series, period, std_mult)
    values = (_last(upper), _last(mid), _last(lower))
    if any(v is None for v in values):
        return None
    return values


def macd(close: Values, fast: int = 12, slow: int = 26, signal: int = 9) -> Optional[Tuple[float, float, float]]:
    """(macd, signal, histogram) do último candle, ou None."""
    series = _as_series(close)
    if len(series) < slow + signal - 1:
        return None
    line, sig, hist = calculate_macd(series, fast, slow, signal)
    return float(line.iloc[-1]), float(sig.iloc[-1]), float(hist.iloc[-1])


def std_dev(values: Values) -> Optional[float]:
    """Desvio padrão populacional."""
    series = _as_series(values)
    if series.empty:
        return None
    return float(series.std(ddof=0))


def volatility_pct(close: Values) -> Optional[float]:
    """stddev(closes) / mean(closes) * 100; 0.0 se a média for zero."""
    series = _as_series(close)
    if series.empty:
        return None
    mean = float(series.mean())
    if mean == 0:
        return 0.0
    return float(series.std(ddof=0)) / mean * 100


def average_volume(volume: Values, period: int = 20) -> Optional[float]:
    """Média dos últimos `period` volumes (inclui o candle atual)."""
    return sma(volume, period)
