import math

import pandas as pd
import pytest

from scanbot import indicators as ind
from tests.helpers import trending_candles


def test_rsi_requires_period_plus_one():
    assert ind.rsi([1.0] * 14, 14) is None
    assert ind.rsi([1.0] * 15, 14) is not None


def test_rsi_flat_series_is_neutral():
    assert ind.rsi([10.0] * 30, 14) == pytest.approx(50.0)


def test_rsi_extremes():
    rising = [float(i) for i in range(1, 40)]
    falling = list(reversed(rising))
    assert ind.rsi(rising) > 99
    assert ind.rsi(falling) < 1


def test_rsi_stays_in_range():
    candles = trending_candles(80)
    series = ind.calculate_rsi(pd.Series([c.close for c in candles]))
    assert series.between(0, 100).all()


def test_sma_and_ema():
    values = [1.0, 2.0, 3.0, 4.0, 5.0]
    assert ind.sma(values, 5) == pytest.approx(3.0)
    assert ind.sma(values, 6) is None
    assert ind.sma(values, 2) == pytest.approx(4.5)
    assert ind.ema([2.0] * 10, 5) == pytest.approx(2.0)
    assert ind.ema(values, 6) is None


def test_atr_constant_range():
    highs = [11.0] * 20
    lows = [9.0] * 20
    closes = [10.0] * 20
    assert ind.atr(highs, lows, closes, 14) == pytest.approx(2.0)
    assert ind.atr(highs[:14], lows[:14], closes[:14], 14) is None


def test_adx_warmup_and_trend():
    candles = trending_candles(60)
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    closes = [c.close for c in candles]
    assert ind.adx(highs[:27], lows[:27], closes[:27], 14) is None
    assert ind.adx(highs, lows, closes, 14) > 25


def test_bollinger_population_std():
    closes = [1.0, 2.0, 3.0, 4.0]
    upper, mid, lower = ind.bollinger_bands(closes, period=4, std_mult=2.0)
    std = math.sqrt(1.25)
    assert mid == pytest.approx(2.5)
    assert upper == pytest.approx(2.5 + 2 * std)
    assert lower == pytest.approx(2.5 - 2 * std)
    assert ind.bollinger_bands(closes, period=5) is None


def test_bb_width_shrinks_with_range():
    wide = pd.Series([100 + 3 * (-1) ** i for i in range(30)], dtype=float)
    tight = pd.Series([100 + 0.5 * (-1) ** i for i in range(30)], dtype=float)
    assert ind.calculate_bb_width(tight).iloc[-1] < ind.calculate_bb_width(wide).iloc[-1]


def test_macd_minimum_length():
    closes = [float(i) for i in range(33)]
    assert ind.macd(closes) is None
    line, signal, hist = ind.macd(closes + [33.0])
    assert hist == pytest.approx(line - signal)


def test_volatility_pct():
    assert ind.volatility_pct([]) is None
    assert ind.volatility_pct([0.0, 0.0]) == 0.0
    assert ind.volatility_pct([5.0] * 10) == pytest.approx(0.0)
    # std populacional de [9, 11] = 1, média 10
    assert ind.volatility_pct([9.0, 11.0]) == pytest.approx(10.0)


def test_std_dev_population():
    assert ind.std_dev([]) is None
    assert ind.std_dev([2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]) == pytest.approx(2.0)


def test_average_volume_includes_current():
    volumes = [100.0] * 19 + [300.0]
    assert ind.average_volume(volumes, 20) == pytest.approx(110.0)
    assert ind.average_volume(volumes[:10], 20) is None
