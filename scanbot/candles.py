"""
Candles Module - Buffer circular de candles por (symbol, timeframe)

Cada série guarda no máximo MAX_CANDLES candles em ordem cronológica.
Um candle com o mesmo timestamp do último substitui o último (candle
"vivo" ainda aberto); candles mais antigos que o último são ignorados.
"""
import threading
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Sequence, Tuple

import pandas as pd

log = logging.getLogger(__name__)

MAX_CANDLES = 200

OHLCV_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


@dataclass(frozen=True)
class Candle:
    """Candle OHLCV. timestamp = abertura em ms (definido pela exchange)."""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ohlcv(cls, row: Sequence) -> 'Candle':
        """Criar a partir de uma linha ccxt [ts, o, h, l, c, v]."""
        return cls(
            timestamp=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )

    def to_ohlcv(self) -> List:
        return [self.timestamp, self.open, self.high, self.low, self.close, self.volume]


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Converter lista de candles em DataFrame (colunas OHLCV_COLUMNS)."""
    if not candles:
        return pd.DataFrame(columns=OHLCV_COLUMNS)
    return pd.DataFrame([c.to_ohlcv() for c in candles], columns=OHLCV_COLUMNS)


class CandleStore:
    """
    Séries de candles por (symbol, timeframe).
    Thread-safe; `get` devolve cópia para leitura sem lock.
    """

    def __init__(self, max_candles: int = MAX_CANDLES):
        self.max_candles = max_candles
        self._series: Dict[Tuple[str, str], Deque[Candle]] = {}
        self._lock = threading.Lock()

    def upsert(self, symbol: str, timeframe: str, candle: Candle) -> bool:
        """
        Inserir ou atualizar candle.

        Returns:
            True se a série mudou, False se o candle era mais antigo que o último
        """
        key = (symbol, timeframe)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = deque(maxlen=self.max_candles)
                self._series[key] = series

            if series:
                last = series[-1]
                if candle.timestamp == last.timestamp:
                    series[-1] = candle
                    return True
                if candle.timestamp < last.timestamp:
                    log.debug(f"{symbol} {timeframe}: candle fora de ordem ignorado ({candle.timestamp})")
                    return False

            series.append(candle)
            return True

    def replace(self, symbol: str, timeframe: str, candles: Sequence[Candle]):
        """Substituir a série inteira (hidratação histórica)."""
        ordered = sorted({c.timestamp: c for c in candles}.values(), key=lambda c: c.timestamp)
        with self._lock:
            self._series[(symbol, timeframe)] = deque(ordered[-self.max_candles:], maxlen=self.max_candles)

    def get(self, symbol: str, timeframe: str) -> List[Candle]:
        """Série atual (lista vazia se não existir)."""
        with self._lock:
            series = self._series.get((symbol, timeframe))
            return list(series) if series else []

    def last(self, symbol: str, timeframe: str):
        with self._lock:
            series = self._series.get((symbol, timeframe))
            return series[-1] if series else None

    def remove_series(self, symbol: str, timeframe: str):
        with self._lock:
            self._series.pop((symbol, timeframe), None)

    def remove_symbol(self, symbol: str):
        """Remover todas as séries de um símbolo."""
        with self._lock:
            for key in [k for k in self._series if k[0] == symbol]:
                del self._series[key]

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted({k[0] for k in self._series})

    def clear(self):
        with self._lock:
            self._series.clear()

    def __len__(self):
        with self._lock:
            return len(self._series)
