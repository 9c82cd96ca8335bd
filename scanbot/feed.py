"""
Feed Module - Eventos de mercado e feed por polling (REST via ccxt)

O feed só produz eventos e os entrega ao `submit` do engine; nunca toca
no estado diretamente. Reiniciar o feed não duplica candles já entregues:
o último timestamp fechado por símbolo é lembrado.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import ccxt

from .candles import Candle
from .data import MarketData
from .error_handling import TradingBotError
from .utils import get_category_logger, BINANCE_API, BINANCE_WS, safe_float

log = get_category_logger(__name__, BINANCE_API)
ws_log = get_category_logger(__name__, BINANCE_WS)


@dataclass(frozen=True)
class CandleEvent:
    symbol: str
    interval: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: int
    is_closed: bool

    def to_candle(self) -> Candle:
        return Candle(
            timestamp=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )

    @classmethod
    def from_candle(cls, symbol: str, interval: str, candle: Candle, is_closed: bool) -> 'CandleEvent':
        return cls(
            symbol=symbol,
            interval=interval,
            open=candle.open,
            high=candle.high,
            low=candle.low,
            close=candle.close,
            volume=candle.volume,
            timestamp=candle.timestamp,
            is_closed=is_closed,
        )

    @classmethod
    def from_ws_kline(cls, message: Dict) -> Optional['CandleEvent']:
        """
        Evento de stream kline da Binance:
        {'s': 'BTCUSDT', 'k': {'t', 'i', 'o', 'h', 'l', 'c', 'v', 'x'}}
        Mensagem malformada -> None.
        """
        data = message.get('data', message) if isinstance(message, dict) else None
        kline = data.get('k') if isinstance(data, dict) else None
        if not isinstance(kline, dict):
            ws_log.debug(f"Mensagem kline ignorada: {message!r:.200}")
            return None
        values = [safe_float(kline.get(k)) for k in ('o', 'h', 'l', 'c', 'v')]
        if any(v is None for v in values) or kline.get('t') is None:
            ws_log.debug(f"Kline incompleto ignorado: {kline!r:.200}")
            return None
        return cls(
            symbol=str(data.get('s') or kline.get('s') or ''),
            interval=str(kline.get('i') or ''),
            open=values[0],
            high=values[1],
            low=values[2],
            close=values[3],
            volume=values[4],
            timestamp=int(kline['t']),
            is_closed=bool(kline.get('x')),
        )


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float


class PollingFeed:
    """
    Feed por polling em thread própria.

    A cada `poll_seconds`:
    - timeframe de scoring lido do SettingsProvider (se houver); ao mudar,
      o registro de candles já entregues é zerado
    - preços atuais dos símbolos monitorados -> PriceTick
    - últimos 2 candles do timeframe de scoring -> CandleEvent fechado
      (uma vez por timestamp) + candle aberto (is_closed=False)
    """

    def __init__(
        self,
        market_data: MarketData,
        submit: Callable[[object], bool],
        symbols_provider: Callable[[], Iterable[str]],
        timeframe: str = '1m',
        poll_seconds: float = 5.0,
        max_workers: int = 8,
        settings_provider=None
    ):
        self.market_data = market_data
        self.submit = submit
        self.symbols_provider = symbols_provider
        self.timeframe = timeframe
        self.poll_seconds = poll_seconds
        self.max_workers = max_workers
        self.settings_provider = settings_provider
        self._last_closed: Dict[str, int] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='polling-feed', daemon=True)
        self._thread.start()
        log.info(f"Feed iniciado ({self.timeframe}, a cada {self.poll_seconds}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        log.info("Feed parado")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.poll_once()
            except (TradingBotError, ccxt.BaseError) as e:
                log.warning(f"Falha no polling, nova tentativa em {self.poll_seconds}s: {e}")
            self._stop.wait(self.poll_seconds)

    def current_timeframe(self) -> str:
        if self.settings_provider is None:
            return self.timeframe
        timeframe = self.settings_provider.snapshot().SCORING_TIMEFRAME
        if timeframe != self.timeframe:
            log.info(f"Feed: timeframe {self.timeframe} -> {timeframe}")
            self.timeframe = timeframe
            self._last_closed.clear()
        return timeframe

    def poll_once(self) -> int:
        """Uma rodada de polling. Returns: número de eventos enviados."""
        timeframe = self.current_timeframe()
        symbols = sorted(set(self.symbols_provider()))
        if not symbols:
            return 0

        sent = 0
        prices = self.market_data.fetch_prices(symbols)
        for symbol, price in prices.items():
            if self.submit(PriceTick(symbol, price)):
                sent += 1

        for events in self._fetch_candle_events(symbols, timeframe):
            for event in events:
                if self.submit(event):
                    sent += 1
        return sent

    def _fetch_candle_events(self, symbols: List[str], timeframe: str) -> List[List[CandleEvent]]:
        results = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self.market_data.fetch_klines, s, timeframe, None, 2): s for s in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    candles = future.result()
                except (TradingBotError, ccxt.BaseError) as e:
                    log.warning(f"{symbol}: falha ao buscar klines {timeframe} ({e})")
                    continue
                results.append(self.candle_events(symbol, candles, timeframe))
        return results

    def candle_events(self, symbol: str, candles: List[Candle],
                      timeframe: Optional[str] = None) -> List[CandleEvent]:
        """
        Converter os últimos candles em eventos.
        O penúltimo está fechado; é emitido só se ainda não foi entregue.
        """
        timeframe = timeframe or self.timeframe
        events = []
        if len(candles) >= 2:
            closed = candles[-2]
            if closed.timestamp > self._last_closed.get(symbol, -1):
                self._last_closed[symbol] = closed.timestamp
                events.append(CandleEvent.from_candle(symbol, timeframe, closed, True))
        if candles:
            events.append(CandleEvent.from_candle(symbol, timeframe, candles[-1], False))
        return events
