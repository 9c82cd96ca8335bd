"""
Engine - Ponto único de serialização do estado do bot

Fontes de mutação:
- eventos do feed (CandleEvent, PriceTick) via fila de consumidor único
- ciclo de discovery (I/O fora do lock, merge dentro)
- comandos do operador (start/stop, modo, fechamento manual, settings)

Todo handler roda até o fim sob `_lock` antes do próximo.
"""
import queue
import threading
from typing import Any, Dict, List, Optional

import ccxt

from .candles import CandleStore
from .config import BotSettings, Config, SettingsProvider
from .cooldown import CooldownRegistry
from .data import KlineStorage, MarketData
from .discovery import DiscoveryError, PairDiscovery
from .error_handling import ExchangeUnavailable, OperationResult, TradingBotError, get_health_status
from .feed import CandleEvent, PriceTick
from .notifications import Notifier, SCANNER_UPDATE, POSITIONS_UPDATED, BOT_STATUS_UPDATE
from .scoring import BUY_SCORES, ScannedPair, SignalScorer
from .state import BotState, StateStore, TradingMode
from .trader import PositionManager, MANUAL
from .utils import get_category_logger, SCANNER

log = get_category_logger(__name__, SCANNER)


class TradingEngine:
    """Agrega estado e componentes; única porta de entrada para mutações."""

    def __init__(
        self,
        settings_provider: SettingsProvider,
        market_data: Optional[MarketData] = None,
        state_store: Optional[StateStore] = None,
        kline_storage: Optional[KlineStorage] = None,
        executors: Optional[Dict[TradingMode, Any]] = None,
        notifier: Optional[Notifier] = None,
        queue_size: Optional[int] = None
    ):
        self.settings_provider = settings_provider
        settings = settings_provider.snapshot()

        self.store = state_store
        if state_store is not None:
            self.state = state_store.load(settings.INITIAL_VIRTUAL_BALANCE)
        else:
            self.state = BotState.initial(settings.INITIAL_VIRTUAL_BALANCE)

        self.notifier = notifier or Notifier()
        self.candles = CandleStore()
        self.cooldowns = CooldownRegistry()
        self.scanner = SignalScorer(self.candles, self.cooldowns)
        self.positions = PositionManager(
            self.state, self.cooldowns, executors, on_change=self._on_positions_changed
        )
        self.kline_storage = kline_storage
        self.discovery = PairDiscovery(market_data, kline_storage) if market_data is not None else None
        self.last_prices: Dict[str, float] = {}
        self._scoring_timeframe = settings.SCORING_TIMEFRAME

        self._lock = threading.RLock()
        self._events: queue.Queue = queue.Queue(maxsize=queue_size or Config.get('feed.queue_size', 10000))
        self._stop = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None

        settings_provider.subscribe(self._on_settings_changed)

    # ==================== PERSISTENCIA / NOTIFICACAO ====================

    def persist(self):
        if self.store is None:
            return
        try:
            self.store.save(self.state)
        except OSError as e:
            log.error(f"Falha ao salvar estado: {e}")

    def _on_positions_changed(self):
        self.prune_candles()
        self.persist()
        self.notifier.emit(POSITIONS_UPDATED, {
            'balance': self.state.balance,
            'positions': [p.to_dict() for p in self.state.active_positions],
        })

    def _emit_status(self):
        self.notifier.emit(BOT_STATUS_UPDATE, {
            'isRunning': self.state.is_running,
            'tradingMode': self.state.trading_mode.value,
        })

    def _on_settings_changed(self, settings: BotSettings):
        log.info(f"Novas configuracoes aplicadas (estrategia={settings.SCORING_STRATEGY})")
        with self._lock:
            previous = self._scoring_timeframe
            if settings.SCORING_TIMEFRAME == previous:
                return
            self._scoring_timeframe = settings.SCORING_TIMEFRAME
            # Histórico do timeframe antigo não serve mais para o scoring
            for pair in self.scanner.pairs.values():
                pair.needs_hydration = True
                self.candles.remove_series(pair.symbol, previous)
        log.info(f"Timeframe de scoring {previous} -> {settings.SCORING_TIMEFRAME}: pares serao rehidratados")

    # ==================== FILA DE EVENTOS ====================

    def submit(self, event) -> bool:
        """Enfileirar evento do feed. False se a fila estiver cheia."""
        try:
            self._events.put(event, timeout=1.0)
            return True
        except queue.Full:
            log.warning(f"Fila de eventos cheia, evento descartado: {type(event).__name__}")
            return False

    def dispatch(self, event):
        with self._lock:
            if isinstance(event, CandleEvent):
                return self.on_candle_closed(event)
            if isinstance(event, PriceTick):
                return self.on_price_tick(event)
            log.warning(f"Evento desconhecido ignorado: {type(event).__name__}")
            return None

    def process_pending(self, max_events: Optional[int] = None) -> int:
        """Consumir a fila de forma síncrona. Returns: eventos processados."""
        processed = 0
        while max_events is None or processed < max_events:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            self.dispatch(event)
            processed += 1
        return processed

    def start_dispatcher(self):
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self._stop.clear()
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name='dispatcher', daemon=True)
        self._dispatcher.start()

    def stop_dispatcher(self, timeout: float = 5.0):
        self._stop.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=timeout)

    def _dispatch_loop(self):
        while not self._stop.is_set():
            try:
                event = self._events.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.dispatch(event)
            except Exception:
                log.exception(f"Erro processando {type(event).__name__}")

    # ==================== HANDLERS ====================

    def on_candle_closed(self, event: CandleEvent) -> Optional[ScannedPair]:
        """
        Armazenar candle; candles fechados do timeframe de scoring reavaliam o
        par e, com o bot rodando, podem abrir posição.
        """
        settings = self.settings_provider.snapshot()
        with self._lock:
            if not self.candles.upsert(event.symbol, event.interval, event.to_candle()):
                return None
            if not event.is_closed or event.interval != settings.SCORING_TIMEFRAME:
                return None

            pair = self.scanner.on_candle_closed(event.symbol, event.interval, settings)
            if pair is None:
                return None
            self.notifier.emit(SCANNER_UPDATE, [pair.to_dict()])

            if self.state.is_running and pair.score in BUY_SCORES:
                price = self.last_prices.get(event.symbol, pair.price)
                self.positions.evaluate_entry(pair, settings, price=price)
            return pair

    def on_price_tick(self, event: PriceTick) -> List:
        """Atualizar preço; com o bot rodando, aplicar regras de saída."""
        if event.price is None or event.price <= 0:
            return []
        settings = self.settings_provider.snapshot()
        with self._lock:
            self.last_prices[event.symbol] = event.price
            self.scanner.update_price(event.symbol, event.price)
            if not self.state.is_running:
                return []
            return self.positions.on_price_tick(event.symbol, event.price, settings)

    # ==================== DISCOVERY ====================

    def run_discovery_cycle(self) -> OperationResult:
        """Discovery + merge + hidratação dos pares novos."""
        if self.discovery is None:
            return OperationResult(False, "Discovery sem acesso a exchange")

        settings = self.settings_provider.snapshot()
        try:
            pairs = self.discovery.discover(settings)
        except DiscoveryError as e:
            log.warning(f"{e}. Mantendo {len(self.scanner.pairs)} pares atuais")
            return OperationResult(False, str(e))

        with self._lock:
            added, removed = self.scanner.merge_discovery(pairs)
            self.prune_candles()

        hydrated = self.hydrate_pending(settings)
        with self._lock:
            self.notifier.emit(SCANNER_UPDATE, self.scanner.to_list())
        return OperationResult(True, f"{len(pairs)} pares monitorados", {
            'added': added, 'removed': removed, 'hydrated': hydrated,
        })

    def hydrate_pending(self, settings: Optional[BotSettings] = None) -> List[str]:
        """Carregar histórico do timeframe de scoring para pares novos."""
        if self.discovery is None:
            return []
        settings = settings or self.settings_provider.snapshot()
        timeframe = settings.SCORING_TIMEFRAME

        with self._lock:
            pending = self.scanner.pending_hydration()

        hydrated = []
        for symbol in pending:
            try:
                history = self.discovery.hydrate(symbol, timeframe)
            except ExchangeUnavailable as e:
                log.warning(f"Hidratacao interrompida ({e}), pendentes ficam para o proximo ciclo")
                break
            except (TradingBotError, ccxt.BaseError) as e:
                log.warning(f"{symbol}: hidratacao falhou, nova tentativa no proximo ciclo ({e})")
                continue
            if not history:
                log.warning(f"{symbol}: sem historico {timeframe}, nova tentativa no proximo ciclo")
                continue
            with self._lock:
                pair = self.scanner.pairs.get(symbol)
                if pair is None:
                    continue
                live = self.candles.get(symbol, timeframe)
                self.candles.replace(symbol, timeframe, list(history) + live)
                pair.needs_hydration = False
                hydrated.append(symbol)
        if hydrated:
            log.info(f"Historico carregado para {len(hydrated)} pares")
        return hydrated

    # ==================== COMANDOS ====================

    def start(self) -> OperationResult:
        with self._lock:
            if self.state.is_running:
                return OperationResult(False, "Bot ja esta em execucao")
            self.state.is_running = True
            self.persist()
            self._emit_status()
        log.info(f"Bot INICIADO [{self.state.trading_mode.value}]")
        return OperationResult(True, "Bot iniciado")

    def stop(self) -> OperationResult:
        """Para entradas e monitoramento; posições abertas permanecem."""
        with self._lock:
            if not self.state.is_running:
                return OperationResult(False, "Bot ja esta parado")
            self.state.is_running = False
            self.persist()
            self._emit_status()
        log.info(f"Bot PARADO ({len(self.state.active_positions)} posicoes abertas mantidas)")
        return OperationResult(True, "Bot parado")

    def set_mode(self, mode) -> OperationResult:
        try:
            new_mode = TradingMode(mode)
        except ValueError:
            return OperationResult(False, f"Modo invalido: {mode}")

        with self._lock:
            if new_mode == self.state.trading_mode:
                return OperationResult(True, f"Modo ja e {new_mode.value}")
            if self.state.active_positions:
                return OperationResult(False, "Feche as posicoes abertas antes de trocar o modo")
            if new_mode not in self.positions.executors:
                return OperationResult(False, f"Modo {new_mode.value} indisponivel (credenciais da exchange ausentes)")
            self.state.trading_mode = new_mode
            self.persist()
            self._emit_status()
        log.info(f"Modo de trading: {new_mode.value}")
        return OperationResult(True, f"Modo alterado para {new_mode.value}")

    def close_position_manually(self, position_id: int) -> OperationResult:
        settings = self.settings_provider.snapshot()
        with self._lock:
            pos = self.state.find_open(position_id)
            if pos is None:
                return OperationResult(False, f"Posicao {position_id} nao encontrada")
            price = self.last_prices.get(pos.symbol)
            if not price:
                pair = self.scanner.pairs.get(pos.symbol)
                price = pair.price if pair else None
            if not price:
                return OperationResult(False, f"Sem preco atual para {pos.symbol}")
            return self.positions.close_position(position_id, price, MANUAL, settings)

    def update_settings(self, changes: Dict[str, Any]) -> OperationResult:
        """Alterar settings; troca de timeframe de scoring recarrega o histórico."""
        result = self.settings_provider.update(changes)
        if result.success and 'SCORING_TIMEFRAME' in changes:
            self.hydrate_pending()
        return result

    def clear_data(self) -> OperationResult:
        """Zerar saldo, posições, histórico, cooldowns e klines armazenados."""
        settings = self.settings_provider.snapshot()
        with self._lock:
            self.state.reset(settings.INITIAL_VIRTUAL_BALANCE)
            self.cooldowns.clear()
            if self.kline_storage is not None:
                self.kline_storage.clear()
            self.persist()
            self._emit_status()
            self.notifier.emit(POSITIONS_UPDATED, {'balance': self.state.balance, 'positions': []})
        log.info("Dados do bot zerados")
        return OperationResult(True, "Dados zerados")

    # ==================== CONSULTAS ====================

    def monitored_symbols(self) -> List[str]:
        with self._lock:
            symbols = set(self.scanner.pairs)
            symbols.update(p.symbol for p in self.state.active_positions)
        return sorted(symbols)

    def prune_candles(self):
        """Descartar séries de símbolos fora do discovery e sem posição aberta."""
        with self._lock:
            monitored = set(self.monitored_symbols())
            for symbol in self.candles.symbols():
                if symbol not in monitored:
                    self.candles.remove_symbol(symbol)

    def get_performance_stats(self) -> Dict[str, Any]:
        with self._lock:
            return self.state.performance_stats()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'isRunning': self.state.is_running,
                'tradingMode': self.state.trading_mode.value,
                'balance': self.state.balance,
                'openPositions': len(self.state.active_positions),
                'unrealizedPnl': self.positions.unrealized_pnl(self.last_prices),
                'monitoredPairs': len(self.scanner.pairs),
                'cooldowns': len(self.cooldowns.active()),
                'health': get_health_status(),
            }
