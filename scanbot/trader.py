"""
Trader Module - Gestão de posições (entrada, monitoramento e saída)

Contabilidade (custo reservado na entrada):
- Entrada: balance -= entry_price * quantity
- Saída parcial: balance += qty_vendida * preço; realized_pnl += (preço - entry) * qty_vendida
- Saída final: balance += exit_price * quantity_restante
- PnL total = realized_pnl + (exit_price - entry) * quantity_restante

Assim a soma dos créditos menos o custo reservado é exatamente o PnL total.

Ordem de avaliação a cada tick (por posição aberta do símbolo):
1. highest_price_since_entry = max(highest, preço)
2. trailing stop: stop = max(stop, highest * (1 - TRAILING_STOP_LOSS_PCT/100))
3. break-even: stop = max(stop, entry) ao atingir o gatilho (PCT ou R)
4. take profit parcial (uma vez): vende % da quantidade INICIAL
5. saída: STOP_LOSS se preço <= stop, senão TAKE_PROFIT se preço >= take_profit
   (take profit sempre ativo, inclusive com trailing)
"""
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import ccxt

from .config import BotSettings, Config, get_circuit_breaker_config, get_retry_config
from .cooldown import CooldownRegistry
from .data import to_exchange_symbol
from .error_handling import (
    OperationResult, RetryPolicy, TradingBotError, get_circuit_breaker, order_call,
)
from .scoring import BUY_SCORES, Score, ScannedPair
from .state import BotState, Position, PositionStatus, TradingMode
from .utils import get_category_logger, TRADE

log = get_category_logger(__name__, TRADE)

STOP_LOSS = 'STOP_LOSS'
TAKE_PROFIT = 'TAKE_PROFIT'
PARTIAL_TAKE_PROFIT = 'PARTIAL_TAKE_PROFIT'
MANUAL = 'MANUAL'


# =============================================================================
# EXECUTORES
# =============================================================================

class SimulatedExecutor:
    """
    Execução simulada.
    VIRTUAL: preço do sinal. REAL_PAPER: preço real + slippage na entrada.
    """

    def __init__(self, apply_slippage: bool = False):
        self.apply_slippage = apply_slippage

    def entry_price(self, price: float, settings: BotSettings) -> float:
        if self.apply_slippage:
            return price * (1 + settings.SLIPPAGE_PCT / 100)
        return price

    def buy(self, symbol: str, quantity: float, price: float, settings: BotSettings) -> Tuple[float, float]:
        return self.entry_price(price, settings), quantity

    def sell(self, symbol: str, quantity: float, price: float, settings: BotSettings) -> Tuple[float, float]:
        return price, quantity


_orders_cb = get_circuit_breaker('orders', get_circuit_breaker_config('orders'))
_order_retry = RetryPolicy.from_dict(get_retry_config())


class LiveOrderExecutor:
    """Ordens a mercado reais via ccxt (REAL_LIVE)."""

    def __init__(self, exchange, quote: str = 'USDT'):
        self.exchange = exchange
        self.quote = quote

    def entry_price(self, price: float, settings: BotSettings) -> float:
        return price

    @staticmethod
    def _fill(order: Dict, price: float, quantity: float) -> Tuple[float, float]:
        fill_price = order.get('average') or order.get('price') or price
        filled = order.get('filled') or quantity
        return float(fill_price), float(filled)

    @order_call(_orders_cb, _order_retry)
    def buy(self, symbol: str, quantity: float, price: float, settings: BotSettings) -> Tuple[float, float]:
        unified = to_exchange_symbol(symbol, self.quote)
        amount = float(self.exchange.amount_to_precision(unified, quantity))
        order = self.exchange.create_market_buy_order(unified, amount)
        log.info(f"Ordem BUY {symbol} qty={amount} id={order.get('id')}")
        return self._fill(order, price, amount)

    @order_call(_orders_cb, _order_retry)
    def sell(self, symbol: str, quantity: float, price: float, settings: BotSettings) -> Tuple[float, float]:
        unified = to_exchange_symbol(symbol, self.quote)
        amount = float(self.exchange.amount_to_precision(unified, quantity))
        order = self.exchange.create_market_sell_order(unified, amount)
        log.info(f"Ordem SELL {symbol} qty={amount} id={order.get('id')}")
        return self._fill(order, price, amount)


def default_executors(exchange=None) -> Dict[TradingMode, object]:
    """Executores por modo; REAL_LIVE só existe com exchange configurada."""
    executors = {
        TradingMode.VIRTUAL: SimulatedExecutor(apply_slippage=False),
        TradingMode.REAL_PAPER: SimulatedExecutor(apply_slippage=True),
    }
    if exchange is not None:
        executors[TradingMode.REAL_LIVE] = LiveOrderExecutor(
            exchange, Config.get('bot.QUOTE_ASSET', 'USDT')
        )
    return executors


# =============================================================================
# CALCULOS
# =============================================================================

def compute_stop_loss(entry_price: float, pair: ScannedPair, settings: BotSettings) -> float:
    """
    Stop estrutural (dica da estratégia) ou ATR; o stop percentual é o teto
    de risco: se o calculado for mais largo, vale o percentual.
    """
    pct_stop = entry_price * (1 - settings.STOP_LOSS_PCT / 100)

    candidate = None
    if pair.stop_loss_hint is not None:
        candidate = pair.stop_loss_hint
    elif settings.USE_ATR_STOP_LOSS and pair.atr:
        candidate = entry_price - pair.atr * settings.ATR_MULTIPLIER

    if candidate is None:
        return pct_stop
    return max(candidate, pct_stop)


def compute_take_profit(entry_price: float, settings: BotSettings) -> float:
    return entry_price * (1 + settings.TAKE_PROFIT_PCT / 100)


def position_size_pct(score: Score, settings: BotSettings) -> float:
    if settings.USE_DYNAMIC_POSITION_SIZING and score == Score.STRONG_BUY:
        return settings.STRONG_BUY_POSITION_SIZE_PCT
    return settings.POSITION_SIZE_PCT


def pnl_pct(pos: Position, price: float) -> float:
    """PnL realizado + não realizado em % do custo inicial."""
    cost = pos.entry_price * pos.initial_quantity
    if cost <= 0:
        return 0.0
    unrealized = (price - pos.entry_price) * pos.quantity
    return (pos.realized_pnl + unrealized) / cost * 100


def r_multiple(pos: Position, price: float) -> Optional[float]:
    """Lucro por unidade em múltiplos do risco inicial; None sem risco definido."""
    risk = pos.entry_price - pos.initial_stop_loss
    if risk <= 0:
        return None
    return (price - pos.entry_price) / risk


# =============================================================================
# POSITION MANAGER
# =============================================================================

class PositionManager:
    """
    Dono das posições abertas.
    Thread-safe: operações de mutação sob `_lock`.
    """

    def __init__(
        self,
        state: BotState,
        cooldowns: CooldownRegistry,
        executors: Optional[Dict[TradingMode, object]] = None,
        on_change: Optional[Callable[[], None]] = None
    ):
        self.state = state
        self.cooldowns = cooldowns
        self.executors = executors if executors is not None else default_executors()
        self.on_change = on_change
        self._lock = threading.RLock()

    def _changed(self):
        if self.on_change:
            self.on_change()

    # ==================== ENTRADA ====================

    def evaluate_entry(self, pair: ScannedPair, settings: BotSettings,
                       price: Optional[float] = None, now: Optional[datetime] = None) -> Optional[Position]:
        """
        Abrir posição se todas as pré-condições forem atendidas.

        Returns:
            Posição aberta, ou None (rejeição registrada em log)
        """
        with self._lock:
            state = self.state
            symbol = pair.symbol

            if not state.is_running:
                return None
            if pair.score not in BUY_SCORES:
                return None
            if pair.score == Score.BUY and settings.REQUIRE_STRONG_BUY:
                return None
            if state.open_positions_for(symbol):
                return None
            if len(state.active_positions) >= settings.MAX_OPEN_POSITIONS:
                log.warning(f"{symbol}: entrada rejeitada, limite de {settings.MAX_OPEN_POSITIONS} posicoes atingido")
                return None
            if self.cooldowns.is_active(symbol, now):
                log.warning(f"{symbol}: entrada rejeitada, cooldown ativo")
                return None

            signal_price = price if price is not None else pair.price
            if not signal_price or signal_price <= 0:
                log.warning(f"{symbol}: entrada rejeitada, preco indisponivel")
                return None

            executor = self.executors.get(state.trading_mode)
            if executor is None:
                log.warning(f"{symbol}: modo {state.trading_mode.value} sem executor configurado, entrada ignorada")
                return None

            size = state.balance * position_size_pct(pair.score, settings) / 100
            if size <= 0 or size > state.balance:
                log.warning(f"{symbol}: entrada rejeitada, saldo insuficiente ({state.balance:.2f})")
                return None

            est_entry = executor.entry_price(signal_price, settings)
            stop_loss = compute_stop_loss(est_entry, pair, settings)
            if stop_loss >= est_entry:
                log.warning(f"{symbol}: entrada rejeitada, stop {stop_loss:.6f} >= entrada {est_entry:.6f}")
                return None

            try:
                entry_price, quantity = executor.buy(symbol, size / est_entry, signal_price, settings)
            except (TradingBotError, ccxt.BaseError) as e:
                log.warning(f"{symbol}: falha ao executar entrada ({e})")
                return None

            if entry_price != est_entry:
                stop_loss = compute_stop_loss(entry_price, pair, settings)
                if stop_loss >= entry_price:
                    stop_loss = entry_price * (1 - settings.STOP_LOSS_PCT / 100)

            cost = entry_price * quantity
            position = Position(
                id=state.trade_id_counter,
                symbol=symbol,
                entry_price=entry_price,
                quantity=quantity,
                initial_quantity=quantity,
                stop_loss=stop_loss,
                take_profit=compute_take_profit(entry_price, settings),
                highest_price_since_entry=entry_price,
                entry_time=(now or datetime.now()).isoformat(),
                initial_stop_loss=stop_loss,
                mode=state.trading_mode,
                entry_score=pair.score.value,
            )
            state.trade_id_counter += 1
            state.balance -= cost
            state.active_positions.append(position)

            log.info(
                f"ABERTA #{position.id} {symbol} {pair.score.value} @ {entry_price:.6f} qty={quantity:.6f} "
                f"custo={cost:.2f} SL={stop_loss:.6f} TP={position.take_profit:.6f} [{state.trading_mode.value}]"
            )
            self._changed()
            return position

    # ==================== MONITORAMENTO ====================

    def on_price_tick(self, symbol: str, price: float, settings: BotSettings,
                      now: Optional[datetime] = None) -> List[Position]:
        """
        Aplicar regras de saída às posições abertas do símbolo.

        Returns:
            Posições fechadas neste tick
        """
        closed = []
        with self._lock:
            changed = False
            for pos in self.state.open_positions_for(symbol):
                changed |= self._update_position(pos, price, settings)

                if price <= pos.stop_loss:
                    reason = STOP_LOSS
                elif price >= pos.take_profit:
                    reason = TAKE_PROFIT
                else:
                    continue

                result = self.close_position(pos.id, price, reason, settings, now=now)
                if result.success:
                    closed.append(pos)
                    changed = False  # close_position ja persistiu

            if changed:
                self._changed()
        return closed

    def _update_position(self, pos: Position, price: float, settings: BotSettings) -> bool:
        changed = False

        if price > pos.highest_price_since_entry:
            pos.highest_price_since_entry = price
            changed = True

        if settings.USE_TRAILING_STOP_LOSS:
            candidate = pos.highest_price_since_entry * (1 - settings.TRAILING_STOP_LOSS_PCT / 100)
            if candidate > pos.stop_loss:
                log.debug(f"Trailing #{pos.id} {pos.symbol}: SL {pos.stop_loss:.6f} -> {candidate:.6f}")
                pos.stop_loss = candidate
                changed = True

        if settings.USE_AUTO_BREAKEVEN and not pos.is_at_breakeven and self._breakeven_reached(pos, price, settings):
            pos.stop_loss = max(pos.stop_loss, pos.entry_price)
            pos.is_at_breakeven = True
            log.info(f"Break-even #{pos.id} {pos.symbol}: SL -> {pos.stop_loss:.6f}")
            changed = True

        if (settings.USE_PARTIAL_TAKE_PROFIT and not pos.partial_tp_hit
                and pnl_pct(pos, price) >= settings.PARTIAL_TP_TRIGGER_PCT):
            changed |= self._take_partial(pos, price, settings)

        return changed

    @staticmethod
    def _breakeven_reached(pos: Position, price: float, settings: BotSettings) -> bool:
        if settings.BREAKEVEN_TRIGGER_STYLE == 'R':
            r = r_multiple(pos, price)
            return r is not None and r >= settings.BREAKEVEN_TRIGGER
        return pnl_pct(pos, price) >= settings.BREAKEVEN_TRIGGER

    def _take_partial(self, pos: Position, price: float, settings: BotSettings) -> bool:
        qty = min(pos.initial_quantity * settings.PARTIAL_TP_SELL_QTY_PCT / 100, pos.quantity)
        if qty <= 0 or qty >= pos.quantity:
            # Venda de 100%: deixa a saida normal fechar a posicao
            return False

        executor = self.executors.get(pos.mode)
        if executor is None:
            return False
        try:
            fill_price, sold = executor.sell(pos.symbol, qty, price, settings)
        except (TradingBotError, ccxt.BaseError) as e:
            log.warning(f"#{pos.id} {pos.symbol}: falha na venda parcial ({e})")
            return False

        sold = min(sold, pos.quantity)
        partial_pnl = (fill_price - pos.entry_price) * sold
        self.state.balance += fill_price * sold
        pos.realized_pnl += partial_pnl
        pos.quantity -= sold
        pos.partial_tp_hit = True

        log.info(
            f"PARCIAL #{pos.id} {pos.symbol}: {sold:.6f} @ {fill_price:.6f} | "
            f"PnL {partial_pnl:+.2f} | restante {pos.quantity:.6f}"
        )
        return True

    # ==================== SAIDA ====================

    def close_position(self, position_id: int, exit_price: float, reason: str,
                       settings: BotSettings, now: Optional[datetime] = None) -> OperationResult:
        """
        Fechar posição aberta. Id inexistente (ou já fechado) não altera saldo.
        """
        with self._lock:
            pos = self.state.find_open(position_id)
            if pos is None:
                return OperationResult(False, f"Posicao {position_id} nao encontrada")
            if exit_price is None or exit_price <= 0:
                return OperationResult(False, f"Preco de saida invalido para posicao {position_id}")

            executor = self.executors.get(pos.mode)
            if executor is None:
                return OperationResult(False, f"Modo {pos.mode.value} sem executor configurado")
            try:
                fill_price, _ = executor.sell(pos.symbol, pos.quantity, exit_price, settings)
            except (TradingBotError, ccxt.BaseError) as e:
                log.warning(f"#{pos.id} {pos.symbol}: falha ao fechar ({e}), posicao mantida")
                return OperationResult(False, f"Falha ao fechar posicao {position_id}: {e}")

            remaining = pos.quantity
            total_pnl = pos.realized_pnl + (fill_price - pos.entry_price) * remaining
            cost = pos.entry_price * pos.initial_quantity

            self.state.balance += fill_price * remaining
            pos.status = PositionStatus.CLOSED
            pos.exit_price = fill_price
            pos.exit_time = (now or datetime.now()).isoformat()
            pos.exit_reason = reason
            pos.pnl = total_pnl
            pos.pnl_pct = total_pnl / cost * 100 if cost > 0 else 0.0

            self.state.active_positions = [p for p in self.state.active_positions if p.id != pos.id]
            self.state.trade_history.append(pos)

            if total_pnl < 0 and settings.LOSS_COOLDOWN_HOURS > 0:
                self.cooldowns.set(pos.symbol, settings.LOSS_COOLDOWN_HOURS, now)

            log.info(
                f"FECHADA #{pos.id} {pos.symbol} {reason} @ {fill_price:.6f} | "
                f"PnL {total_pnl:+.2f} ({pos.pnl_pct:+.2f}%) | saldo {self.state.balance:.2f}"
            )
            self._changed()
            return OperationResult(True, f"Posicao {position_id} fechada ({reason})", pos.to_dict())

    def unrealized_pnl(self, prices: Dict[str, float]) -> float:
        total = 0.0
        for pos in self.state.active_positions:
            price = prices.get(pos.symbol)
            if price:
                total += (price - pos.entry_price) * pos.quantity
        return total
