"""
State Module - Estado persistido do bot

BotState é o agregado único de estado mutável (saldo, posições, histórico,
contador de ids, running, modo). Injetado nos componentes; nunca global.

Formato do arquivo (JSON):
    {balance, activePositions[], tradeHistory[], tradeIdCounter, isRunning, tradingMode}
"""
import logging
import os
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .utils import save_json_atomic, load_json_safe, backup_state_file

log = logging.getLogger(__name__)

BACKUP_INTERVAL_SECONDS = 600


class TradingMode(str, Enum):
    VIRTUAL = 'VIRTUAL'
    REAL_PAPER = 'REAL_PAPER'
    REAL_LIVE = 'REAL_LIVE'


class PositionStatus(str, Enum):
    FILLED = 'FILLED'
    CLOSED = 'CLOSED'


@dataclass
class Position:
    """Posição (apenas compra). Imutável depois de CLOSED."""
    id: int
    symbol: str
    entry_price: float
    quantity: float
    initial_quantity: float
    stop_loss: float
    take_profit: float
    highest_price_since_entry: float
    entry_time: str
    side: str = 'BUY'
    status: PositionStatus = PositionStatus.FILLED
    realized_pnl: float = 0.0
    is_at_breakeven: bool = False
    partial_tp_hit: bool = False
    initial_stop_loss: float = 0.0
    mode: TradingMode = TradingMode.VIRTUAL
    entry_score: str = ''

    # Preenchidos no fechamento
    exit_price: Optional[float] = None
    exit_time: Optional[str] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None

    def __post_init__(self):
        if not self.initial_stop_loss:
            self.initial_stop_loss = self.stop_loss

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.FILLED

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['status'] = self.status.value
        data['mode'] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Position':
        """
        Raises:
            TypeError/ValueError/KeyError: registro malformado
        """
        if not isinstance(data, dict):
            raise TypeError(f"posicao deve ser objeto, recebido {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['status'] = PositionStatus(values.get('status', PositionStatus.FILLED.value))
        values['mode'] = TradingMode(values.get('mode', TradingMode.VIRTUAL.value))
        for key in ('entry_price', 'quantity', 'initial_quantity', 'stop_loss',
                    'take_profit', 'highest_price_since_entry'):
            values[key] = float(values[key])
        values['id'] = int(values['id'])
        return cls(**values)


@dataclass
class BotState:
    balance: float = 10000.0
    active_positions: List[Position] = field(default_factory=list)
    trade_history: List[Position] = field(default_factory=list)
    trade_id_counter: int = 1
    is_running: bool = False
    trading_mode: TradingMode = TradingMode.VIRTUAL

    @classmethod
    def initial(cls, balance: float) -> 'BotState':
        return cls(balance=float(balance))

    def to_dict(self) -> Dict:
        return {
            'balance': self.balance,
            'activePositions': [p.to_dict() for p in self.active_positions],
            'tradeHistory': [p.to_dict() for p in self.trade_history],
            'tradeIdCounter': self.trade_id_counter,
            'isRunning': self.is_running,
            'tradingMode': self.trading_mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BotState':
        """
        Raises:
            TypeError/ValueError/KeyError: estrutura inválida
        """
        if not isinstance(data, dict):
            raise TypeError(f"estado deve ser objeto, recebido {type(data).__name__}")
        active = data.get('activePositions', [])
        history = data.get('tradeHistory', [])
        if not isinstance(active, list) or not isinstance(history, list):
            raise TypeError("activePositions/tradeHistory devem ser listas")
        return cls(
            balance=float(data['balance']),
            active_positions=[Position.from_dict(p) for p in active],
            trade_history=[Position.from_dict(p) for p in history],
            trade_id_counter=int(data.get('tradeIdCounter', 1)),
            is_running=bool(data.get('isRunning', False)),
            trading_mode=TradingMode(data.get('tradingMode', TradingMode.VIRTUAL.value)),
        )

    def open_positions_for(self, symbol: str) -> List[Position]:
        return [p for p in self.active_positions if p.symbol == symbol]

    def find_open(self, position_id: int) -> Optional[Position]:
        for p in self.active_positions:
            if p.id == position_id:
                return p
        return None

    def performance_stats(self) -> Dict:
        """
        Estatísticas do histórico de trades fechados.
        Trade com PnL zero conta como perdedor.
        """
        pnls = [p.pnl or 0.0 for p in self.trade_history]
        wins = [x for x in pnls if x > 0]
        gross_loss = -sum(x for x in pnls if x < 0)
        total = len(pnls)
        return {
            'total_trades': total,
            'winning_trades': len(wins),
            'losing_trades': total - len(wins),
            'total_pnl': sum(pnls),
            'win_rate': len(wins) / total * 100 if total else 0.0,
            'profit_factor': sum(wins) / gross_loss if gross_loss > 0 else 0.0,
        }

    def reset(self, balance: float):
        """Voltar ao estado inicial mantendo a mesma instância."""
        self.balance = float(balance)
        self.active_positions = []
        self.trade_history = []
        self.trade_id_counter = 1
        self.is_running = False
        self.trading_mode = TradingMode.VIRTUAL


class StateStore:
    """Carrega/salva BotState em JSON com escrita atômica e backups."""

    def __init__(self, filepath: str, backup_dir: Optional[str] = None):
        self.filepath = filepath
        self.backup_dir = backup_dir
        self._last_backup_time: Optional[datetime] = None

    def load(self, initial_balance: float) -> BotState:
        """
        Carregar estado. Arquivo ausente -> estado inicial.
        Arquivo ilegível ou inválido -> estado inicial + warning.
        """
        if not os.path.exists(self.filepath):
            return BotState.initial(initial_balance)
        raw = load_json_safe(self.filepath, default={})
        try:
            state = BotState.from_dict(raw)
        except (TypeError, ValueError, KeyError) as e:
            log.warning(f"Estado em {self.filepath} invalido ({e}). Resetando para o estado inicial.")
            return BotState.initial(initial_balance)

        log.info(
            f"Estado carregado: saldo={state.balance:.2f} posicoes={len(state.active_positions)} "
            f"historico={len(state.trade_history)} modo={state.trading_mode.value}"
        )
        return state

    def save(self, state: BotState):
        now = datetime.now()
        if self._last_backup_time is None:
            self._last_backup_time = now
        elif (now - self._last_backup_time).total_seconds() > BACKUP_INTERVAL_SECONDS:
            if self.backup_dir:
                backup_state_file(self.filepath, self.backup_dir)
            else:
                backup_state_file(self.filepath)
            self._last_backup_time = now

        save_json_atomic(self.filepath, state.to_dict())
