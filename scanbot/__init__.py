# Scanner Bot Module
"""
Scanner Bot
===========
Scanner de pares spot, score de sinais e gestão de posições.

Módulos:
- config: Configurações centralizadas (settings.json + .env, BotSettings)
- error_handling: Retry, circuit breaker, exceções e OperationResult
- utils: JSON atômico, backups e logging por categoria
- candles: Buffer de candles por (symbol, timeframe)
- indicators: RSI, ATR, ADX, SMA/EMA, Bollinger, MACD
- data: Acesso à exchange (ccxt) e klines persistidos
- discovery: Seleção periódica dos pares monitorados
- scoring: Estratégias de score e SignalScorer
- cooldown: Cooldown por símbolo após perda
- trader: Executores e PositionManager
- state: Estado persistido (saldo, posições, histórico)
- feed: Eventos de mercado e feed por polling
- notifications: Pub/sub para observadores externos
- engine: Serialização de eventos e comandos do operador
"""

from .config import Config, BotSettings, SettingsProvider
from .error_handling import OperationResult, TradingBotError, FetchError, ConfigurationError
from .candles import Candle, CandleStore
from .scoring import Score, ScannedPair, SignalScorer
from .state import BotState, Position, TradingMode
from .trader import PositionManager
from .engine import TradingEngine

__all__ = [
    # Config
    'Config', 'BotSettings', 'SettingsProvider',
    # Errors
    'OperationResult', 'TradingBotError', 'FetchError', 'ConfigurationError',
    # Market data
    'Candle', 'CandleStore',
    # Scoring
    'Score', 'ScannedPair', 'SignalScorer',
    # Positions
    'BotState', 'Position', 'TradingMode', 'PositionManager',
    # Engine
    'TradingEngine',
]
