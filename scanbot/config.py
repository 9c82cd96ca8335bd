"""
Configuration Module - Sistema Centralizado e Dinamico
================================================================================
FONTE UNICA DE VERDADE - TODAS AS CONFIGURACOES PASSAM POR AQUI
================================================================================

COMO USAR:
    from scanbot.config import Config, SettingsProvider

    # Obter parametro
    timeout = Config.get('exchange.timeout_ms', default=10000)

    # Snapshot imutavel dos parametros do bot (lido no inicio de cada ciclo)
    settings = SettingsProvider().snapshot()
    settings.MAX_OPEN_POSITIONS

    # Alterar parametros em runtime (validado, atomico, persistido)
    result = provider.update({'STOP_LOSS_PCT': 1.5})

Variaveis de ambiente (.env) sobrescrevem qualquer campo da secao "bot"
com o mesmo nome (ex: MIN_VOLUME_USD=250000000).
================================================================================
"""
import copy
import os
import threading
import logging
from dataclasses import dataclass, fields, asdict, replace
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
from dotenv import load_dotenv

from .error_handling import ConfigurationError, OperationResult
from .utils import load_json_safe, save_json_atomic

load_dotenv(override=True)

log = logging.getLogger(__name__)

# =============================================================================
# ARQUIVOS
# =============================================================================
CONFIG_FILE = 'config/settings.json'

# =============================================================================
# CONFIGURACAO PADRAO (usada se settings.json nao existir)
# =============================================================================
DEFAULT_CONFIG = {
    # === METADATA ===
    "version": "1.0",
    "last_updated": "",

    # === PARAMETROS DO BOT (BotSettings) ===
    "bot": {
        # Conta virtual
        "INITIAL_VIRTUAL_BALANCE": 10000.0,
        "MAX_OPEN_POSITIONS": 5,
        "POSITION_SIZE_PCT": 2.0,
        "USE_DYNAMIC_POSITION_SIZING": False,
        "STRONG_BUY_POSITION_SIZE_PCT": 3.0,
        "SLIPPAGE_PCT": 0.05,

        # Saidas
        "TAKE_PROFIT_PCT": 4.0,
        "STOP_LOSS_PCT": 2.0,
        "USE_ATR_STOP_LOSS": False,
        "ATR_MULTIPLIER": 1.5,
        "USE_TRAILING_STOP_LOSS": False,
        "TRAILING_STOP_LOSS_PCT": 1.5,
        "USE_AUTO_BREAKEVEN": False,
        "BREAKEVEN_TRIGGER_STYLE": "PCT",
        "BREAKEVEN_TRIGGER": 1.0,
        "USE_PARTIAL_TAKE_PROFIT": False,
        "PARTIAL_TP_TRIGGER_PCT": 2.0,
        "PARTIAL_TP_SELL_QTY_PCT": 50.0,
        "LOSS_COOLDOWN_HOURS": 4.0,

        # Scanner
        "MIN_VOLUME_USD": 400000000.0,
        "MIN_VOLATILITY_PCT": 0.5,
        "SYNC_SECONDS": 900,
        "EXCLUDED_PAIRS": "USDCUSDT,FDUSDUSDT",
        "QUOTE_ASSET": "USDT",
        "SCORING_TIMEFRAME": "1m",
        "DISCOVERY_TIMEFRAME": "4h",
        "USE_VOLUME_CONFIRMATION": False,
        "USE_MULTI_TIMEFRAME_CONFIRMATION": False,
        "USE_1H_CONFIRMATION": False,
        "USE_MARKET_REGIME_FILTER": False,
        "REQUIRE_STRONG_BUY": False,

        # Estrategia de scoring
        "SCORING_STRATEGY": "filter_chain",
        "VOLUME_SPIKE_FACTOR": 2.0,
        "SQUEEZE_PERCENTILE": 15.0,
        "SQUEEZE_LOOKBACK": 50,
    },

    # === EXCHANGE ===
    "exchange": {
        "id": "binance",
        "timeout_ms": 10000,
        "enable_rate_limit": True,
    },

    # === FEED (polling) ===
    "feed": {
        "poll_seconds": 5,
        "max_workers": 8,
        "queue_size": 10000,
    },

    # === STORAGE ===
    "storage": {
        "state_file": "state/bot_state.json",
        "klines_dir": "state/klines",
        "log_file": "logs/bot.log",
        "lock_file": "state/bot.lock",
    },

    # === ERROR HANDLING ===
    "error_handling": {
        "retry": {
            "max_attempts": 3,
            "base_delay": 0.5,
            "max_delay": 10.0,
            "exponential_base": 2.0,
            "jitter": True,
        },
        "circuit_breaker": {
            "orders": {
                "failure_threshold": 3,
                "recovery_timeout": 120,
                "half_open_max_calls": 2,
            },
            "data_fetch": {
                "failure_threshold": 10,
                "recovery_timeout": 30,
                "half_open_max_calls": 5,
            },
        },
    },
}


def _deep_merge(base: Dict, override: Dict):
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class SettingsFile:
    """
    config/settings.json mesclado sobre DEFAULT_CONFIG.
    Arquivo ausente é criado com os defaults; arquivo ilegível é ignorado.
    """

    def __init__(self, path: str = CONFIG_FILE):
        self.path = path
        self._lock = threading.RLock()
        self._data = copy.deepcopy(DEFAULT_CONFIG)

        if not os.path.exists(path):
            self.save()
            log.info(f"Config criado em {path}")
            return
        stored = load_json_safe(path)
        if isinstance(stored, dict):
            _deep_merge(self._data, stored)
            log.info(f"Config carregado de {path}")
        else:
            log.warning(f"{path} nao contem um objeto JSON. Usando defaults.")

    def get(self, key: str, default: Any = None) -> Any:
        """Valor por chave com notacao de ponto ('storage.state_file'). Devolve copia."""
        with self._lock:
            node = self._data
            for part in key.split('.'):
                if not isinstance(node, dict) or part not in node:
                    return default
                node = node[part]
            return copy.deepcopy(node)

    def update_section(self, section: str, values: Dict[str, Any]):
        """Alterar campos de uma secao e gravar o arquivo."""
        with self._lock:
            self._data.setdefault(section, {}).update(values)
            self._data['last_updated'] = datetime.now().isoformat()
            self.save()

    def save(self):
        with self._lock:
            save_json_atomic(self.path, self._data)


_settings_file: Optional[SettingsFile] = None
_settings_file_lock = threading.Lock()


def _get_file() -> SettingsFile:
    global _settings_file
    with _settings_file_lock:
        if _settings_file is None:
            _settings_file = SettingsFile()
        return _settings_file


class Config:
    """Acesso estatico ao arquivo de configuracao."""

    @staticmethod
    def get(key: str, default: Any = None) -> Any:
        return _get_file().get(key, default)

    @staticmethod
    def update_section(section: str, values: Dict[str, Any]):
        _get_file().update_section(section, values)


# =============================================================================
# BOT SETTINGS (snapshot imutavel)
# =============================================================================
@dataclass(frozen=True)
class BotSettings:
    """
    Snapshot dos parametros do bot.

    Imutavel: componentes leem um snapshot no inicio de cada avaliacao e
    alteracoes acontecem por substituicao completa (SettingsProvider.update).
    """
    INITIAL_VIRTUAL_BALANCE: float = 10000.0
    MAX_OPEN_POSITIONS: int = 5
    POSITION_SIZE_PCT: float = 2.0
    USE_DYNAMIC_POSITION_SIZING: bool = False
    STRONG_BUY_POSITION_SIZE_PCT: float = 3.0
    SLIPPAGE_PCT: float = 0.05

    TAKE_PROFIT_PCT: float = 4.0
    STOP_LOSS_PCT: float = 2.0
    USE_ATR_STOP_LOSS: bool = False
    ATR_MULTIPLIER: float = 1.5
    USE_TRAILING_STOP_LOSS: bool = False
    TRAILING_STOP_LOSS_PCT: float = 1.5
    USE_AUTO_BREAKEVEN: bool = False
    BREAKEVEN_TRIGGER_STYLE: str = "PCT"
    BREAKEVEN_TRIGGER: float = 1.0
    USE_PARTIAL_TAKE_PROFIT: bool = False
    PARTIAL_TP_TRIGGER_PCT: float = 2.0
    PARTIAL_TP_SELL_QTY_PCT: float = 50.0
    LOSS_COOLDOWN_HOURS: float = 4.0

    MIN_VOLUME_USD: float = 400000000.0
    MIN_VOLATILITY_PCT: float = 0.5
    SYNC_SECONDS: int = 900
    EXCLUDED_PAIRS: str = "USDCUSDT,FDUSDUSDT"
    QUOTE_ASSET: str = "USDT"
    SCORING_TIMEFRAME: str = "1m"
    DISCOVERY_TIMEFRAME: str = "4h"
    USE_VOLUME_CONFIRMATION: bool = False
    USE_MULTI_TIMEFRAME_CONFIRMATION: bool = False
    USE_1H_CONFIRMATION: bool = False
    USE_MARKET_REGIME_FILTER: bool = False
    REQUIRE_STRONG_BUY: bool = False

    SCORING_STRATEGY: str = "filter_chain"
    VOLUME_SPIKE_FACTOR: float = 2.0
    SQUEEZE_PERCENTILE: float = 15.0
    SQUEEZE_LOOKBACK: int = 50

    @classmethod
    def from_dict(cls, data: Dict) -> 'BotSettings':
        """Criar snapshot a partir de dict, ignorando chaves desconhecidas."""
        known = {f.name: f for f in fields(cls)}
        values = {}
        for key, value in (data or {}).items():
            if key in known:
                values[key] = coerce_value(known[key].type, value)
        return cls(**values)

    def to_dict(self) -> Dict:
        return asdict(self)

    @property
    def excluded_pairs(self) -> List[str]:
        """EXCLUDED_PAIRS como lista normalizada."""
        return [p.strip().upper() for p in self.EXCLUDED_PAIRS.split(',') if p.strip()]


_TYPE_NAMES = {'bool': bool, 'int': int, 'float': float, 'str': str}


def coerce_value(type_hint: Any, value: Any) -> Any:
    """
    Converter valor para o tipo do campo.
    Aceita strings vindas de .env ('true', '1', '2.5').

    Raises:
        ValueError: se o valor nao puder ser convertido
    """
    target = _TYPE_NAMES.get(type_hint, type_hint) if isinstance(type_hint, str) else type_hint

    if target is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        text = str(value).strip().lower()
        if text in ('true', '1', 'yes', 'on'):
            return True
        if text in ('false', '0', 'no', 'off'):
            return False
        raise ValueError(f"valor booleano invalido: {value!r}")

    if target is int:
        if isinstance(value, bool):
            raise ValueError(f"valor inteiro invalido: {value!r}")
        number = float(value)
        if not number.is_integer():
            raise ValueError(f"valor inteiro invalido: {value!r}")
        return int(number)

    if target is float:
        if isinstance(value, bool):
            raise ValueError(f"valor numerico invalido: {value!r}")
        return float(value)

    return str(value)


def _env_overrides() -> Dict[str, str]:
    """Campos de BotSettings definidos no ambiente."""
    return {
        f.name: os.environ[f.name]
        for f in fields(BotSettings)
        if os.environ.get(f.name) not in (None, '')
    }


def load_bot_settings() -> BotSettings:
    """Montar BotSettings a partir de config/settings.json + ambiente."""
    data = Config.get('bot', {})
    for key, raw in _env_overrides().items():
        data[key] = raw
    try:
        return BotSettings.from_dict(data)
    except ValueError as e:
        log.warning(f"Configuracao do bot invalida ({e}). Usando defaults.")
        return BotSettings()


# =============================================================================
# SETTINGS PROVIDER
# =============================================================================
class SettingsProvider:
    """
    Fornece o snapshot atual de BotSettings e notifica alteracoes.

    Unico escritor: update(). Leitores chamam snapshot() uma vez por ciclo.
    """

    def __init__(self, settings: Optional[BotSettings] = None, persist: bool = True):
        self._settings = settings if settings is not None else load_bot_settings()
        self._persist = persist
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[BotSettings], None]] = []

    def snapshot(self) -> BotSettings:
        return self._settings

    def subscribe(self, callback: Callable[[BotSettings], None]):
        self._subscribers.append(callback)

    def update(self, changes: Dict[str, Any]) -> OperationResult:
        """
        Aplicar alteracoes de forma atomica.

        Chaves desconhecidas ou valores invalidos rejeitam a alteracao inteira.
        """
        if not changes:
            return OperationResult(False, "Nenhuma alteracao informada")

        known = {f.name: f for f in fields(BotSettings)}
        unknown = [k for k in changes if k not in known]
        if unknown:
            return OperationResult(False, f"Parametros desconhecidos: {', '.join(sorted(unknown))}")

        coerced = {}
        for key, value in changes.items():
            try:
                coerced[key] = coerce_value(known[key].type, value)
            except (TypeError, ValueError) as e:
                return OperationResult(False, f"Valor invalido para {key}: {e}")

        error = validate_settings_values(coerced)
        if error:
            return OperationResult(False, error)

        with self._lock:
            self._settings = replace(self._settings, **coerced)
            new_settings = self._settings

        if self._persist:
            try:
                Config.update_section('bot', coerced)
            except OSError as e:
                log.error(f"Falha ao gravar {CONFIG_FILE}: {e}")

        log.info(f"Configuracoes atualizadas: {', '.join(sorted(coerced))}")

        for callback in list(self._subscribers):
            try:
                callback(new_settings)
            except Exception as e:
                log.error(f"Erro notificando alteracao de settings: {e}")

        return OperationResult(True, "Configuracoes atualizadas", new_settings.to_dict())


def validate_settings_values(values: Dict[str, Any]) -> Optional[str]:
    """Regras simples de dominio. Retorna mensagem de erro ou None."""
    for key in ('POSITION_SIZE_PCT', 'STRONG_BUY_POSITION_SIZE_PCT', 'TAKE_PROFIT_PCT',
                'STOP_LOSS_PCT', 'TRAILING_STOP_LOSS_PCT', 'ATR_MULTIPLIER'):
        if key in values and values[key] <= 0:
            return f"{key} deve ser maior que zero"
    if 'PARTIAL_TP_SELL_QTY_PCT' in values and not 0 < values['PARTIAL_TP_SELL_QTY_PCT'] <= 100:
        return "PARTIAL_TP_SELL_QTY_PCT deve estar entre 0 e 100"
    if 'MAX_OPEN_POSITIONS' in values and values['MAX_OPEN_POSITIONS'] < 0:
        return "MAX_OPEN_POSITIONS nao pode ser negativo"
    if 'BREAKEVEN_TRIGGER_STYLE' in values and values['BREAKEVEN_TRIGGER_STYLE'] not in ('PCT', 'R'):
        return "BREAKEVEN_TRIGGER_STYLE deve ser PCT ou R"
    if 'SCORING_STRATEGY' in values and values['SCORING_STRATEGY'] not in ('filter_chain', 'breakout'):
        return "SCORING_STRATEGY deve ser filter_chain ou breakout"
    return None


# =============================================================================
# CREDENCIAIS / VALIDACAO FATAL
# =============================================================================
API_KEY = os.getenv('BINANCE_API_KEY', '').strip()
SECRET_KEY = os.getenv('BINANCE_SECRET_KEY', '').strip()


def require_app_password() -> str:
    """
    Garantir que APP_PASSWORD esta configurado.

    Sem senha nao ha como estabelecer sessao autenticada para o operador:
    unico erro que interrompe a inicializacao.
    """
    password = os.getenv('APP_PASSWORD', '').strip()
    if not password:
        raise ConfigurationError("APP_PASSWORD nao configurado (.env). Inicializacao abortada.")
    return password


# =============================================================================
# ERROR HANDLING CONFIG HELPERS
# =============================================================================
def get_retry_config() -> Dict:
    """Retorna configuracao de retry."""
    return Config.get('error_handling.retry', {})


def get_circuit_breaker_config(name: str) -> Dict:
    """Retorna configuracao de um circuit breaker especifico."""
    return Config.get(f'error_handling.circuit_breaker.{name}', {})
