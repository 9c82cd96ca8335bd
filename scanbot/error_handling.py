"""
Error Handling Module - Exceções e políticas de chamada à exchange
================================================================================
Duas políticas, conforme o tipo de chamada:

SCAN (tickers, klines, preços) - @scan_call
    Sem retry. Falha abandona a unidade de trabalho (um símbolo, um ciclo
    de discovery) e é refeita no próximo ciclo agendado.
    Circuit breaker aberto -> ExchangeUnavailable: quem itera símbolos deve
    abortar o ciclo inteiro, não descartar símbolo por símbolo.

ORDENS (REAL_LIVE) - @order_call
    Erro de rede: retry com backoff exponencial.
    Ordem recusada (saldo, notional mínimo): propaga na primeira tentativa
    e não conta como falha do circuit breaker.

Autenticação inválida vira CriticalError nas duas políticas.
================================================================================
"""
import functools
import logging
import random
import threading
import time
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import ccxt

log = logging.getLogger(__name__)


# =============================================================================
# EXCECOES
# =============================================================================

class TradingBotError(Exception):
    """Base dos erros do bot."""
    pass


class FetchError(TradingBotError):
    """Falha ao buscar dados (rede ou resposta malformada)."""
    pass


class ExchangeUnavailable(FetchError):
    """Circuit breaker aberto: a chamada nem chegou a exchange."""
    pass


class CriticalError(TradingBotError):
    """Requer intervenção do operador (credenciais, configuração)."""
    pass


class ConfigurationError(CriticalError):
    pass


ORDER_REJECTIONS = (ccxt.InvalidOrder, ccxt.InsufficientFunds)


# =============================================================================
# RESULTADO DE COMANDOS DO OPERADOR
# =============================================================================

@dataclass
class OperationResult:
    """Resultado de comando (fechar posicao, alterar settings, start/stop)."""
    success: bool
    message: str = ""
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'message': self.message, 'data': self.data}


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitBreaker:
    """
    closed --(failure_threshold falhas seguidas)--> open
    open --(recovery_timeout segundos)--> half_open
    half_open: até half_open_max_calls chamadas de teste;
               sucesso fecha, falha reabre
    """
    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half_open'

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 60,
                 half_open_max_calls: int = 3, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()
        self._clear()

    def _clear(self):
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_calls = 0
        self._last_failure: Optional[datetime] = None

    def reset(self):
        with self._lock:
            self._clear()

    def before_call(self):
        """
        Raises:
            ExchangeUnavailable: breaker aberto (ou sem vagas de teste)
        """
        with self._lock:
            if self._state == self.OPEN:
                waited = self._clock() - self._opened_at
                if waited < self.recovery_timeout:
                    raise ExchangeUnavailable(
                        f"CircuitBreaker [{self.name}] ABERTO, nova tentativa em "
                        f"{self.recovery_timeout - waited:.0f}s"
                    )
                self._state = self.HALF_OPEN
                self._trial_calls = 0
                log.info(f"CircuitBreaker [{self.name}]: OPEN -> HALF_OPEN apos {waited:.0f}s")

            if self._state == self.HALF_OPEN:
                if self._trial_calls >= self.half_open_max_calls:
                    raise ExchangeUnavailable(f"CircuitBreaker [{self.name}] em teste, chamada recusada")
                self._trial_calls += 1

    def record_success(self):
        with self._lock:
            if self._state == self.HALF_OPEN:
                log.info(f"CircuitBreaker [{self.name}]: HALF_OPEN -> CLOSED")
            self._state = self.CLOSED
            self._failures = 0

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure = datetime.now()
            if self._state == self.HALF_OPEN or (
                    self._state == self.CLOSED and self._failures >= self.failure_threshold):
                log.warning(f"CircuitBreaker [{self.name}]: {self._state.upper()} -> OPEN (falhas={self._failures})")
                self._state = self.OPEN
                self._opened_at = self._clock()

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == self.OPEN

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'name': self.name,
                'state': self._state,
                'failures': self._failures,
                'failure_threshold': self.failure_threshold,
                'last_failure': self._last_failure.isoformat() if self._last_failure else None,
            }


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, config: Optional[Dict] = None) -> CircuitBreaker:
    """Breaker nomeado, compartilhado por todos os chamadores do mesmo nome."""
    with _breakers_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            config = config or {}
            breaker = CircuitBreaker(
                name,
                failure_threshold=int(config.get('failure_threshold', 5)),
                recovery_timeout=float(config.get('recovery_timeout', 60)),
                half_open_max_calls=int(config.get('half_open_max_calls', 3)),
            )
            _breakers[name] = breaker
        return breaker


def get_all_circuit_breakers() -> Dict[str, CircuitBreaker]:
    with _breakers_lock:
        return dict(_breakers)


def reset_all_circuit_breakers():
    for breaker in get_all_circuit_breakers().values():
        breaker.reset()


# =============================================================================
# POLITICA: SCAN
# =============================================================================

def scan_call(breaker: CircuitBreaker) -> Callable:
    """
    Leitura de dados de mercado protegida por circuit breaker, sem retry.

    Exemplo:
        @scan_call(get_circuit_breaker('data_fetch'))
        def fetch_klines(self, symbol, timeframe): ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            breaker.before_call()
            try:
                result = func(*args, **kwargs)
            except ccxt.AuthenticationError as e:
                log.critical(f"Falha de autenticacao em {func.__name__}: {e}")
                raise CriticalError(f"Autenticacao falhou: {e}") from e
            except (FetchError, ccxt.BaseError):
                breaker.record_failure()
                raise
            breaker.record_success()
            return result
        return wrapper
    return decorator


# =============================================================================
# POLITICA: ORDENS
# =============================================================================

@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_dict(cls, config: Dict) -> 'RetryPolicy':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (config or {}).items() if k in known})

    def delay(self, attempt: int) -> float:
        """Espera antes da tentativa `attempt + 1` (attempt começa em 1)."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


def order_call(breaker: CircuitBreaker, retry: Optional[RetryPolicy] = None,
               sleep: Callable[[float], None] = time.sleep) -> Callable:
    """
    Envio de ordem: retry em erro de rede, recusa propaga de imediato.
    A falha só conta no breaker depois de esgotadas as tentativas.
    """
    retry = retry or RetryPolicy()

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            breaker.before_call()
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except ORDER_REJECTIONS as e:
                    log.warning(f"Ordem recusada em {func.__name__}: {type(e).__name__}: {e}")
                    raise
                except ccxt.AuthenticationError as e:
                    log.critical(f"Falha de autenticacao em {func.__name__}: {e}")
                    raise CriticalError(f"Autenticacao falhou: {e}") from e
                except ccxt.NetworkError as e:
                    if attempt >= retry.max_attempts:
                        breaker.record_failure()
                        log.error(f"{func.__name__}: {attempt} tentativas sem sucesso ({type(e).__name__}: {e})")
                        raise
                    wait = retry.delay(attempt)
                    log.warning(f"{func.__name__}: tentativa {attempt}/{retry.max_attempts} falhou, "
                                f"aguardando {wait:.2f}s ({type(e).__name__})")
                    sleep(wait)
                    attempt += 1
                    continue
                except ccxt.BaseError:
                    breaker.record_failure()
                    raise
                breaker.record_success()
                return result
        return wrapper
    return decorator


# =============================================================================
# HEALTH STATUS
# =============================================================================

def get_health_status() -> Dict[str, Any]:
    """'healthy' com todos os breakers fechados, senão 'degraded'."""
    breakers = get_all_circuit_breakers()
    open_breakers = [name for name, b in breakers.items() if b.state != CircuitBreaker.CLOSED]
    return {
        'status': 'degraded' if open_breakers else 'healthy',
        'timestamp': datetime.now().isoformat(),
        'open_breakers': open_breakers,
        'circuit_breakers': {name: b.stats for name, b in breakers.items()},
    }
