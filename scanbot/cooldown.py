"""
Cooldown Registry - Suspensão de entradas após saída com prejuízo

Entradas expiradas são ignoradas na leitura (expiração preguiçosa) e
removidas apenas quando há uma escrita nova.
"""
import threading
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CooldownEntry:
    symbol: str
    until: datetime


class CooldownRegistry:
    """Mapa symbol -> fim do cooldown."""

    def __init__(self):
        self._entries: Dict[str, CooldownEntry] = {}
        self._lock = threading.Lock()

    def set(self, symbol: str, hours: float, now: Optional[datetime] = None) -> Optional[CooldownEntry]:
        """Registrar cooldown de `hours` horas. Ignorado se hours <= 0."""
        if hours <= 0:
            return None
        now = now or datetime.now()
        entry = CooldownEntry(symbol=symbol, until=now + timedelta(hours=hours))
        with self._lock:
            self._prune(now)
            self._entries[symbol] = entry
        log.info(f"Cooldown {symbol} ate {entry.until.strftime('%Y-%m-%d %H:%M:%S')}")
        return entry

    def is_active(self, symbol: str, now: Optional[datetime] = None) -> bool:
        return self.remaining(symbol, now) is not None

    def remaining(self, symbol: str, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Tempo restante, ou None se não há cooldown ativo."""
        now = now or datetime.now()
        with self._lock:
            entry = self._entries.get(symbol)
        if entry is None or entry.until <= now:
            return None
        return entry.until - now

    def active(self, now: Optional[datetime] = None) -> List[CooldownEntry]:
        now = now or datetime.now()
        with self._lock:
            return [e for e in self._entries.values() if e.until > now]

    def clear(self):
        with self._lock:
            self._entries.clear()

    def _prune(self, now: datetime):
        expired = [s for s, e in self._entries.items() if e.until <= now]
        for symbol in expired:
            del self._entries[symbol]

    def __len__(self):
        with self._lock:
            return len(self._entries)
