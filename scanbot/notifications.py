"""
Notificações para observadores externos (dashboard, websocket, testes).

Eventos: {'type': SCANNER_UPDATE | POSITIONS_UPDATED | BOT_STATUS_UPDATE, 'payload': ...}
O transporte fica a cargo de quem assina.
"""
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List

log = logging.getLogger(__name__)

SCANNER_UPDATE = 'SCANNER_UPDATE'
POSITIONS_UPDATED = 'POSITIONS_UPDATED'
BOT_STATUS_UPDATE = 'BOT_STATUS_UPDATE'

EVENT_TYPES = (SCANNER_UPDATE, POSITIONS_UPDATED, BOT_STATUS_UPDATE)


class Notifier:
    """Pub/sub síncrono; guarda os últimos eventos para inspeção."""

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        self._lock = threading.Lock()
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]):
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Dict[str, Any]], None]):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event_type: str, payload: Any):
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Tipo de evento desconhecido: {event_type}")
        event = {'type': event_type, 'payload': payload}
        with self._lock:
            self.history.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                log.exception(f"Erro no assinante de {event_type}")

    def last(self, event_type: str):
        """Último evento de um tipo (ou None)."""
        for event in reversed(self.history):
            if event['type'] == event_type:
                return event
        return None
