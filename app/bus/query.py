# app/bus/query.py
from __future__ import annotations

import threading
import time
from typing import List

from .event import Event, new_event
from .interfaces import Bus


def query_channel(bus: Bus, query: str, timeout: float = 5.0) -> List[Event]:
    """
    Запрос по шине: публикуем событие "query" и собираем ответы "response"
    до истечения timeout. Блокирующий вызов — только вне основного цикла.
    """
    responses: List[Event] = []
    lock = threading.Lock()

    def _collect(ev: Event) -> None:
        with lock:
            responses.append(ev)

    token = bus.subscribe(_collect, ["response"])
    try:
        bus.emit(new_event("query", {"device": "query", "query": query}))
        time.sleep(timeout)
    finally:
        bus.unsubscribe(token)

    with lock:
        return list(responses)
