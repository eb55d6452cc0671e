# app/bus/interfaces.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from .event import Event

EventHandler = Callable[[Event], None]


class Bus(ABC):
    """
    Шина событий (publish/subscribe с поддержкой retained).

    emit() обязан быть потокобезопасным: его зовут из потоков таймеров,
    скриптов и обработчиков FastAPI.
    """

    @abstractmethod
    def id(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def emit(self, ev: Event) -> None:
        """Опубликовать событие."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, handler: EventHandler, topics: Optional[Sequence[str]] = None) -> int:
        """
        Подписка: topics=None → все события, иначе только указанные топики.
        Возвращает токен для unsubscribe().
        """
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self, token: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass
