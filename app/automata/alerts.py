# app/automata/alerts.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import certifi
import requests

from app.bus.event import Event, new_event

_CERT_BUNDLE = certifi.where()


# ─────────────────────────────────────────────────────────────────────────────
# Отправители
# ─────────────────────────────────────────────────────────────────────────────

class Sender:
    def send(self, text: str) -> bool:
        raise NotImplementedError


class TelegramSender(Sender):
    """
    alerts:
      channels:
        phone:
          type: telegram
          bot_token: "123:AA..."
          chat_id: "-9999999"
    """

    def __init__(self, conf: Dict[str, Any], timeout: int = 10):
        self.bot_token = str(conf.get("bot_token") or "").strip()
        self.chat_id = str(conf.get("chat_id") or "").strip()
        self.insecure_tls = bool(conf.get("insecure_tls", False))
        self.timeout = timeout
        self.log = logging.getLogger("automata.alerts")

    def send(self, text: str) -> bool:
        if not self.bot_token or not self.chat_id:
            self.log.warning("telegram: empty token/chat")
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        verify_arg = False if self.insecure_tls else (_CERT_BUNDLE or True)

        try:
            r = requests.post(url, json=payload, timeout=self.timeout, verify=verify_arg)
            if r.status_code != 200:
                self.log.error("telegram HTTP %s: %s", r.status_code, r.text[:500])
                return False
            data = r.json()
            if not data.get("ok", False):
                self.log.error("telegram API error: %s", data)
                return False
            return True
        except requests.exceptions.RequestException as e:
            self.log.error("telegram send failed: %s", e)
            return False


_SENDERS: Dict[str, Callable[[Dict[str, Any]], Sender]] = {
    "telegram": TelegramSender,
}


class AlertDispatcher:
    """
    Оповещение в именованный канал:
      1) событие "alert" в шину — его видят все подписчики
      2) если канал описан в alerts.channels — доставка отправителем
         в отдельном потоке (цикл автоматов не ждёт сеть)
    """

    def __init__(self, emit: Callable[[Event], None], channels: Optional[Dict[str, Any]] = None) -> None:
        self._emit = emit
        self.log = logging.getLogger("automata.alerts")
        self._senders: Dict[str, Sender] = {}
        for name, conf in (channels or {}).items():
            kind = str((conf or {}).get("type", "telegram"))
            factory = _SENDERS.get(kind)
            if factory is None:
                self.log.warning("alert channel %s: unknown type %s", name, kind)
                continue
            self._senders[str(name)] = factory(conf or {})

    @property
    def channels(self) -> Dict[str, Sender]:
        return dict(self._senders)

    def send(self, message: str, target: str) -> Optional[threading.Thread]:
        self._emit(new_event("alert", {"device": f"alert.{target}", "target": target, "message": message}))

        sender = self._senders.get(target)
        if sender is None:
            return None

        def _deliver() -> None:
            if not sender.send(message):
                self.log.error("alert to %s not delivered: %s", target, message)

        t = threading.Thread(target=_deliver, name=f"alert:{target}", daemon=True)
        t.start()
        return t
