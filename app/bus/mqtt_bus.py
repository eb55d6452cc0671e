# app/bus/mqtt_bus.py
from __future__ import annotations

import itertools
import queue
import threading
from typing import Any, Dict, Optional, Sequence, Tuple

import paho.mqtt.client as mqtt

from .event import Event, decode_event, encode_event
from .interfaces import Bus, EventHandler

import logging

log = logging.getLogger("mqtt")


class MqttBus(Bus):
    """
    Шина поверх MQTT-брокера.

    Топики:  <prefix>/<topic>/<device>, payload — JSON с полями события.
    Публикация идёт через очередь и отдельный поток, поэтому emit()
    можно вызывать из любого потока.
    """

    def __init__(self, conf: Dict[str, Any]):
        self.conf = conf
        self.prefix = str(conf.get("prefix", "gohome")).strip("/") or "gohome"
        self.qos = int(conf.get("qos", 0))

        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=str(conf.get("client_id") or "automata"),
            protocol=mqtt.MQTTv311,
            # подписки переживают переподключение
            clean_session=False,
        )
        if conf.get("username"):
            self.client.username_pw_set(conf["username"], conf.get("password") or "")

        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._subs: Dict[int, Tuple[EventHandler, Optional[frozenset]]] = {}
        self.out_queue: "queue.Queue[Optional[Tuple[str, str, bool]]]" = queue.Queue()
        self._publisher: Optional[threading.Thread] = None

        def _on_connect(c, u, flags, rc, properties=None):
            log.info(f"[mqtt] connected rc={rc}")
            # после реконнекта — заново подпишемся на всё дерево
            try:
                self.client.subscribe(f"{self.prefix}/#", qos=self.qos)
            except Exception as e:
                log.warning(f"[mqtt] resubscribe failed: {e}")

        self.client.on_connect = _on_connect
        self.client.on_message = self._on_message

    def id(self) -> str:
        return f"mqtt: {self.conf.get('host')}:{self.conf.get('port', 1883)}"

    def connect(self) -> None:
        # не валим процесс, если брокер недоступен
        try:
            self.client.connect_async(self.conf["host"], int(self.conf.get("port", 1883)))
        except Exception as e:
            log.error(f"[mqtt] initial connect failed: {e}")
        self.client.loop_start()  # неблокирующий цикл
        self._publisher = threading.Thread(target=self._publisher_loop, name="mqtt-publisher", daemon=True)
        self._publisher.start()

    def close(self) -> None:
        self.out_queue.put(None)
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            log.debug(f"[mqtt] disconnect error: {e}")

    # ── publish/subscribe ──
    def emit(self, ev: Event) -> None:
        topic, payload = encode_event(ev, self.prefix)
        self.out_queue.put((topic, payload, ev.retained))

    def subscribe(self, handler: EventHandler, topics: Optional[Sequence[str]] = None) -> int:
        with self._lock:
            token = next(self._ids)
            self._subs[token] = (handler, frozenset(topics) if topics else None)
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subs.pop(token, None)

    def _on_message(self, client, userdata, msg):
        ev = decode_event(msg.topic, msg.payload, prefix=self.prefix, retained=bool(msg.retain))
        if ev is None:
            log.debug(f"[mqtt] skip message on {msg.topic}")
            return

        with self._lock:
            subs = list(self._subs.values())
        for handler, topics in subs:
            if topics is not None and ev.topic not in topics:
                continue
            try:
                handler(ev)
            except Exception as e:
                log.error(f"[mqtt] handler error for {msg.topic}: {e}")

    def _publisher_loop(self):
        while True:
            item = self.out_queue.get()
            if item is None:
                break
            topic, payload, retain = item
            try:
                self.client.publish(topic, payload, qos=self.qos, retain=retain)
            except Exception as e:
                log.error(f"publish error: {e}")
