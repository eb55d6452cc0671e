import random
import sys

from paho.mqtt import client as mqtt_client

from app.automata.functions import keyword_args, maybe_number
from app.bus.event import Event, encode_event, new_event

# Настройки подключения
broker = '127.0.0.1'  # Адрес брокера
port = 1883  # Порт для подключения
prefix = 'gohome'  # Префикс топиков шины

# Генерируем случайный ID клиента
client_id = f'python-mqtt-{random.randint(0, 1000)}'

USAGE = """\
send_event.py <topic> <device> [key=value ...]

  send_event.py config automata            # перечитать правила автоматов
  send_event.py door door.front command=open
"""


def build_event(argv) -> Event:
    """["door", "door.front", "command=open"] → Event("door", {device, command})"""
    if len(argv) < 2:
        raise ValueError(USAGE)
    topic, device = argv[0], argv[1]
    fields = {k: maybe_number(v) for k, v in keyword_args(argv[2:]).items() if k}
    fields["device"] = device
    return new_event(topic, fields)


def connect_mqtt():
    def on_connect(client, userdata, flags, rc, properties=None):
        if rc == 0:
            print("Успешно подключились к MQTT брокеру!")
        else:
            print(f"Ошибка подключения, код: {rc}")

    # Создаем клиента
    client = mqtt_client.Client(mqtt_client.CallbackAPIVersion.VERSION2, client_id)
    client.on_connect = on_connect
    client.connect(broker, port)
    return client


def publish(client, ev: Event):
    topic, payload = encode_event(ev, prefix)
    result = client.publish(topic, payload)
    result.wait_for_publish(timeout=5)

    # Проверяем результат отправки
    if result.rc == mqtt_client.MQTT_ERR_SUCCESS:
        print(f"Отправлено сообщение '{payload}' в топик '{topic}'")
    else:
        print(f"Ошибка отправки сообщения в топик {topic}")


def run(argv):
    try:
        ev = build_event(argv)
    except ValueError as e:
        print(e)
        return 2
    client = connect_mqtt()
    client.loop_start()  # Запускаем фоновый цикл обработки сообщений
    publish(client, ev)
    client.loop_stop()  # Останавливаем цикл после отправки
    return 0


if __name__ == '__main__':
    sys.exit(run(sys.argv[1:]))
