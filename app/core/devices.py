# app/core/devices.py
from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class DeviceConf(BaseModel):
    """
    Устройство из инвентаря (секция devices в config.yaml).

    devices:
      light.hall:
        name: "Hall light"
        caps: [switch, dimmer]
        group: downstairs
    """
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    caps: List[str] = Field(default_factory=list)
    group: str = ""

    @property
    def type(self) -> str:
        return self.id.split(".", 1)[0]

    def has_cap(self, cap: str) -> bool:
        return cap in self.caps


def load_devices(raw: Dict[str, Any] | None) -> Dict[str, DeviceConf]:
    """Секция devices → {id: DeviceConf}. Порядок из YAML сохраняется."""
    out: Dict[str, DeviceConf] = {}
    for dev_id, d in (raw or {}).items():
        d = dict(d or {})
        d["id"] = str(dev_id)
        d.setdefault("name", str(dev_id))
        out[str(dev_id)] = DeviceConf(**d)
    return out


def is_switchable(dev: DeviceConf) -> bool:
    return dev.has_cap("switch")


def match_devices(devices: Dict[str, DeviceConf], name: str) -> List[str]:
    """Точное совпадение id, иначе — все переключаемые устройства, содержащие name."""
    if name in devices:
        return [name]
    return sorted(dev_id for dev_id, dev in devices.items() if name in dev_id and is_switchable(dev))
