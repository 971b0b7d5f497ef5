"""Events delivered to integrations and to the per-device event log."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from .enums import EventType
from .models import Device, Location, RxInfo, TxInfo
from .schemas import isoformat

__all__ = [
    "DeviceEvent",
    "UplinkEvent",
    "JoinEvent",
    "AckEvent",
    "ErrorEvent",
    "StatusEvent",
    "LocationEvent",
]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True, kw_only=True)
class DeviceEvent:
    """Fields common to every device notification."""

    application_id: str
    application_name: str
    device_name: str
    dev_eui: bytes
    tags: dict[str, str] = field(default_factory=dict)
    variables: dict[str, str] = field(default_factory=dict)
    published_at: datetime = field(default_factory=_utcnow)

    event_type = EventType.UPLINK

    @classmethod
    def base_fields(cls, device: Device, application_name: str) -> dict[str, Any]:
        return {
            "application_id": device.application_id,
            "application_name": application_name,
            "device_name": device.name,
            "dev_eui": device.dev_eui,
            "tags": dict(device.tags),
            "variables": dict(device.variables),
        }

    def _base(self) -> dict[str, Any]:
        return {
            "applicationID": self.application_id,
            "applicationName": self.application_name,
            "deviceName": self.device_name,
            "devEUI": self.dev_eui.hex(),
            "tags": dict(self.tags),
            "variables": dict(self.variables),
            "publishedAt": isoformat(self.published_at),
        }

    def as_dict(self) -> dict[str, Any]:
        return self._base()


@dataclass(slots=True, kw_only=True)
class UplinkEvent(DeviceEvent):
    f_cnt: int
    f_port: int
    data: bytes
    dev_addr: bytes | None = None
    object: Any = None
    confirmed: bool = False
    adr: bool = False
    rx_info: Sequence[RxInfo] = ()
    tx_info: TxInfo = field(default_factory=TxInfo)

    event_type = EventType.UPLINK

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data.update(
            {
                "fCnt": self.f_cnt,
                "fPort": self.f_port,
                "data": self.data.hex(),
                "devAddr": self.dev_addr.hex() if self.dev_addr else None,
                "object": self.object,
                "confirmedUplink": self.confirmed,
                "adr": self.adr,
                "rxInfo": [rx.as_dict() for rx in self.rx_info],
                "txInfo": self.tx_info.as_dict(),
            }
        )
        return data


@dataclass(slots=True, kw_only=True)
class JoinEvent(DeviceEvent):
    dev_addr: bytes

    event_type = EventType.JOIN

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data["devAddr"] = self.dev_addr.hex()
        return data


@dataclass(slots=True, kw_only=True)
class AckEvent(DeviceEvent):
    reference: str
    acknowledged: bool
    f_cnt: int

    event_type = EventType.ACK

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data.update({"reference": self.reference, "acknowledged": self.acknowledged, "fCnt": self.f_cnt})
        return data


@dataclass(slots=True, kw_only=True)
class ErrorEvent(DeviceEvent):
    type: str
    error: str
    f_cnt: int = 0

    event_type = EventType.ERROR

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data.update({"type": self.type, "error": self.error, "fCnt": self.f_cnt})
        return data


@dataclass(slots=True, kw_only=True)
class StatusEvent(DeviceEvent):
    margin: int
    battery: int | None
    external_power_source: bool = False

    event_type = EventType.STATUS

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data.update(
            {
                "margin": self.margin,
                "battery": self.battery,
                "externalPowerSource": self.external_power_source,
                "batteryLevelUnavailable": self.battery is None and not self.external_power_source,
            }
        )
        return data


@dataclass(slots=True, kw_only=True)
class LocationEvent(DeviceEvent):
    location: Location

    event_type = EventType.LOCATION

    def as_dict(self) -> dict[str, Any]:
        data = self._base()
        data["location"] = self.location.as_dict()
        return data
