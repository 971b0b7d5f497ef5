"""Dataclasses capturing the storage schema of the application server."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .enums import JoinRequestType, MacVersion, MulticastGroupType, PayloadCodec
from .ids import (
    AES128Key,
    ApplicationId,
    DevAddr,
    EUI64,
    MulticastGroupId,
    NetworkServerId,
    ProfileId,
)

__all__ = [
    "BATTERY_UNKNOWN",
    "NetworkServer",
    "ServiceProfile",
    "DeviceProfile",
    "Application",
    "Device",
    "DeviceKeys",
    "DeviceActivation",
    "DeviceQueueMapping",
    "DeviceQueueItem",
    "MulticastGroup",
    "MulticastQueueItem",
    "Location",
    "RxInfo",
    "TxInfo",
]

BATTERY_UNKNOWN = 256
"""Sentinel the network-server uses for an unknown battery level or margin."""


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True)
class NetworkServer:
    id: NetworkServerId
    name: str
    server: str
    ca_cert: str = ""
    tls_cert: str = ""
    tls_key: str = ""


@dataclass(slots=True)
class ServiceProfile:
    id: ProfileId
    name: str
    network_server_id: NetworkServerId


@dataclass(slots=True)
class DeviceProfile:
    id: ProfileId
    name: str
    network_server_id: NetworkServerId
    mac_version: MacVersion = MacVersion.LORAWAN_1_0_3
    supports_join: bool = True
    supports_class_b: bool = False
    supports_class_c: bool = False


@dataclass(slots=True)
class Application:
    id: ApplicationId
    name: str
    service_profile_id: ProfileId
    payload_codec: PayloadCodec = PayloadCodec.NONE
    payload_encoder_script: str = ""
    payload_decoder_script: str = ""


@dataclass(slots=True)
class Location:
    latitude: float
    longitude: float
    altitude: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude, "altitude": self.altitude}


@dataclass(slots=True)
class Device:
    dev_eui: EUI64
    application_id: ApplicationId
    device_profile_id: ProfileId
    name: str
    description: str = ""
    skip_fcnt_check: bool = False
    last_seen_at: datetime | None = None
    device_status_battery: int | None = None
    device_status_margin: int | None = None
    device_status_external_power: bool = False
    location: Location | None = None
    variables: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def apply_status(self, *, battery: int | None, margin: int | None, seen_at: datetime) -> None:
        """Record link status; the ``BATTERY_UNKNOWN`` sentinel clears a value."""

        self.last_seen_at = seen_at
        if battery is not None:
            self.device_status_battery = None if battery == BATTERY_UNKNOWN else battery
        if margin is not None:
            self.device_status_margin = None if margin == BATTERY_UNKNOWN else margin
        self.updated_at = seen_at


@dataclass(slots=True)
class DeviceKeys:
    dev_eui: EUI64
    nwk_key: AES128Key
    app_key: AES128Key | None = None
    join_nonce: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def root_app_key(self) -> AES128Key:
        """Key protecting ``AppSKey`` derivation; 1.0 devices only have ``NwkKey``."""

        return self.app_key or self.nwk_key


@dataclass(slots=True)
class DeviceActivation:
    dev_eui: EUI64
    dev_addr: DevAddr
    app_s_key: AES128Key
    nwk_s_enc_key: AES128Key
    s_nwk_s_int_key: AES128Key
    f_nwk_s_int_key: AES128Key
    join_req_type: JoinRequestType | None = None
    join_eui: EUI64 | None = None
    dev_nonce: int | None = None
    join_nonce: int | None = None
    f_cnt_up: int | None = None
    n_f_cnt_down: int = 0
    a_f_cnt_down: int = 0
    id: int | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def next_downlink_counter(self, *, lorawan_11: bool, f_port: int) -> int:
        """Counter the next application downlink must use."""

        if lorawan_11 and f_port > 0:
            return self.a_f_cnt_down
        return self.n_f_cnt_down


@dataclass(slots=True)
class DeviceQueueMapping:
    dev_eui: EUI64
    f_cnt: int
    reference: str
    id: int | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class DeviceQueueItem:
    dev_eui: EUI64
    f_port: int
    confirmed: bool
    frm_payload: bytes
    f_cnt: int
    dev_addr: DevAddr | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "devEUI": self.dev_eui.hex(),
            "fPort": self.f_port,
            "confirmed": self.confirmed,
            "frmPayload": self.frm_payload.hex(),
            "fCnt": self.f_cnt,
            "devAddr": self.dev_addr.hex() if self.dev_addr else None,
        }


@dataclass(slots=True)
class MulticastGroup:
    id: MulticastGroupId
    name: str
    service_profile_id: ProfileId
    mc_addr: DevAddr
    mc_nwk_s_key: AES128Key
    mc_app_s_key: AES128Key
    f_cnt: int = 0
    group_type: MulticastGroupType = MulticastGroupType.CLASS_C
    dr: int = 0
    frequency: int = 0
    ping_slot_period: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class MulticastQueueItem:
    multicast_group_id: MulticastGroupId
    f_cnt: int
    f_port: int
    frm_payload: bytes

    def as_payload(self) -> dict[str, Any]:
        return {
            "multicastGroupID": self.multicast_group_id,
            "fCnt": self.f_cnt,
            "fPort": self.f_port,
            "frmPayload": self.frm_payload.hex(),
        }


@dataclass(slots=True)
class RxInfo:
    gateway_id: str
    rssi: int = 0
    lora_snr: float = 0.0
    location: Location | None = None
    time: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"gatewayID": self.gateway_id, "rssi": self.rssi, "loRaSNR": self.lora_snr}
        if self.location is not None:
            data["location"] = self.location.as_dict()
        if self.time is not None:
            data["time"] = self.time.isoformat()
        return data


@dataclass(slots=True)
class TxInfo:
    frequency: int = 0
    dr: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {"frequency": self.frequency, "dr": self.dr}
