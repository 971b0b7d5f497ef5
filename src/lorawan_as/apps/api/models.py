"""Request and response bodies of the HTTP surfaces.

Network-server messages keep the network-server's JSON field names
(``devEUI``, ``fCnt``...), join-server messages the backend-interfaces names
(``DevEUI``, ``PHYPayload``...); operator bodies use snake_case.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lorawan_as.services.lorawan.enums import MacVersion, MulticastGroupType, PayloadCodec
from lorawan_as.services.lorawan.ids import parse_aes_key, parse_dev_addr, parse_eui64
from lorawan_as.services.lorawan.models import (
    Device,
    DeviceActivation,
    DeviceKeys,
    DeviceQueueItem,
    Location,
    MulticastGroup,
    MulticastQueueItem,
    RxInfo,
    TxInfo,
)
from lorawan_as.services.lorawan.schemas import isoformat


def _check_hex(value: str, parser: Any) -> str:
    parser(value)
    return value.strip().lower()


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------- network-server -> application-server ----------
class LocationBody(_WireModel):
    latitude: float
    longitude: float
    altitude: float = 0.0

    def to_location(self) -> Location:
        return Location(latitude=self.latitude, longitude=self.longitude, altitude=self.altitude)


class RxInfoBody(_WireModel):
    gateway_id: str = Field(alias="gatewayID")
    rssi: int = 0
    lora_snr: float = Field(default=0.0, alias="loRaSNR")
    location: Optional[LocationBody] = None

    def to_rx_info(self) -> RxInfo:
        return RxInfo(
            gateway_id=self.gateway_id,
            rssi=self.rssi,
            lora_snr=self.lora_snr,
            location=self.location.to_location() if self.location else None,
        )


class TxInfoBody(_WireModel):
    frequency: int = 0
    dr: int = 0

    def to_tx_info(self) -> TxInfo:
        return TxInfo(frequency=self.frequency, dr=self.dr)


class KeyEnvelopeBody(_WireModel):
    kek_label: str = Field(default="", alias="kekLabel")
    aes_key: str = Field(alias="aesKey")

    @field_validator("aes_key")
    @classmethod
    def _aes_key(cls, value: str) -> str:
        bytes.fromhex(value)
        return value


class ActivationContextBody(_WireModel):
    dev_addr: str = Field(alias="devAddr")
    app_s_key: KeyEnvelopeBody = Field(alias="appSKey")

    _dev_addr = field_validator("dev_addr")(lambda v: _check_hex(v, parse_dev_addr))


class UplinkDataBody(_WireModel):
    dev_eui: str = Field(alias="devEUI")
    f_cnt: int = Field(alias="fCnt", ge=0, le=0xFFFFFFFF)
    f_port: int = Field(alias="fPort", ge=0, le=255)
    data: str = ""
    dev_addr: Optional[str] = Field(default=None, alias="devAddr")
    confirmed_uplink: bool = Field(default=False, alias="confirmedUplink")
    adr: bool = False
    tx_info: TxInfoBody = Field(default_factory=TxInfoBody, alias="txInfo")
    rx_info: List[RxInfoBody] = Field(default_factory=list, alias="rxInfo")
    device_status_battery: Optional[int] = Field(default=None, alias="deviceStatusBattery")
    device_status_margin: Optional[int] = Field(default=None, alias="deviceStatusMargin")
    location: Optional[LocationBody] = None
    device_activation_context: Optional[ActivationContextBody] = Field(default=None, alias="deviceActivationContext")

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))

    @field_validator("dev_addr")
    @classmethod
    def _dev_addr(cls, value: Optional[str]) -> Optional[str]:
        return _check_hex(value, parse_dev_addr) if value else None

    @field_validator("data")
    @classmethod
    def _data(cls, value: str) -> str:
        bytes.fromhex(value)
        return value


class DownlinkAckBody(_WireModel):
    dev_eui: str = Field(alias="devEUI")
    f_cnt: int = Field(alias="fCnt", ge=0, le=0xFFFFFFFF)
    acknowledged: bool

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))


class ErrorBody(_WireModel):
    dev_eui: str = Field(alias="devEUI")
    type: str
    error: str
    f_cnt: int = Field(default=0, alias="fCnt")

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))


class ProprietaryUplinkBody(_WireModel):
    mac_payload: str = Field(alias="macPayload")
    mic: str = ""
    tx_info: Optional[TxInfoBody] = Field(default=None, alias="txInfo")
    rx_info: List[RxInfoBody] = Field(default_factory=list, alias="rxInfo")

    @field_validator("mac_payload", "mic")
    @classmethod
    def _hex(cls, value: str) -> str:
        bytes.fromhex(value)
        return value


class DeviceStatusBody(_WireModel):
    dev_eui: str = Field(alias="devEUI")
    battery: Optional[int] = None
    margin: int = 0
    external_power_source: bool = Field(default=False, alias="externalPowerSource")
    battery_level_unavailable: bool = Field(default=False, alias="batteryLevelUnavailable")

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))


class DeviceLocationBody(_WireModel):
    dev_eui: str = Field(alias="devEUI")
    location: LocationBody

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))


# ---------- join-server ----------
class JoinServerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    protocol_version: str = Field(default="1.0", alias="ProtocolVersion")
    sender_id: str = Field(alias="SenderID")
    receiver_id: str = Field(default="", alias="ReceiverID")
    transaction_id: int = Field(default=0, alias="TransactionID")
    message_type: str = Field(alias="MessageType")
    mac_version: str = Field(default="", alias="MACVersion")
    phy_payload: str = Field(default="", alias="PHYPayload")
    dev_eui: str = Field(default="", alias="DevEUI")
    dev_addr: str = Field(default="", alias="DevAddr")
    dl_settings: str = Field(default="00", alias="DLSettings")
    rx_delay: int = Field(default=0, alias="RxDelay")
    cf_list: str = Field(default="", alias="CFList")


# ---------- operator ----------
class NetworkServerBody(BaseModel):
    id: Optional[str] = None
    name: str
    server: str
    ca_cert: str = ""
    tls_cert: str = ""
    tls_key: str = ""


class ServiceProfileBody(BaseModel):
    id: Optional[str] = None
    name: str
    network_server_id: str


class DeviceProfileBody(BaseModel):
    id: Optional[str] = None
    name: str
    network_server_id: str
    mac_version: MacVersion = MacVersion.LORAWAN_1_0_3
    supports_join: bool = True
    supports_class_b: bool = False
    supports_class_c: bool = False


class ApplicationBody(BaseModel):
    id: Optional[str] = None
    name: str
    service_profile_id: str
    payload_codec: PayloadCodec = PayloadCodec.NONE
    payload_encoder_script: str = ""
    payload_decoder_script: str = ""


class DeviceBody(BaseModel):
    dev_eui: str
    application_id: str
    device_profile_id: str
    name: str
    description: str = ""
    skip_fcnt_check: bool = False
    # older name of skip_fcnt_check
    relax_fcnt: bool = False
    variables: Dict[str, str] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))

    def to_device(self) -> Device:
        return Device(
            dev_eui=parse_eui64(self.dev_eui),
            application_id=self.application_id,
            device_profile_id=self.device_profile_id,
            name=self.name,
            description=self.description,
            skip_fcnt_check=self.skip_fcnt_check or self.relax_fcnt,
            variables=dict(self.variables),
            tags=dict(self.tags),
        )


def device_out(device: Device) -> dict[str, Any]:
    return {
        "dev_eui": device.dev_eui.hex(),
        "application_id": device.application_id,
        "device_profile_id": device.device_profile_id,
        "name": device.name,
        "description": device.description,
        "skip_fcnt_check": device.skip_fcnt_check,
        "last_seen_at": isoformat(device.last_seen_at) if device.last_seen_at else None,
        "device_status_battery": device.device_status_battery,
        "device_status_margin": device.device_status_margin,
        "device_status_external_power": device.device_status_external_power,
        "location": device.location.as_dict() if device.location else None,
        "variables": dict(device.variables),
        "tags": dict(device.tags),
    }


class ActivateBody(BaseModel):
    dev_addr: str
    app_s_key: str
    # LoRaWAN 1.0 devices only have the NwkSKey
    nwk_s_key: Optional[str] = None
    nwk_s_enc_key: Optional[str] = None
    s_nwk_s_int_key: Optional[str] = None
    f_nwk_s_int_key: Optional[str] = None
    f_cnt_up: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    n_f_cnt_down: int = Field(default=0, ge=0, le=0xFFFFFFFF)
    a_f_cnt_down: int = Field(default=0, ge=0, le=0xFFFFFFFF)

    _dev_addr = field_validator("dev_addr")(lambda v: _check_hex(v, parse_dev_addr))
    _app_s_key = field_validator("app_s_key")(lambda v: _check_hex(v, parse_aes_key))

    @field_validator("nwk_s_key", "nwk_s_enc_key", "s_nwk_s_int_key", "f_nwk_s_int_key")
    @classmethod
    def _keys(cls, value: Optional[str]) -> Optional[str]:
        return _check_hex(value, parse_aes_key) if value else None


def activation_out(activation: DeviceActivation) -> dict[str, Any]:
    return {
        "dev_eui": activation.dev_eui.hex(),
        "dev_addr": activation.dev_addr.hex(),
        "app_s_key": activation.app_s_key.hex(),
        "nwk_s_enc_key": activation.nwk_s_enc_key.hex(),
        "s_nwk_s_int_key": activation.s_nwk_s_int_key.hex(),
        "f_nwk_s_int_key": activation.f_nwk_s_int_key.hex(),
        "join_eui": activation.join_eui.hex() if activation.join_eui else None,
        "dev_nonce": activation.dev_nonce,
        "join_nonce": activation.join_nonce,
        "f_cnt_up": activation.f_cnt_up,
        "n_f_cnt_down": activation.n_f_cnt_down,
        "a_f_cnt_down": activation.a_f_cnt_down,
        "created_at": isoformat(activation.created_at),
    }


class KeysBody(BaseModel):
    nwk_key: str
    app_key: Optional[str] = None

    _nwk_key = field_validator("nwk_key")(lambda v: _check_hex(v, parse_aes_key))

    @field_validator("app_key")
    @classmethod
    def _app_key(cls, value: Optional[str]) -> Optional[str]:
        return _check_hex(value, parse_aes_key) if value else None


def keys_out(keys: DeviceKeys) -> dict[str, Any]:
    return {
        "dev_eui": keys.dev_eui.hex(),
        "nwk_key": keys.nwk_key.hex(),
        "app_key": keys.app_key.hex() if keys.app_key else None,
        "join_nonce": keys.join_nonce,
    }


class EnqueueBody(BaseModel):
    f_port: int = Field(ge=1, le=223)
    confirmed: bool = False
    data: Optional[str] = None
    object: Optional[Dict[str, Any]] = None
    reference: str = ""

    @field_validator("data")
    @classmethod
    def _data(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            bytes.fromhex(value)
        return value


def queue_item_out(item: DeviceQueueItem) -> dict[str, Any]:
    return {
        "dev_eui": item.dev_eui.hex(),
        "f_port": item.f_port,
        "f_cnt": item.f_cnt,
        "confirmed": item.confirmed,
        "data": item.frm_payload.hex(),
    }


class MulticastGroupBody(BaseModel):
    id: Optional[str] = None
    name: str
    service_profile_id: str
    mc_addr: str
    mc_nwk_s_key: str
    mc_app_s_key: str
    f_cnt: Optional[int] = Field(default=None, ge=0, le=0xFFFFFFFF)
    group_type: MulticastGroupType = MulticastGroupType.CLASS_C
    dr: int = 0
    frequency: int = 0
    ping_slot_period: int = 0

    _mc_addr = field_validator("mc_addr")(lambda v: _check_hex(v, parse_dev_addr))
    _mc_nwk_s_key = field_validator("mc_nwk_s_key")(lambda v: _check_hex(v, parse_aes_key))
    _mc_app_s_key = field_validator("mc_app_s_key")(lambda v: _check_hex(v, parse_aes_key))

    def to_group(self, group_id: str) -> MulticastGroup:
        return MulticastGroup(
            id=group_id,
            name=self.name,
            service_profile_id=self.service_profile_id,
            mc_addr=parse_dev_addr(self.mc_addr),
            mc_nwk_s_key=parse_aes_key(self.mc_nwk_s_key),
            mc_app_s_key=parse_aes_key(self.mc_app_s_key),
            f_cnt=self.f_cnt or 0,
            group_type=self.group_type,
            dr=self.dr,
            frequency=self.frequency,
            ping_slot_period=self.ping_slot_period,
        )


def multicast_group_out(group: MulticastGroup) -> dict[str, Any]:
    return {
        "id": group.id,
        "name": group.name,
        "service_profile_id": group.service_profile_id,
        "mc_addr": group.mc_addr.hex(),
        "f_cnt": group.f_cnt,
        "group_type": group.group_type.value,
        "dr": group.dr,
        "frequency": group.frequency,
        "ping_slot_period": group.ping_slot_period,
    }


class MulticastMemberBody(BaseModel):
    dev_eui: str

    _dev_eui = field_validator("dev_eui")(lambda v: _check_hex(v, parse_eui64))


class MulticastPayloadBody(BaseModel):
    f_port: int = Field(ge=1, le=223)
    data: str

    @field_validator("data")
    @classmethod
    def _data(cls, value: str) -> str:
        bytes.fromhex(value)
        return value


class MulticastEnqueueBody(BaseModel):
    items: List[MulticastPayloadBody] = Field(min_length=1)


def multicast_item_out(item: MulticastQueueItem) -> dict[str, Any]:
    return {
        "multicast_group_id": item.multicast_group_id,
        "f_cnt": item.f_cnt,
        "f_port": item.f_port,
        "data": item.frm_payload.hex(),
    }
