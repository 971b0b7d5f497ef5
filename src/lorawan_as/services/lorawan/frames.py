"""Binary PHYPayload layouts touched by the join engine.

Only the frames the application server has to understand are modelled:
join-requests, rejoin-requests and join-accepts.  Data frames reach the core
already split into ``FCnt``/``FPort``/``FRMPayload`` by the network-server.
"""
from __future__ import annotations

from dataclasses import dataclass
import struct
from typing import Sequence

from . import crypto
from .enums import JoinRequestType, Major, MType
from .ids import EUI64, DevAddr, NetID, parse_eui64, parse_net_id

__all__ = [
    "FrameError",
    "PHYPayload",
    "DLSettings",
    "JoinRequest",
    "RejoinRequest",
    "JoinAccept",
    "mhdr",
    "parse_phy_payload",
    "parse_join_request",
    "parse_rejoin_request",
    "channel_cflist",
]


class FrameError(ValueError):
    """Raised when a PHYPayload cannot be parsed."""


def mhdr(mtype: MType, major: Major = Major.LORAWAN_R1) -> int:
    return (int(mtype) << 5) | int(major)


def _le(value: bytes) -> bytes:
    return bytes(reversed(value))


@dataclass(slots=True, frozen=True)
class PHYPayload:
    mhdr: int
    mac_payload: bytes
    mic: bytes

    @property
    def mtype(self) -> MType:
        return MType(self.mhdr >> 5)

    @property
    def major(self) -> int:
        return self.mhdr & 0x03

    @property
    def signed_part(self) -> bytes:
        return bytes([self.mhdr]) + self.mac_payload


def parse_phy_payload(data: bytes) -> PHYPayload:
    raw = bytes(data)
    if len(raw) < 5:
        raise FrameError("PHYPayload must contain MHDR, payload and MIC")
    return PHYPayload(mhdr=raw[0], mac_payload=raw[1:-4], mic=raw[-4:])


@dataclass(slots=True, frozen=True)
class DLSettings:
    rx2_dr: int = 0
    rx1_dr_offset: int = 0
    opt_neg: bool = False

    def to_byte(self) -> int:
        if not 0 <= self.rx2_dr <= 15 or not 0 <= self.rx1_dr_offset <= 7:
            raise FrameError("DLSettings field out of range")
        return (int(self.opt_neg) << 7) | (self.rx1_dr_offset << 4) | self.rx2_dr

    @classmethod
    def from_byte(cls, value: int) -> "DLSettings":
        return cls(rx2_dr=value & 0x0F, rx1_dr_offset=(value >> 4) & 0x07, opt_neg=bool(value & 0x80))


@dataclass(slots=True, frozen=True)
class JoinRequest:
    mhdr: int
    join_eui: EUI64
    dev_eui: EUI64
    dev_nonce: int
    mic: bytes

    @property
    def signed_part(self) -> bytes:
        return bytes([self.mhdr]) + _le(self.join_eui) + _le(self.dev_eui) + struct.pack("<H", self.dev_nonce)

    def expected_mic(self, nwk_key: bytes) -> bytes:
        return crypto.compute_mic(nwk_key, self.signed_part)

    def to_bytes(self) -> bytes:
        return self.signed_part + self.mic

    @classmethod
    def build(cls, *, join_eui: bytes, dev_eui: bytes, dev_nonce: int, nwk_key: bytes) -> "JoinRequest":
        unsigned = cls(mhdr(MType.JOIN_REQUEST), EUI64(join_eui), EUI64(dev_eui), dev_nonce, b"")
        return cls(unsigned.mhdr, unsigned.join_eui, unsigned.dev_eui, dev_nonce, unsigned.expected_mic(nwk_key))


def parse_join_request(data: bytes) -> JoinRequest:
    phy = parse_phy_payload(data)
    if phy.mtype is not MType.JOIN_REQUEST:
        raise FrameError(f"expected JoinRequest, got {phy.mtype.name}")
    if len(phy.mac_payload) != 18:
        raise FrameError("join-request payload must be 18 bytes")
    body = phy.mac_payload
    return JoinRequest(
        mhdr=phy.mhdr,
        join_eui=parse_eui64(_le(body[0:8])),
        dev_eui=parse_eui64(_le(body[8:16])),
        dev_nonce=struct.unpack("<H", body[16:18])[0],
        mic=phy.mic,
    )


@dataclass(slots=True, frozen=True)
class RejoinRequest:
    """Rejoin-request.  Types 0 and 2 carry ``NetID``; type 1 carries ``JoinEUI``."""

    mhdr: int
    rejoin_type: int
    dev_eui: EUI64
    rj_count: int
    mic: bytes
    net_id: NetID | None = None
    join_eui: EUI64 | None = None

    @property
    def join_request_type(self) -> JoinRequestType:
        return JoinRequestType(self.rejoin_type)

    def to_bytes(self) -> bytes:
        if self.rejoin_type == 1:
            body = bytes([1]) + _le(self.join_eui or bytes(8)) + _le(self.dev_eui) + struct.pack("<H", self.rj_count)
        else:
            body = bytes([self.rejoin_type]) + _le(self.net_id or bytes(3)) + _le(self.dev_eui)
            body += struct.pack("<H", self.rj_count)
        return bytes([self.mhdr]) + body + self.mic


def parse_rejoin_request(data: bytes) -> RejoinRequest:
    phy = parse_phy_payload(data)
    if phy.mtype is not MType.REJOIN_REQUEST:
        raise FrameError(f"expected RejoinRequest, got {phy.mtype.name}")
    body = phy.mac_payload
    if not body:
        raise FrameError("empty rejoin-request payload")
    rejoin_type = body[0]
    if rejoin_type in (0, 2):
        if len(body) != 14:
            raise FrameError("rejoin-request type 0/2 payload must be 14 bytes")
        return RejoinRequest(
            mhdr=phy.mhdr,
            rejoin_type=rejoin_type,
            net_id=parse_net_id(_le(body[1:4])),
            dev_eui=parse_eui64(_le(body[4:12])),
            rj_count=struct.unpack("<H", body[12:14])[0],
            mic=phy.mic,
        )
    if rejoin_type == 1:
        if len(body) != 19:
            raise FrameError("rejoin-request type 1 payload must be 19 bytes")
        return RejoinRequest(
            mhdr=phy.mhdr,
            rejoin_type=1,
            join_eui=parse_eui64(_le(body[1:9])),
            dev_eui=parse_eui64(_le(body[9:17])),
            rj_count=struct.unpack("<H", body[17:19])[0],
            mic=phy.mic,
        )
    raise FrameError(f"invalid rejoin type {rejoin_type}")


def channel_cflist(frequencies: Sequence[int]) -> bytes:
    """Encode a type-0 CFList (up to five extra channels, Hz)."""

    if len(frequencies) > 5:
        raise FrameError("a channel CFList holds at most five frequencies")
    out = bytearray()
    for index in range(5):
        freq = frequencies[index] if index < len(frequencies) else 0
        if freq % 100:
            raise FrameError("CFList frequencies must be a multiple of 100 Hz")
        out += struct.pack("<I", freq // 100)[:3]
    out.append(0x00)
    return bytes(out)


@dataclass(slots=True, frozen=True)
class JoinAccept:
    join_nonce: int
    net_id: NetID
    dev_addr: DevAddr
    dl_settings: DLSettings
    rx_delay: int
    cflist: bytes = b""

    def mac_payload(self) -> bytes:
        if self.cflist and len(self.cflist) != 16:
            raise FrameError("CFList must be 16 bytes")
        return (
            struct.pack("<I", self.join_nonce)[:3]
            + _le(self.net_id)
            + _le(self.dev_addr)
            + bytes([self.dl_settings.to_byte(), self.rx_delay & 0xFF])
            + bytes(self.cflist)
        )

    def encrypted_phy_payload(
        self,
        *,
        mic_key: bytes,
        encryption_key: bytes,
        join_request_type: JoinRequestType = JoinRequestType.JOIN_REQUEST,
        join_eui: bytes | None = None,
        dev_nonce: int = 0,
    ) -> bytes:
        """Sign and encrypt the accept.

        With ``opt_neg`` unset the MIC covers ``MHDR | payload`` (LoRaWAN 1.0);
        otherwise it is prefixed with ``JoinReqType | JoinEUI | DevNonce``.
        """

        header = bytes([mhdr(MType.JOIN_ACCEPT)])
        payload = self.mac_payload()
        if self.dl_settings.opt_neg:
            if join_eui is None:
                raise FrameError("LoRaWAN 1.1 join-accept MIC needs the JoinEUI")
            signed = bytes([int(join_request_type)]) + _le(join_eui) + struct.pack("<H", dev_nonce) + header + payload
        else:
            signed = header + payload
        mic = crypto.compute_mic(mic_key, signed)
        return header + crypto.encrypt_join_accept(encryption_key, payload + mic)

    @classmethod
    def decrypt(cls, phy_payload: bytes, key: bytes) -> tuple["JoinAccept", bytes]:
        """Inverse of :meth:`encrypted_phy_payload`; returns the accept and its MIC."""

        raw = bytes(phy_payload)
        clear = crypto.decrypt_join_accept(key, raw[1:])
        body, mic = clear[:-4], clear[-4:]
        if len(body) not in (12, 28):
            raise FrameError("join-accept payload must be 12 or 28 bytes")
        accept = cls(
            join_nonce=int.from_bytes(body[0:3], "little"),
            net_id=parse_net_id(_le(body[3:6])),
            dev_addr=DevAddr(_le(body[6:10])),
            dl_settings=DLSettings.from_byte(body[10]),
            rx_delay=body[11],
            cflist=body[12:],
        )
        return accept, mic
