"""Identifier types used by the application-server core.

Radio identifiers (``DevEUI``, ``JoinEUI``, ``DevAddr``, ``NetID``) and keys are
kept as raw ``bytes`` in the protocol byte order users read them in (most
significant byte first, i.e. the hex string ``0102030405060708`` maps to
``b"\\x01...\\x08"``).  The wire codecs reverse them where LoRaWAN mandates
little-endian encoding.

Inventory identifiers (applications, profiles, multicast groups) and event ids
are time-ordered UUIDv7 strings, so listings sorted by id follow creation order.
"""
from __future__ import annotations

import secrets
import time
import uuid
from typing import NewType

__all__ = [
    "EUI64",
    "DevAddr",
    "NetID",
    "AES128Key",
    "ApplicationId",
    "ProfileId",
    "NetworkServerId",
    "MulticastGroupId",
    "EventId",
    "parse_eui64",
    "parse_dev_addr",
    "parse_net_id",
    "parse_aes_key",
    "generate_id",
    "generate_event_id",
]

EUI64 = NewType("EUI64", bytes)
DevAddr = NewType("DevAddr", bytes)
NetID = NewType("NetID", bytes)
AES128Key = NewType("AES128Key", bytes)

ApplicationId = NewType("ApplicationId", str)
ProfileId = NewType("ProfileId", str)
NetworkServerId = NewType("NetworkServerId", str)
MulticastGroupId = NewType("MulticastGroupId", str)
EventId = NewType("EventId", str)


def _parse_fixed(value: str | bytes, size: int, label: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise ValueError(f"{label} must be a hex string") from exc
    if len(raw) != size:
        raise ValueError(f"{label} must be exactly {size} bytes, got {len(raw)}")
    return raw


def parse_eui64(value: str | bytes) -> EUI64:
    return EUI64(_parse_fixed(value, 8, "EUI64"))


def parse_dev_addr(value: str | bytes) -> DevAddr:
    return DevAddr(_parse_fixed(value, 4, "DevAddr"))


def parse_net_id(value: str | bytes) -> NetID:
    return NetID(_parse_fixed(value, 3, "NetID"))


def parse_aes_key(value: str | bytes) -> AES128Key:
    return AES128Key(_parse_fixed(value, 16, "AES128Key"))


def _uuid7() -> uuid.UUID:
    # 48-bit millisecond timestamp, version nibble, 74 random bits, RFC 4122 variant
    millis = time.time_ns() // 1_000_000
    rand = int.from_bytes(secrets.token_bytes(10), "big")
    value = (millis & 0xFFFF_FFFF_FFFF) << 80
    value |= 0x7000 << 64
    value |= (rand >> 68) << 64
    value |= 0x8000_0000_0000_0000
    value |= rand & 0x3FFF_FFFF_FFFF_FFFF
    return uuid.UUID(int=value)


def generate_id() -> str:
    return str(_uuid7())


def generate_event_id() -> EventId:
    return EventId(str(_uuid7()))
