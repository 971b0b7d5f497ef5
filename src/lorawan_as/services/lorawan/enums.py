"""Enumerations shared by the LoRaWAN application-server core."""
from __future__ import annotations

from enum import Enum, IntEnum

__all__ = [
    "MType",
    "Major",
    "JoinRequestType",
    "MacVersion",
    "PayloadCodec",
    "MulticastGroupType",
    "ResultCode",
    "MessageType",
    "EventType",
    "ErrorKind",
    "Action",
    "Decision",
]


class _StrEnum(str, Enum):
    """Simple ``str``-backed enum compatible with Python 3.10."""

    def __str__(self) -> str:  # pragma: no cover - convenience for logging only
        return str(self.value)


class MType(IntEnum):
    JOIN_REQUEST = 0
    JOIN_ACCEPT = 1
    UNCONFIRMED_DATA_UP = 2
    UNCONFIRMED_DATA_DOWN = 3
    CONFIRMED_DATA_UP = 4
    CONFIRMED_DATA_DOWN = 5
    REJOIN_REQUEST = 6
    PROPRIETARY = 7


class Major(IntEnum):
    LORAWAN_R1 = 0


class JoinRequestType(IntEnum):
    """Value of the ``JoinReqType`` field mixed into the 1.1 join-accept MIC."""

    REJOIN_TYPE_0 = 0x00
    REJOIN_TYPE_1 = 0x01
    REJOIN_TYPE_2 = 0x02
    JOIN_REQUEST = 0xFF


class MacVersion(_StrEnum):
    LORAWAN_1_0_0 = "1.0.0"
    LORAWAN_1_0_1 = "1.0.1"
    LORAWAN_1_0_2 = "1.0.2"
    LORAWAN_1_0_3 = "1.0.3"
    LORAWAN_1_0_4 = "1.0.4"
    LORAWAN_1_1_0 = "1.1.0"

    @property
    def is_lorawan_11(self) -> bool:
        return self.value.startswith("1.1")

    @classmethod
    def parse(cls, value: str | None) -> "MacVersion":
        """Map a free-form version string onto the closest known revision."""

        text = (value or "").strip()
        for member in cls:
            if member.value == text:
                return member
        if text.startswith("1.1"):
            return cls.LORAWAN_1_1_0
        return cls.LORAWAN_1_0_3


class PayloadCodec(_StrEnum):
    NONE = "none"
    CAYENNE_LPP = "cayenne_lpp"
    CUSTOM_JS = "custom_js"


class MulticastGroupType(_StrEnum):
    CLASS_B = "CLASS_B"
    CLASS_C = "CLASS_C"


class ResultCode(_StrEnum):
    SUCCESS = "Success"
    MIC_FAILED = "MICFailed"
    JOIN_REQ_FAILED = "JoinReqFailed"
    NO_ROAMING_AGREEMENT = "NoRoamingAgreement"
    UNKNOWN_DEV_EUI = "UnknownDevEUI"
    MALFORMED_REQUEST = "MalformedRequest"
    OTHER = "Other"


class MessageType(_StrEnum):
    JOIN_REQ = "JoinReq"
    JOIN_ANS = "JoinAns"
    REJOIN_REQ = "RejoinReq"
    REJOIN_ANS = "RejoinAns"
    HOME_NS_REQ = "HomeNSReq"
    HOME_NS_ANS = "HomeNSAns"


class EventType(_StrEnum):
    UPLINK = "uplink"
    ACK = "ack"
    JOIN = "join"
    ERROR = "error"
    STATUS = "status"
    LOCATION = "location"


class ErrorKind(_StrEnum):
    UNKNOWN_DEVICE = "UnknownDevice"
    NO_ACTIVATION = "NoActivation"
    NO_DEVICE_KEYS = "NoDeviceKeys"
    DEV_NONCE_REUSED = "DevNonceReused"
    JOIN_NONCE_EXHAUSTED = "JoinNonceExhausted"
    MIC_FAILED = "MICFailed"
    FCNT_REPLAY = "FCntReplay"
    DUPLICATE_FRAME = "DuplicateFrame"
    COUNTER_EXHAUSTED = "CounterExhausted"
    CODEC_FAILED = "CodecFailed"
    SERVICE_PROFILE_MISMATCH = "ServiceProfileMismatch"
    NETWORK_SERVER_UNAVAILABLE = "NetworkServerUnavailable"
    PERMISSION_DENIED = "PermissionDenied"
    UNAUTHENTICATED = "Unauthenticated"
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID_ARGUMENT = "InvalidArgument"
    NOT_SUPPORTED = "NotSupported"
    INTERNAL = "Internal"


class Decision(_StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class Action(_StrEnum):
    """Operations an identity can be authorised for."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"
    READ_KEYS = "read_keys"
    UPDATE_KEYS = "update_keys"
    ENQUEUE = "enqueue"
    FLUSH = "flush"
    STREAM = "stream"
