"""LoRaWAN application-server core: identifiers, models and error taxonomy.

The pipelines (``join``, ``uplink``, ``downlink``, ``multicast``) are imported
from their modules; they all take a :class:`~.context.ServerContext`.
"""
from .ids import (
    AES128Key,
    ApplicationId,
    DevAddr,
    EUI64,
    MulticastGroupId,
    NetID,
    NetworkServerId,
    ProfileId,
    generate_id,
    parse_aes_key,
    parse_dev_addr,
    parse_eui64,
    parse_net_id,
)
from .enums import ErrorKind, EventType, JoinRequestType, MacVersion, MulticastGroupType, PayloadCodec
from .errors import ErrorCounters, LoRaWANError
from .models import (
    Application,
    Device,
    DeviceActivation,
    DeviceKeys,
    DeviceProfile,
    MulticastGroup,
    NetworkServer,
    ServiceProfile,
)

__all__ = [
    "AES128Key",
    "ApplicationId",
    "DevAddr",
    "EUI64",
    "MulticastGroupId",
    "NetID",
    "NetworkServerId",
    "ProfileId",
    "generate_id",
    "parse_aes_key",
    "parse_dev_addr",
    "parse_eui64",
    "parse_net_id",
    "ErrorKind",
    "EventType",
    "JoinRequestType",
    "MacVersion",
    "MulticastGroupType",
    "PayloadCodec",
    "ErrorCounters",
    "LoRaWANError",
    "Application",
    "Device",
    "DeviceActivation",
    "DeviceKeys",
    "DeviceProfile",
    "MulticastGroup",
    "NetworkServer",
    "ServiceProfile",
]
