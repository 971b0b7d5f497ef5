"""Interfaces the frame pipelines depend on; implementations live elsewhere."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

from .enums import Action, Decision
from .events import DeviceEvent
from .models import (
    Application,
    Device,
    DeviceActivation,
    DeviceKeys,
    DeviceProfile,
    DeviceQueueItem,
    DeviceQueueMapping,
    MulticastGroup,
    MulticastQueueItem,
    NetworkServer,
    ServiceProfile,
)


# ---- Authorization ----
@dataclass(slots=True, frozen=True)
class Identity:
    subject: str
    is_admin: bool = False
    application_ids: frozenset[str] = field(default_factory=frozenset)
    service_profile_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(slots=True, frozen=True)
class Target:
    kind: str  # "device" | "device_queue" | "multicast_group" | "application" | ...
    id: Optional[str] = None
    application_id: Optional[str] = None
    service_profile_id: Optional[str] = None


class Authorizer(Protocol):
    def identify(self, token: str | None) -> Identity | None: ...
    def check(self, identity: Identity, action: Action, target: Target) -> Decision: ...


# ---- Repositories ----
class DeviceRepo(Protocol):
    def load(self, dev_eui: bytes) -> Device: ...
    def update_status(self, device: Device) -> None: ...
    def create(self, device: Device) -> None: ...
    def update(self, device: Device) -> None: ...
    def delete(self, dev_eui: bytes) -> None: ...
    def list(self, *, application_id: str | None = None) -> list[Device]: ...


class ActivationRepo(Protocol):
    def latest_for(self, dev_eui: bytes) -> DeviceActivation: ...
    def list_for(self, dev_eui: bytes) -> list[DeviceActivation]: ...
    def append(self, activation: DeviceActivation) -> DeviceActivation: ...
    def update_counters(self, activation: DeviceActivation) -> None: ...
    def delete_all_for(self, dev_eui: bytes) -> int: ...


class KeysRepo(Protocol):
    def load(self, dev_eui: bytes) -> DeviceKeys: ...
    def create(self, keys: DeviceKeys) -> None: ...
    def update(self, keys: DeviceKeys) -> None: ...
    def delete(self, dev_eui: bytes) -> None: ...
    def update_nonces(self, dev_eui: bytes, *, join_nonce: int) -> None: ...
    def has_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int) -> bool: ...
    def max_dev_nonce(self, dev_eui: bytes, join_eui: bytes) -> int | None: ...
    def add_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int, *, keep: int) -> None: ...


class QueueRepo(Protocol):
    def insert(self, mapping: DeviceQueueMapping) -> DeviceQueueMapping: ...
    def delete_by_fcnt(self, dev_eui: bytes, f_cnt: int) -> DeviceQueueMapping | None: ...
    def delete(self, mapping_id: int) -> None: ...
    def delete_all_for(self, dev_eui: bytes) -> int: ...
    def list_for(self, dev_eui: bytes) -> list[DeviceQueueMapping]: ...


class MulticastRepo(Protocol):
    def create(self, group: MulticastGroup) -> None: ...
    def get(self, group_id: str) -> MulticastGroup: ...
    def update(self, group: MulticastGroup) -> None: ...
    def update_fcnt(self, group_id: str, f_cnt: int) -> None: ...
    def release_fcnt(self, group_id: str, reserved: int, f_cnt: int) -> None: ...
    def delete(self, group_id: str) -> None: ...
    def list(self, *, service_profile_id: str | None = None) -> list[MulticastGroup]: ...
    def add_device(self, group_id: str, dev_eui: bytes) -> None: ...
    def remove_device(self, group_id: str, dev_eui: bytes) -> None: ...
    def list_devices(self, group_id: str) -> list[bytes]: ...


class InventoryRepo(Protocol):
    def create_network_server(self, network_server: NetworkServer) -> None: ...
    def get_network_server(self, network_server_id: str) -> NetworkServer: ...
    def create_service_profile(self, profile: ServiceProfile) -> None: ...
    def get_service_profile(self, profile_id: str) -> ServiceProfile: ...
    def create_device_profile(self, profile: DeviceProfile) -> None: ...
    def get_device_profile(self, profile_id: str) -> DeviceProfile: ...
    def create_application(self, application: Application) -> None: ...
    def get_application(self, application_id: str) -> Application: ...


# ---- Egress ----
class Integration(Protocol):
    async def publish(self, event: DeviceEvent) -> None: ...


class NetworkServerClient(Protocol):
    async def create_device(self, device: Mapping[str, Any]) -> None: ...
    async def update_device(self, device: Mapping[str, Any]) -> None: ...
    async def delete_device(self, dev_eui: bytes) -> None: ...
    async def activate_device(self, activation: Mapping[str, Any]) -> None: ...
    async def deactivate_device(self, dev_eui: bytes) -> None: ...
    async def get_device_activation(self, dev_eui: bytes) -> dict[str, Any]: ...
    async def get_random_dev_addr(self) -> bytes: ...
    async def create_device_queue_item(self, item: DeviceQueueItem) -> None: ...
    async def flush_device_queue(self, dev_eui: bytes) -> None: ...
    async def get_device_queue_items(self, dev_eui: bytes) -> list[DeviceQueueItem]: ...
    async def create_multicast_group(self, group: Mapping[str, Any]) -> None: ...
    async def update_multicast_group(self, group: Mapping[str, Any]) -> None: ...
    async def delete_multicast_group(self, group_id: str) -> None: ...
    async def add_device_to_multicast_group(self, group_id: str, dev_eui: bytes) -> None: ...
    async def remove_device_from_multicast_group(self, group_id: str, dev_eui: bytes) -> None: ...
    async def enqueue_multicast_queue_item(self, item: MulticastQueueItem) -> None: ...
    async def flush_multicast_queue(self, group_id: str) -> None: ...
    async def get_multicast_queue_items(self, group_id: str) -> list[MulticastQueueItem]: ...
    def stream_frame_logs(self, dev_eui: bytes) -> AsyncIterator[dict[str, Any]]: ...


class NetworkServerPool(Protocol):
    def get(self, network_server: NetworkServer) -> NetworkServerClient: ...
    async def sweep(self) -> int: ...
    async def close(self) -> None: ...


__all__ = [
    "Decision",
    "Identity",
    "Target",
    "Authorizer",
    "DeviceRepo",
    "ActivationRepo",
    "KeysRepo",
    "QueueRepo",
    "MulticastRepo",
    "InventoryRepo",
    "Integration",
    "NetworkServerClient",
    "NetworkServerPool",
]

