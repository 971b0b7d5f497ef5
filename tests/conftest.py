from __future__ import annotations

from collections import defaultdict
from typing import Any, AsyncIterator

import pytest
from fastapi.testclient import TestClient

from lorawan_as.apps.api.server import create_app, create_join_server_app
from lorawan_as.services.config import AppServerConfig
from lorawan_as.services.lorawan.context import ServerContext, build_context
from lorawan_as.services.lorawan.enums import MacVersion, PayloadCodec
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.events import DeviceEvent
from lorawan_as.services.lorawan.ids import parse_eui64
from lorawan_as.services.lorawan.models import (
    Application,
    Device,
    DeviceProfile,
    DeviceQueueItem,
    MulticastQueueItem,
    NetworkServer,
    ServiceProfile,
)

OPERATOR_TOKEN = "operator-secret"

NS_ID = "ns-1"
SP_ID = "sp-1"
OTHER_SP_ID = "sp-2"
DP_10 = "dp-otaa-10"
DP_11 = "dp-otaa-11"
DP_ABP = "dp-abp"
APP_ID = "app-1"
LPP_APP_ID = "app-lpp"
OTHER_APP_ID = "app-other-sp"


class FakeNetworkServerClient:
    """Records every call; ``fail[method]`` makes that method raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail: dict[str, LoRaWANError] = {}
        self.device_queue: dict[bytes, list[DeviceQueueItem]] = defaultdict(list)
        self.multicast_queue: dict[str, list[MulticastQueueItem]] = defaultdict(list)
        self.frame_logs: list[dict[str, Any]] = []

    def _record(self, method: str, payload: Any) -> None:
        self.calls.append((method, payload))
        error = self.fail.get(method)
        if error is not None:
            raise error

    def called(self, method: str) -> list[Any]:
        return [payload for name, payload in self.calls if name == method]

    async def create_device(self, device):
        self._record("create_device", dict(device))

    async def update_device(self, device):
        self._record("update_device", dict(device))

    async def delete_device(self, dev_eui):
        self._record("delete_device", bytes(dev_eui))

    async def activate_device(self, activation):
        self._record("activate_device", dict(activation))

    async def deactivate_device(self, dev_eui):
        self._record("deactivate_device", bytes(dev_eui))

    async def get_device_activation(self, dev_eui):
        self._record("get_device_activation", bytes(dev_eui))
        return {}

    async def get_random_dev_addr(self):
        self._record("get_random_dev_addr", None)
        return bytes.fromhex("01020304")

    async def create_device_queue_item(self, item):
        self._record("create_device_queue_item", item)
        self.device_queue[bytes(item.dev_eui)].append(item)

    async def flush_device_queue(self, dev_eui):
        self._record("flush_device_queue", bytes(dev_eui))
        self.device_queue.pop(bytes(dev_eui), None)

    async def get_device_queue_items(self, dev_eui):
        self._record("get_device_queue_items", bytes(dev_eui))
        return list(self.device_queue.get(bytes(dev_eui), []))

    async def create_multicast_group(self, group):
        self._record("create_multicast_group", dict(group))

    async def update_multicast_group(self, group):
        self._record("update_multicast_group", dict(group))

    async def delete_multicast_group(self, group_id):
        self._record("delete_multicast_group", group_id)

    async def add_device_to_multicast_group(self, group_id, dev_eui):
        self._record("add_device_to_multicast_group", (group_id, bytes(dev_eui)))

    async def remove_device_from_multicast_group(self, group_id, dev_eui):
        self._record("remove_device_from_multicast_group", (group_id, bytes(dev_eui)))

    async def enqueue_multicast_queue_item(self, item):
        self._record("enqueue_multicast_queue_item", item)
        self.multicast_queue[item.multicast_group_id].append(item)

    async def flush_multicast_queue(self, group_id):
        self._record("flush_multicast_queue", group_id)
        self.multicast_queue.pop(group_id, None)

    async def get_multicast_queue_items(self, group_id):
        self._record("get_multicast_queue_items", group_id)
        return list(self.multicast_queue.get(group_id, []))

    async def stream_frame_logs(self, dev_eui) -> AsyncIterator[dict[str, Any]]:
        self._record("stream_frame_logs", bytes(dev_eui))
        for message in self.frame_logs:
            yield message


class FakeNetworkServerPool:
    def __init__(self) -> None:
        self.client = FakeNetworkServerClient()
        self.requested: list[str] = []
        self.closed = False

    def get(self, network_server: NetworkServer) -> FakeNetworkServerClient:
        self.requested.append(network_server.id)
        return self.client

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        self.closed = True


class RecordingIntegration:
    def __init__(self) -> None:
        self.events: list[DeviceEvent] = []

    async def publish(self, event: DeviceEvent) -> None:
        self.events.append(event)

    def of_type(self, kind: type) -> list[Any]:
        return [event for event in self.events if type(event) is kind]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def config(tmp_path) -> AppServerConfig:
    conf = AppServerConfig()
    conf.storage.db_path = str(tmp_path / "lorawan-as.sqlite")
    conf.api.operator_token = OPERATOR_TOKEN
    conf.general.log_json = False
    return conf


@pytest.fixture()
def ns_pool() -> FakeNetworkServerPool:
    return FakeNetworkServerPool()


@pytest.fixture()
def ns(ns_pool) -> FakeNetworkServerClient:
    return ns_pool.client


@pytest.fixture()
def integration() -> RecordingIntegration:
    return RecordingIntegration()


def seed_inventory(ctx: ServerContext) -> None:
    inventory = ctx.inventory
    inventory.create_network_server(NetworkServer(id=NS_ID, name="ns", server="http://ns.invalid:8000"))
    inventory.create_service_profile(ServiceProfile(id=SP_ID, name="sp", network_server_id=NS_ID))
    inventory.create_service_profile(ServiceProfile(id=OTHER_SP_ID, name="sp-2", network_server_id=NS_ID))
    inventory.create_device_profile(
        DeviceProfile(id=DP_10, name="otaa-1.0", network_server_id=NS_ID, mac_version=MacVersion.LORAWAN_1_0_3)
    )
    inventory.create_device_profile(
        DeviceProfile(id=DP_11, name="otaa-1.1", network_server_id=NS_ID, mac_version=MacVersion.LORAWAN_1_1_0)
    )
    inventory.create_device_profile(
        DeviceProfile(
            id=DP_ABP,
            name="abp",
            network_server_id=NS_ID,
            mac_version=MacVersion.LORAWAN_1_0_3,
            supports_join=False,
        )
    )
    inventory.create_application(Application(id=APP_ID, name="test-app", service_profile_id=SP_ID))
    inventory.create_application(
        Application(id=LPP_APP_ID, name="lpp-app", service_profile_id=SP_ID, payload_codec=PayloadCodec.CAYENNE_LPP)
    )
    inventory.create_application(Application(id=OTHER_APP_ID, name="other-app", service_profile_id=OTHER_SP_ID))


@pytest.fixture()
def ctx(config, ns_pool, integration):
    context = build_context(config, pool=ns_pool, integration=integration)
    seed_inventory(context)
    yield context
    context.persistence.close()


def add_device(
    ctx: ServerContext,
    dev_eui: str = "0102030405060708",
    *,
    profile: str = DP_10,
    application: str = APP_ID,
    **fields: Any,
) -> Device:
    device = Device(
        dev_eui=parse_eui64(dev_eui),
        application_id=application,
        device_profile_id=profile,
        name=f"device-{dev_eui}",
        **fields,
    )
    ctx.devices.create(device)
    return device


def auth(token: str = OPERATOR_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def api(ctx):
    with TestClient(create_app(ctx)) as client:
        yield client


@pytest.fixture()
def js_api(ctx):
    with TestClient(create_join_server_app(ctx)) as client:
        yield client
