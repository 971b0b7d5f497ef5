"""Explicit server context handed to every pipeline.

There is no module-level state: the API layer builds one
:class:`ServerContext` at startup and passes it to the services it creates.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from ..config import AppServerConfig
from ..netserver.pool import NetworkServerClientPool
from .authorizer import StaticTokenAuthorizer
from .errors import ErrorCounters
from .eventlog import EventLog
from .integration import LoggingIntegration
from .kek import KEKStore
from .keystore import DeviceKeysStore
from .locks import KeyedLock
from .models import Application, Device, DeviceProfile
from .persistence.repository import (
    SQLiteActivationRepo,
    SQLiteDeviceRepo,
    SQLiteInventoryRepo,
    SQLiteKeysRepo,
    SQLiteMulticastRepo,
    SQLiteQueueRepo,
)
from .persistence.sqlite import SQLitePersistence
from .ports import (
    ActivationRepo,
    Authorizer,
    DeviceRepo,
    Integration,
    InventoryRepo,
    KeysRepo,
    MulticastRepo,
    NetworkServerClient,
    NetworkServerPool,
    QueueRepo,
)

__all__ = ["ServerContext", "build_context"]

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ServerContext:
    config: AppServerConfig
    persistence: SQLitePersistence
    inventory: InventoryRepo
    devices: DeviceRepo
    activations: ActivationRepo
    keys: KeysRepo
    keystore: DeviceKeysStore
    queue: QueueRepo
    multicast: MulticastRepo
    authorizer: Authorizer
    pool: NetworkServerPool
    integration: Integration
    event_log: EventLog
    device_locks: KeyedLock
    group_locks: KeyedLock
    counters: ErrorCounters
    kek: KEKStore

    def device_profile(self, device: Device) -> DeviceProfile:
        return self.inventory.get_device_profile(device.device_profile_id)

    def application(self, device: Device) -> Application:
        return self.inventory.get_application(device.application_id)

    def network_server_client(self, network_server_id: str) -> NetworkServerClient:
        return self.pool.get(self.inventory.get_network_server(network_server_id))

    def client_for_device(self, device: Device) -> NetworkServerClient:
        return self.network_server_client(self.device_profile(device).network_server_id)

    def client_for_service_profile(self, service_profile_id: str) -> NetworkServerClient:
        profile = self.inventory.get_service_profile(service_profile_id)
        return self.network_server_client(profile.network_server_id)

    async def aclose(self) -> None:
        await self.pool.close()
        self.persistence.close()


def build_context(
    config: AppServerConfig,
    *,
    pool: NetworkServerPool | None = None,
    integration: Integration | None = None,
    authorizer: Authorizer | None = None,
) -> ServerContext:
    """Wire the SQLite repositories and in-process services from ``config``."""

    persistence = SQLitePersistence(Path(config.storage.db_path))
    keys_repo = SQLiteKeysRepo(persistence)
    js = config.join_server
    if pool is None:
        pool = NetworkServerClientPool(
            timeout=config.network_server.timeout,
            stream_timeout=config.network_server.stream_timeout,
            idle_timeout=config.network_server.idle_timeout,
        )
    ctx = ServerContext(
        config=config,
        persistence=persistence,
        inventory=SQLiteInventoryRepo(persistence),
        devices=SQLiteDeviceRepo(persistence),
        activations=SQLiteActivationRepo(persistence),
        keys=keys_repo,
        keystore=DeviceKeysStore(
            keys_repo,
            window=js.dev_nonce_window,
            strict=js.strict_dev_nonce,
        ),
        queue=SQLiteQueueRepo(persistence),
        multicast=SQLiteMulticastRepo(persistence),
        authorizer=authorizer or StaticTokenAuthorizer(config.api.operator_token),
        pool=pool,
        integration=integration or LoggingIntegration(),
        event_log=EventLog(
            buffer_size=config.event_log.buffer_size,
            subscriber_queue_size=config.event_log.subscriber_queue_size,
        ),
        device_locks=KeyedLock(idle_seconds=config.locks.idle_seconds),
        group_locks=KeyedLock(idle_seconds=config.locks.idle_seconds),
        counters=ErrorCounters(),
        kek=KEKStore.from_config(js.kek.as_mapping(), js.kek.as_kek_label),
    )
    logger.info("server context ready", extra={"extra": {"db_path": str(config.storage.db_path)}})
    return ctx
