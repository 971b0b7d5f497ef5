"""Multicast groups, their membership and their downlink queue.

Every group owns a shared session (``McAddr``, ``McNwkSKey``, ``McAppSKey``)
and a 32-bit frame-counter.  Mutations of one group are serialised with the
group lock; the counter is reserved before a queue item is forwarded to the
network-server.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Sequence

from . import crypto
from .context import ServerContext
from .downlink import MAX_F_PORT
from .enums import ErrorKind
from .errors import LoRaWANError
from .fcnt import next_fcnt
from .models import MulticastGroup, MulticastQueueItem
from .ports import NetworkServerClient

__all__ = ["MulticastEngine", "multicast_group_payload"]

logger = logging.getLogger(__name__)


def multicast_group_payload(group: MulticastGroup) -> dict[str, Any]:
    """Group as the network-server sees it; the application key never leaves."""

    return {
        "id": group.id,
        "serviceProfileID": group.service_profile_id,
        "mcAddr": group.mc_addr.hex(),
        "mcNwkSKey": group.mc_nwk_s_key.hex(),
        "fCnt": group.f_cnt,
        "groupType": group.group_type.value,
        "dr": group.dr,
        "frequency": group.frequency,
        "pingSlotPeriod": group.ping_slot_period,
    }


class MulticastEngine:
    def __init__(self, ctx: ServerContext) -> None:
        self._ctx = ctx

    def _client(self, group: MulticastGroup) -> NetworkServerClient:
        return self._ctx.client_for_service_profile(group.service_profile_id)

    async def create(self, group: MulticastGroup) -> MulticastGroup:
        client = self._client(group)
        async with self._ctx.group_locks.hold(group.id):
            self._ctx.multicast.create(group)
            try:
                await client.create_multicast_group(multicast_group_payload(group))
            except LoRaWANError:
                self._ctx.multicast.delete(group.id)
                raise
        logger.info(
            "multicast-group created",
            extra={"extra": {"multicast_group_id": group.id, "service_profile_id": group.service_profile_id}},
        )
        return group

    def get(self, group_id: str) -> MulticastGroup:
        return self._ctx.multicast.get(group_id)

    def list(self, *, service_profile_id: str | None = None) -> list[MulticastGroup]:
        return self._ctx.multicast.list(service_profile_id=service_profile_id)

    async def update(self, group: MulticastGroup) -> MulticastGroup:
        async with self._ctx.group_locks.hold(group.id):
            current = self._ctx.multicast.get(group.id)
            if current.service_profile_id != group.service_profile_id:
                raise LoRaWANError(
                    ErrorKind.INVALID_ARGUMENT,
                    "the service-profile of a multicast-group can not be changed",
                )
            # the counter only moves forward; a stale or missing value keeps the stored one
            group = dataclasses.replace(group, f_cnt=max(current.f_cnt, group.f_cnt))
            await self._client(current).update_multicast_group(multicast_group_payload(group))
            self._ctx.multicast.update(group)
        logger.info("multicast-group updated", extra={"extra": {"multicast_group_id": group.id}})
        return group

    async def delete(self, group_id: str) -> None:
        async with self._ctx.group_locks.hold(group_id):
            group = self._ctx.multicast.get(group_id)
            await self._client(group).delete_multicast_group(group_id)
            self._ctx.multicast.delete(group_id)
        logger.info("multicast-group deleted", extra={"extra": {"multicast_group_id": group_id}})

    async def add_device(self, group_id: str, dev_eui: bytes) -> None:
        """Add a device whose application shares the group's service-profile."""

        async with self._ctx.group_locks.hold(group_id):
            group = self._ctx.multicast.get(group_id)
            self._check_service_profile(group, dev_eui)
            with self._ctx.persistence.transaction():
                self._ctx.multicast.add_device(group_id, dev_eui)
            try:
                await self._client(group).add_device_to_multicast_group(group_id, dev_eui)
            except LoRaWANError:
                self._ctx.multicast.remove_device(group_id, dev_eui)
                raise
        logger.info(
            "device added to multicast-group",
            extra={"extra": {"multicast_group_id": group_id, "dev_eui": bytes(dev_eui).hex()}},
        )

    async def remove_device(self, group_id: str, dev_eui: bytes) -> None:
        async with self._ctx.group_locks.hold(group_id):
            group = self._ctx.multicast.get(group_id)
            if bytes(dev_eui) not in self._ctx.multicast.list_devices(group_id):
                raise LoRaWANError(ErrorKind.NOT_FOUND, "device is not a member of the multicast-group")
            await self._client(group).remove_device_from_multicast_group(group_id, dev_eui)
            self._ctx.multicast.remove_device(group_id, dev_eui)
        logger.info(
            "device removed from multicast-group",
            extra={"extra": {"multicast_group_id": group_id, "dev_eui": bytes(dev_eui).hex()}},
        )

    def list_devices(self, group_id: str) -> list[bytes]:
        self._ctx.multicast.get(group_id)
        return self._ctx.multicast.list_devices(group_id)

    async def enqueue(self, group_id: str, f_port: int, data: bytes) -> int:
        counters = await self.enqueue_multiple(group_id, [(f_port, data)])
        return counters[0]

    async def enqueue_multiple(self, group_id: str, payloads: Sequence[tuple[int, bytes]]) -> list[int]:
        """Enqueue payloads in order under one lock acquisition.

        Each payload gets the next counter, stored before the item is handed
        to the network-server.  A counter is handed back only when the
        network-server rejected its item; a cancelled call keeps it reserved.
        """

        if not payloads:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "no payloads to enqueue")
        for f_port, _ in payloads:
            if not 1 <= f_port <= MAX_F_PORT:
                raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, f"f_port must be between 1 and {MAX_F_PORT}")

        counters: list[int] = []
        async with self._ctx.group_locks.hold(group_id):
            group = self._ctx.multicast.get(group_id)
            client = self._client(group)
            f_cnt = group.f_cnt
            for f_port, data in payloads:
                following = next_fcnt(f_cnt)
                item = MulticastQueueItem(
                    multicast_group_id=group.id,
                    f_cnt=f_cnt,
                    f_port=f_port,
                    frm_payload=crypto.encrypt_frm_payload(
                        group.mc_app_s_key, group.mc_addr, f_cnt, crypto.DOWNLINK, data
                    ),
                )
                self._ctx.multicast.update_fcnt(group.id, following)
                try:
                    await client.enqueue_multicast_queue_item(item)
                except LoRaWANError:
                    self._ctx.multicast.release_fcnt(group.id, following, f_cnt)
                    raise
                counters.append(f_cnt)
                f_cnt = following
        logger.info(
            "multicast queue items enqueued",
            extra={"extra": {"multicast_group_id": group_id, "f_cnt": counters}},
        )
        return counters

    async def flush_queue(self, group_id: str) -> None:
        async with self._ctx.group_locks.hold(group_id):
            group = self._ctx.multicast.get(group_id)
            await self._client(group).flush_multicast_queue(group_id)
        logger.info("multicast queue flushed", extra={"extra": {"multicast_group_id": group_id}})

    async def list_queue(self, group_id: str) -> list[MulticastQueueItem]:
        """Return the network-server queue with payloads decrypted for display."""

        group = self._ctx.multicast.get(group_id)
        items = await self._client(group).get_multicast_queue_items(group_id)
        return [
            dataclasses.replace(
                item,
                frm_payload=crypto.encrypt_frm_payload(
                    group.mc_app_s_key, group.mc_addr, item.f_cnt, crypto.DOWNLINK, item.frm_payload
                ),
            )
            for item in items
        ]

    def _check_service_profile(self, group: MulticastGroup, dev_eui: bytes) -> None:
        device = self._ctx.devices.load(dev_eui)
        application = self._ctx.application(device)
        if application.service_profile_id != group.service_profile_id:
            raise LoRaWANError(
                ErrorKind.SERVICE_PROFILE_MISMATCH,
                "service-profile of device application and multicast-group do not match",
            )
