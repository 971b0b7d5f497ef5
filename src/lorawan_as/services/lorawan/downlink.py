"""Device queue: enqueue, acknowledgements and flushes."""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from . import crypto
from .codec import encode_payload
from .context import ServerContext
from .enums import ErrorKind
from .errors import LoRaWANError
from .events import AckEvent, DeviceEvent
from .fcnt import next_fcnt
from .integration import publish_event
from .models import DeviceActivation, DeviceQueueItem, DeviceQueueMapping

__all__ = ["DownlinkPipeline", "MAX_F_PORT"]

logger = logging.getLogger(__name__)

MAX_F_PORT = 223


def _advance(activation: DeviceActivation, *, lorawan_11: bool, f_port: int, value: int) -> None:
    if lorawan_11 and f_port > 0:
        activation.a_f_cnt_down = value
    else:
        activation.n_f_cnt_down = value


class DownlinkPipeline:
    def __init__(self, ctx: ServerContext) -> None:
        self._ctx = ctx

    async def enqueue(
        self,
        dev_eui: bytes,
        *,
        f_port: int,
        data: bytes | None = None,
        obj: Any = None,
        confirmed: bool = False,
        reference: str = "",
    ) -> int:
        """Encrypt and forward one payload, returning the frame-counter it was given.

        Either raw ``data`` or a structured ``obj`` for the application's codec
        must be given.  The counter and the queue mapping are stored before the
        item is forwarded and are only handed back when the network-server
        rejects it, so a cancelled call never frees a counter that may be in use.
        """

        if not 1 <= f_port <= MAX_F_PORT:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, f"f_port must be between 1 and {MAX_F_PORT}")
        if (data is None) == (obj is None):
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "either data or object must be given")

        ctx = self._ctx
        dev_eui = bytes(dev_eui)
        device = ctx.devices.load(dev_eui)
        if obj is None:
            payload = data
        else:
            application = ctx.application(device)
            payload = encode_payload(
                application.payload_codec,
                f_port,
                obj,
                script=application.payload_encoder_script,
                variables=device.variables,
                time_limit=ctx.config.codec.js_max_execution_time,
            )
        lorawan_11 = ctx.device_profile(device).mac_version.is_lorawan_11
        client = ctx.client_for_device(device)

        async with ctx.device_locks.hold(dev_eui):
            activation = ctx.activations.latest_for(dev_eui)
            f_cnt = activation.next_downlink_counter(lorawan_11=lorawan_11, f_port=f_port)
            following = next_fcnt(f_cnt)
            item = DeviceQueueItem(
                dev_eui=device.dev_eui,
                f_port=f_port,
                confirmed=confirmed,
                frm_payload=crypto.encrypt_frm_payload(
                    activation.app_s_key, activation.dev_addr, f_cnt, crypto.DOWNLINK, payload
                ),
                f_cnt=f_cnt,
                dev_addr=activation.dev_addr,
            )
            with ctx.persistence.transaction():
                _advance(activation, lorawan_11=lorawan_11, f_port=f_port, value=following)
                ctx.activations.update_counters(activation)
                mapping = ctx.queue.insert(
                    DeviceQueueMapping(dev_eui=device.dev_eui, f_cnt=f_cnt, reference=reference)
                )
            try:
                await client.create_device_queue_item(item)
            except LoRaWANError:
                with ctx.persistence.transaction():
                    _advance(activation, lorawan_11=lorawan_11, f_port=f_port, value=f_cnt)
                    ctx.activations.update_counters(activation)
                    ctx.queue.delete(mapping.id)
                raise

        logger.info(
            "device queue item enqueued",
            extra={"extra": {"dev_eui": dev_eui.hex(), "f_cnt": f_cnt, "f_port": f_port, "confirmed": confirmed}},
        )
        return f_cnt

    async def handle_ack(self, dev_eui: bytes, f_cnt: int, acknowledged: bool) -> AckEvent | None:
        """Resolve the mapping for ``f_cnt`` and notify; unknown counters are ignored."""

        ctx = self._ctx
        dev_eui = bytes(dev_eui)
        async with ctx.device_locks.hold(dev_eui):
            device = ctx.devices.load(dev_eui)
            with ctx.persistence.transaction():
                mapping = ctx.queue.delete_by_fcnt(dev_eui, f_cnt)
        if mapping is None:
            logger.info(
                "acknowledgement without queue mapping",
                extra={"extra": {"dev_eui": dev_eui.hex(), "f_cnt": f_cnt}},
            )
            return None

        event = AckEvent(
            **DeviceEvent.base_fields(device, ctx.application(device).name),
            reference=mapping.reference,
            acknowledged=acknowledged,
            f_cnt=f_cnt,
        )
        await publish_event(ctx.event_log, ctx.integration, event)
        return event

    async def flush(self, dev_eui: bytes) -> int:
        ctx = self._ctx
        dev_eui = bytes(dev_eui)
        device = ctx.devices.load(dev_eui)
        client = ctx.client_for_device(device)
        async with ctx.device_locks.hold(dev_eui):
            await client.flush_device_queue(dev_eui)
            removed = ctx.queue.delete_all_for(dev_eui)
        logger.info("device queue flushed", extra={"extra": {"dev_eui": dev_eui.hex(), "mappings": removed}})
        return removed

    async def list_queue(self, dev_eui: bytes) -> list[DeviceQueueItem]:
        """Return the network-server queue with payloads decrypted for display."""

        ctx = self._ctx
        device = ctx.devices.load(dev_eui)
        items = await ctx.client_for_device(device).get_device_queue_items(dev_eui)
        if not items:
            return []
        activation = ctx.activations.latest_for(dev_eui)
        decrypted = []
        for item in items:
            dev_addr = item.dev_addr or activation.dev_addr
            payload = crypto.encrypt_frm_payload(
                activation.app_s_key, dev_addr, item.f_cnt, crypto.DOWNLINK, item.frm_payload
            )
            decrypted.append(dataclasses.replace(item, frm_payload=payload))
        return decrypted
