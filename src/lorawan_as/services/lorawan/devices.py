"""Device inventory, ABP activation and root keys, mirrored to the network-server."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from .context import ServerContext
from .enums import ErrorKind
from .errors import LoRaWANError
from .ids import AES128Key, DevAddr
from .models import Device, DeviceActivation, DeviceKeys

__all__ = ["AbpSession", "DeviceService", "device_payload"]

logger = logging.getLogger(__name__)


def device_payload(device: Device, service_profile_id: str) -> dict[str, Any]:
    return {
        "devEUI": device.dev_eui.hex(),
        "deviceProfileID": device.device_profile_id,
        "serviceProfileID": service_profile_id,
        "skipFCntCheck": device.skip_fcnt_check,
    }


@dataclass(slots=True)
class AbpSession:
    """Session keys and counters supplied by an operator for ABP.

    ``f_cnt_up`` is the next counter the device will send.
    """

    dev_addr: DevAddr
    app_s_key: AES128Key
    nwk_s_enc_key: AES128Key
    s_nwk_s_int_key: AES128Key
    f_nwk_s_int_key: AES128Key
    f_cnt_up: int = 0
    n_f_cnt_down: int = 0
    a_f_cnt_down: int = 0

    def as_payload(self, dev_eui: bytes, *, skip_fcnt_check: bool) -> dict[str, Any]:
        return {
            "devEUI": bytes(dev_eui).hex(),
            "devAddr": self.dev_addr.hex(),
            "sNwkSIntKey": self.s_nwk_s_int_key.hex(),
            "fNwkSIntKey": self.f_nwk_s_int_key.hex(),
            "nwkSEncKey": self.nwk_s_enc_key.hex(),
            "fCntUp": self.f_cnt_up,
            "nFCntDown": self.n_f_cnt_down,
            "aFCntDown": self.a_f_cnt_down,
            "skipFCntCheck": skip_fcnt_check,
        }


class DeviceService:
    def __init__(self, ctx: ServerContext) -> None:
        self._ctx = ctx

    def _service_profile_id(self, device: Device) -> str:
        return self._ctx.application(device).service_profile_id

    async def create(self, device: Device) -> Device:
        ctx = self._ctx
        service_profile_id = self._service_profile_id(device)
        client = ctx.client_for_device(device)
        async with ctx.device_locks.hold(bytes(device.dev_eui)):
            with ctx.persistence.transaction():
                ctx.devices.create(device)
            try:
                await client.create_device(device_payload(device, service_profile_id))
            except LoRaWANError:
                ctx.devices.delete(device.dev_eui)
                raise
        logger.info(
            "device created",
            extra={"extra": {"dev_eui": device.dev_eui.hex(), "application_id": device.application_id}},
        )
        return device

    def get(self, dev_eui: bytes) -> Device:
        return self._ctx.devices.load(dev_eui)

    def list(self, *, application_id: str | None = None) -> list[Device]:
        return self._ctx.devices.list(application_id=application_id)

    async def update(self, device: Device) -> Device:
        ctx = self._ctx
        async with ctx.device_locks.hold(bytes(device.dev_eui)):
            current = ctx.devices.load(device.dev_eui)
            if current.application_id != device.application_id:
                raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "the application of a device can not be changed")
            # status fields are owned by the uplink pipeline
            device.last_seen_at = current.last_seen_at
            device.device_status_battery = current.device_status_battery
            device.device_status_margin = current.device_status_margin
            device.device_status_external_power = current.device_status_external_power
            device.location = current.location
            device.created_at = current.created_at
            await ctx.client_for_device(device).update_device(device_payload(device, self._service_profile_id(device)))
            ctx.devices.update(device)
        logger.info("device updated", extra={"extra": {"dev_eui": device.dev_eui.hex()}})
        return device

    async def delete(self, dev_eui: bytes) -> None:
        """Remove the device everywhere; a device already gone from the network-server is fine."""

        ctx = self._ctx
        dev_eui = bytes(dev_eui)
        async with ctx.device_locks.hold(dev_eui):
            device = ctx.devices.load(dev_eui)
            try:
                await ctx.client_for_device(device).delete_device(dev_eui)
            except LoRaWANError as exc:
                if exc.kind is not ErrorKind.NOT_FOUND:
                    raise
            # keys, activations and queue mappings cascade
            ctx.devices.delete(dev_eui)
        ctx.event_log.forget(dev_eui)
        logger.info("device deleted", extra={"extra": {"dev_eui": dev_eui.hex()}})

    async def activate(self, dev_eui: bytes, session: AbpSession) -> DeviceActivation:
        """Activate a device by personalization (ABP)."""

        ctx = self._ctx
        dev_eui = bytes(dev_eui)
        async with ctx.device_locks.hold(dev_eui):
            device = ctx.devices.load(dev_eui)
            if ctx.device_profile(device).supports_join:
                raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "device must be an ABP device")
            client = ctx.client_for_device(device)
            try:
                await client.deactivate_device(dev_eui)
            except LoRaWANError as exc:
                if exc.kind is not ErrorKind.NOT_FOUND:
                    raise
            await client.activate_device(session.as_payload(dev_eui, skip_fcnt_check=device.skip_fcnt_check))
            with ctx.persistence.transaction():
                activation = ctx.activations.append(
                    DeviceActivation(
                        dev_eui=device.dev_eui,
                        dev_addr=session.dev_addr,
                        app_s_key=session.app_s_key,
                        nwk_s_enc_key=session.nwk_s_enc_key,
                        s_nwk_s_int_key=session.s_nwk_s_int_key,
                        f_nwk_s_int_key=session.f_nwk_s_int_key,
                        f_cnt_up=session.f_cnt_up - 1 if session.f_cnt_up > 0 else None,
                        n_f_cnt_down=session.n_f_cnt_down,
                        a_f_cnt_down=session.a_f_cnt_down,
                    )
                )
                ctx.queue.delete_all_for(dev_eui)
        logger.info(
            "device activated",
            extra={"extra": {"dev_eui": dev_eui.hex(), "dev_addr": session.dev_addr.hex()}},
        )
        return activation

    def get_activation(self, dev_eui: bytes) -> DeviceActivation:
        self._ctx.devices.load(dev_eui)
        return self._ctx.activations.latest_for(dev_eui)

    def create_keys(self, keys: DeviceKeys) -> DeviceKeys:
        self._ctx.devices.load(keys.dev_eui)
        self._ctx.keys.create(keys)
        logger.info("device keys created", extra={"extra": {"dev_eui": keys.dev_eui.hex()}})
        return keys

    def get_keys(self, dev_eui: bytes) -> DeviceKeys:
        self._ctx.devices.load(dev_eui)
        return self._ctx.keys.load(dev_eui)

    async def update_keys(self, dev_eui: bytes, *, nwk_key: AES128Key, app_key: AES128Key | None = None) -> DeviceKeys:
        """Replace the root keys; the join-nonce keeps counting."""

        async with self._ctx.device_locks.hold(bytes(dev_eui)):
            keys = self._ctx.keys.load(dev_eui)
            keys.nwk_key = nwk_key
            keys.app_key = app_key
            self._ctx.keys.update(keys)
        logger.info("device keys updated", extra={"extra": {"dev_eui": bytes(dev_eui).hex()}})
        return keys

    def delete_keys(self, dev_eui: bytes) -> None:
        self._ctx.keys.delete(dev_eui)
        logger.info("device keys deleted", extra={"extra": {"dev_eui": bytes(dev_eui).hex()}})
