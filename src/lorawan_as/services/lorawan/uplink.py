"""Uplink pipeline: frames and notifications reported by the network-server."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Sequence

from . import crypto
from .codec import decode_payload
from .context import ServerContext
from .enums import ErrorKind
from .errors import LoRaWANError
from .events import (
    DeviceEvent,
    ErrorEvent,
    JoinEvent,
    LocationEvent,
    StatusEvent,
    UplinkEvent,
)
from .fcnt import check_uplink_fcnt
from .ids import AES128Key, DevAddr, EUI64
from .integration import publish_event
from .models import Application, Device, DeviceActivation, Location, RxInfo, TxInfo
from .schemas import KeyEnvelope

__all__ = ["ActivationContext", "UplinkRequest", "UplinkPipeline", "CODEC_ERROR"]

logger = logging.getLogger(__name__)

CODEC_ERROR = "CODEC"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(slots=True)
class ActivationContext:
    """Session announced by the network-server after an external join."""

    dev_addr: DevAddr
    app_s_key: KeyEnvelope


@dataclass(slots=True)
class UplinkRequest:
    dev_eui: EUI64
    f_cnt: int
    f_port: int
    data: bytes
    dev_addr: DevAddr | None = None
    confirmed: bool = False
    adr: bool = False
    rx_info: Sequence[RxInfo] = ()
    tx_info: TxInfo = field(default_factory=TxInfo)
    battery: int | None = None
    margin: int | None = None
    location: Location | None = None
    activation_context: ActivationContext | None = None


class UplinkPipeline:
    def __init__(self, ctx: ServerContext) -> None:
        self._ctx = ctx

    async def handle_uplink_data(self, request: UplinkRequest) -> UplinkEvent:
        """Validate, decrypt and publish one uplink frame.

        Counter problems and unknown devices fail the call; codec and
        integration failures do not.
        """

        ctx = self._ctx
        dev_eui = bytes(request.dev_eui)
        async with ctx.device_locks.hold(dev_eui):
            device = ctx.devices.load(dev_eui)
            application = ctx.application(device)
            joined = False
            try:
                with ctx.persistence.transaction():
                    if request.activation_context is not None:
                        self._record_external_activation(device, request.activation_context)
                        joined = True
                    activation, f_cnt = self._select_activation(
                        dev_eui, request.dev_addr, request.f_cnt, skip_check=device.skip_fcnt_check
                    )
                    device.apply_status(battery=request.battery, margin=request.margin, seen_at=_utcnow())
                    if request.location is not None:
                        device.location = request.location
                    ctx.devices.update_status(device)
                    activation.f_cnt_up = f_cnt
                    ctx.activations.update_counters(activation)
            except LoRaWANError as exc:
                if exc.is_security_failure:
                    ctx.counters.record(exc)
                    logger.warning(
                        "uplink dropped",
                        extra={"extra": {"dev_eui": dev_eui.hex(), "f_cnt": request.f_cnt, "kind": exc.kind.value}},
                    )
                raise

        if request.f_port > 0:
            data = crypto.encrypt_frm_payload(
                activation.app_s_key, activation.dev_addr, f_cnt, crypto.UPLINK, request.data
            )
        else:
            # FPort 0 carries MAC commands only
            data = b""

        base = DeviceEvent.base_fields(device, application.name)
        if joined:
            await publish_event(ctx.event_log, ctx.integration, JoinEvent(**base, dev_addr=activation.dev_addr))
        obj = await self._decode(device, application, request.f_port, f_cnt, data)
        event = UplinkEvent(
            **base,
            f_cnt=f_cnt,
            f_port=request.f_port,
            data=data,
            dev_addr=activation.dev_addr,
            object=obj,
            confirmed=request.confirmed,
            adr=request.adr,
            rx_info=tuple(request.rx_info),
            tx_info=request.tx_info,
        )
        logger.debug(
            "uplink received",
            extra={"extra": {"dev_eui": dev_eui.hex(), "f_cnt": f_cnt, "f_port": request.f_port}},
        )
        await publish_event(ctx.event_log, ctx.integration, event)
        if request.location is not None:
            await publish_event(ctx.event_log, ctx.integration, LocationEvent(**base, location=request.location))
        return event

    async def handle_error(self, dev_eui: bytes, error_type: str, error: str, f_cnt: int = 0) -> None:
        device = self._ctx.devices.load(dev_eui)
        application = self._ctx.application(device)
        logger.warning(
            "network-server reported device error",
            extra={"extra": {"dev_eui": bytes(dev_eui).hex(), "type": error_type, "error": error, "f_cnt": f_cnt}},
        )
        event = ErrorEvent(
            **DeviceEvent.base_fields(device, application.name),
            type=error_type,
            error=error,
            f_cnt=f_cnt,
        )
        await publish_event(self._ctx.event_log, self._ctx.integration, event)

    async def set_device_status(
        self,
        dev_eui: bytes,
        *,
        margin: int,
        battery: int | None = None,
        external_power_source: bool = False,
        battery_level_unavailable: bool = False,
    ) -> StatusEvent:
        if battery_level_unavailable or external_power_source:
            battery = None
        async with self._ctx.device_locks.hold(bytes(dev_eui)):
            device = self._ctx.devices.load(dev_eui)
            device.device_status_battery = battery
            device.device_status_margin = margin
            device.device_status_external_power = external_power_source
            device.updated_at = _utcnow()
            self._ctx.devices.update_status(device)
        application = self._ctx.application(device)
        event = StatusEvent(
            **DeviceEvent.base_fields(device, application.name),
            margin=margin,
            battery=battery,
            external_power_source=external_power_source,
        )
        await publish_event(self._ctx.event_log, self._ctx.integration, event)
        return event

    async def set_device_location(self, dev_eui: bytes, location: Location) -> LocationEvent:
        async with self._ctx.device_locks.hold(bytes(dev_eui)):
            device = self._ctx.devices.load(dev_eui)
            device.location = location
            device.updated_at = _utcnow()
            self._ctx.devices.update_status(device)
        application = self._ctx.application(device)
        event = LocationEvent(**DeviceEvent.base_fields(device, application.name), location=location)
        await publish_event(self._ctx.event_log, self._ctx.integration, event)
        return event

    async def handle_proprietary_uplink(
        self,
        mac_payload: bytes,
        mic: bytes = b"",
        rx_info: Sequence[RxInfo] = (),
        tx_info: TxInfo | None = None,
    ) -> None:
        # gateway ping handling is not implemented
        logger.info(
            "proprietary uplink",
            extra={
                "extra": {
                    "mac_payload": bytes(mac_payload).hex(),
                    "mic": bytes(mic).hex(),
                    "gateways": [rx.gateway_id for rx in rx_info],
                    "frequency": tx_info.frequency if tx_info else None,
                }
            },
        )

    def _record_external_activation(self, device: Device, context: ActivationContext) -> DeviceActivation:
        app_s_key = self._ctx.kek.unwrap(context.app_s_key)
        empty = AES128Key(b"")
        activation = self._ctx.activations.append(
            DeviceActivation(
                dev_eui=device.dev_eui,
                dev_addr=context.dev_addr,
                app_s_key=app_s_key,
                # network keys stay with the network-server
                nwk_s_enc_key=empty,
                s_nwk_s_int_key=empty,
                f_nwk_s_int_key=empty,
            )
        )
        self._ctx.queue.delete_all_for(device.dev_eui)
        logger.info(
            "device activated by network-server",
            extra={"extra": {"dev_eui": device.dev_eui.hex(), "dev_addr": context.dev_addr.hex()}},
        )
        return activation

    def _select_activation(
        self,
        dev_eui: bytes,
        dev_addr: bytes | None,
        observed: int,
        *,
        skip_check: bool,
    ) -> tuple[DeviceActivation, int]:
        """Pick the activation for a frame and reconstruct its counter.

        Activations sharing the frame's DevAddr are tried newest first; the
        first one the counter is plausible for wins.  When none fits, the
        newest one's counter error is raised.
        """

        if dev_addr is None:
            candidates = [self._ctx.activations.latest_for(dev_eui)]
        else:
            candidates = [a for a in self._ctx.activations.list_for(dev_eui) if bytes(a.dev_addr) == bytes(dev_addr)]
        if not candidates:
            raise LoRaWANError(
                ErrorKind.NO_ACTIVATION,
                f"device {dev_eui.hex()} has no activation for dev-addr {bytes(dev_addr).hex()}",
            )
        newest_error: LoRaWANError | None = None
        for activation in candidates:
            try:
                return activation, check_uplink_fcnt(activation.f_cnt_up, observed, skip_check=skip_check)
            except LoRaWANError as exc:
                newest_error = newest_error or exc
        raise newest_error

    async def _decode(
        self,
        device: Device,
        application: Application,
        f_port: int,
        f_cnt: int,
        data: bytes,
    ) -> Any:
        try:
            return decode_payload(
                application.payload_codec,
                f_port,
                data,
                script=application.payload_decoder_script,
                variables=device.variables,
                time_limit=self._ctx.config.codec.js_max_execution_time,
            )
        except LoRaWANError as exc:
            logger.warning(
                "payload decode failed",
                extra={"extra": {"dev_eui": device.dev_eui.hex(), "f_cnt": f_cnt, "error": exc.message}},
            )
            event = ErrorEvent(
                **DeviceEvent.base_fields(device, application.name),
                type=CODEC_ERROR,
                error=exc.message,
                f_cnt=f_cnt,
            )
            await publish_event(self._ctx.event_log, self._ctx.integration, event)
            return None
