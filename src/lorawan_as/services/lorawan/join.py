"""OTAA join and rejoin handling.

A join is parsed, then processed under the device lock inside one SQLite
transaction:

1. load the device keys;
2. reject a dev-nonce that was already used (before any MIC computation);
3. verify the join-request MIC;
4. record the dev-nonce and advance the join-nonce;
5. derive the session keys, build and encrypt the join-accept;
6. append the activation and drop queue mappings of the previous session.

Any failure rolls the transaction back, so a bad MIC never consumes the nonce
and a cancelled request leaves no partial state.  The join event is published
once the transaction has committed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging

from . import crypto
from .context import ServerContext
from .enums import ErrorKind, JoinRequestType, MacVersion
from .errors import LoRaWANError
from .events import DeviceEvent, JoinEvent
from .frames import (
    DLSettings,
    FrameError,
    JoinAccept,
    parse_join_request,
    parse_rejoin_request,
)
from .ids import DevAddr, EUI64, NetID, parse_net_id
from .integration import publish_event
from .models import Device, DeviceActivation, DeviceKeys
from .schemas import KeyEnvelope

__all__ = ["JoinRequestContext", "JoinAnswer", "JoinEngine", "HOME_NETID_VARIABLE"]

logger = logging.getLogger(__name__)

HOME_NETID_VARIABLE = "home_netid"


@dataclass(slots=True)
class JoinRequestContext:
    """Join or rejoin request as forwarded by the network-server."""

    phy_payload: bytes
    net_id: NetID
    dev_addr: DevAddr
    dl_settings: DLSettings
    rx_delay: int = 0
    cflist: bytes = b""
    mac_version: MacVersion = MacVersion.LORAWAN_1_0_3
    dev_eui: EUI64 | None = None
    # ReceiverID of the request; rejoin types 0 and 2 do not carry it in the frame
    join_eui: EUI64 | None = None


@dataclass(slots=True)
class JoinAnswer:
    dev_eui: EUI64
    dev_addr: DevAddr
    join_nonce: int
    phy_payload: bytes
    lorawan_11: bool
    session_keys: crypto.SessionKeys
    app_s_key: KeyEnvelope
    network_keys: dict[str, KeyEnvelope] = field(default_factory=dict)
    activation_id: int | None = None


class JoinEngine:
    def __init__(self, ctx: ServerContext) -> None:
        self._ctx = ctx

    async def handle_join_request(self, request: JoinRequestContext) -> JoinAnswer:
        try:
            frame = parse_join_request(request.phy_payload)
        except FrameError as exc:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, f"malformed join-request: {exc}") from exc
        if request.dev_eui is not None and bytes(request.dev_eui) != bytes(frame.dev_eui):
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "DevEUI of the request does not match the join-request")

        lorawan_11 = request.mac_version.is_lorawan_11
        # OptNeg selects the 1.1 key hierarchy; a 1.1 device without it falls back to 1.0
        opt_neg = request.dl_settings.opt_neg
        if opt_neg and not lorawan_11:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "OptNeg can only be set for LoRaWAN 1.1 devices")
        async with self._ctx.device_locks.hold(bytes(frame.dev_eui)):
            device = self._ctx.devices.load(frame.dev_eui)
            try:
                with self._ctx.persistence.transaction():
                    keys = self._ctx.keystore.load(frame.dev_eui)
                    self._ctx.keystore.check_dev_nonce(
                        frame.dev_eui, frame.join_eui, frame.dev_nonce, lorawan_11=lorawan_11
                    )
                    if not crypto.mic_equal(frame.expected_mic(keys.nwk_key), frame.mic):
                        raise LoRaWANError(ErrorKind.MIC_FAILED, "invalid MIC")
                    self._ctx.keystore.consume_dev_nonce(frame.dev_eui, frame.join_eui, frame.dev_nonce)
                    join_nonce = self._ctx.keystore.next_join_nonce(keys)

                    if opt_neg:
                        session = crypto.derive_session_keys_11(
                            keys.nwk_key,
                            keys.root_app_key,
                            join_nonce=join_nonce,
                            join_eui=frame.join_eui,
                            dev_nonce=frame.dev_nonce,
                        )
                        mic_key = crypto.js_int_key(keys.nwk_key, frame.dev_eui)
                    else:
                        session = crypto.derive_session_keys_10(
                            keys.nwk_key,
                            join_nonce=join_nonce,
                            net_id=request.net_id,
                            dev_nonce=frame.dev_nonce,
                        )
                        mic_key = keys.nwk_key

                    phy = self._accept(request, join_nonce).encrypted_phy_payload(
                        mic_key=mic_key,
                        encryption_key=keys.nwk_key,
                        join_request_type=JoinRequestType.JOIN_REQUEST,
                        join_eui=frame.join_eui,
                        dev_nonce=frame.dev_nonce,
                    )
                    answer = self._finish(
                        device,
                        keys,
                        request,
                        session,
                        phy,
                        join_nonce=join_nonce,
                        lorawan_11=opt_neg,
                        join_req_type=JoinRequestType.JOIN_REQUEST,
                        join_eui=frame.join_eui,
                        dev_nonce=frame.dev_nonce,
                    )
            except LoRaWANError as exc:
                self._reject(exc, frame.dev_eui, dev_nonce=frame.dev_nonce)
                raise

        logger.info(
            "join-request accepted",
            extra={
                "extra": {
                    "dev_eui": frame.dev_eui.hex(),
                    "join_eui": frame.join_eui.hex(),
                    "dev_nonce": frame.dev_nonce,
                    "join_nonce": join_nonce,
                    "lorawan_11": lorawan_11,
                    "opt_neg": opt_neg,
                }
            },
        )
        await self._notify(device, request.dev_addr)
        return answer

    async def handle_rejoin_request(self, request: JoinRequestContext) -> JoinAnswer:
        """Complete a rejoin; its MIC has already been validated by the network-server."""

        try:
            frame = parse_rejoin_request(request.phy_payload)
        except FrameError as exc:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, f"malformed rejoin-request: {exc}") from exc
        if request.dev_eui is not None and bytes(request.dev_eui) != bytes(frame.dev_eui):
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "DevEUI of the request does not match the rejoin-request")
        join_eui = frame.join_eui if frame.join_eui is not None else request.join_eui
        if join_eui is None:
            raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "rejoin-request needs the JoinEUI (ReceiverID)")

        async with self._ctx.device_locks.hold(bytes(frame.dev_eui)):
            device = self._ctx.devices.load(frame.dev_eui)
            try:
                with self._ctx.persistence.transaction():
                    keys = self._ctx.keystore.load(frame.dev_eui)
                    join_nonce = self._ctx.keystore.next_join_nonce(keys)
                    session = crypto.derive_session_keys_11(
                        keys.nwk_key,
                        keys.root_app_key,
                        join_nonce=join_nonce,
                        join_eui=join_eui,
                        dev_nonce=frame.rj_count,
                    )
                    phy = self._accept(request, join_nonce).encrypted_phy_payload(
                        mic_key=crypto.js_int_key(keys.nwk_key, frame.dev_eui),
                        encryption_key=crypto.js_enc_key(keys.nwk_key, frame.dev_eui),
                        join_request_type=frame.join_request_type,
                        join_eui=join_eui,
                        dev_nonce=frame.rj_count,
                    )
                    answer = self._finish(
                        device,
                        keys,
                        request,
                        session,
                        phy,
                        join_nonce=join_nonce,
                        lorawan_11=True,
                        join_req_type=frame.join_request_type,
                        join_eui=join_eui,
                        dev_nonce=None,
                    )
            except LoRaWANError as exc:
                self._reject(exc, frame.dev_eui, dev_nonce=frame.rj_count)
                raise

        logger.info(
            "rejoin-request accepted",
            extra={
                "extra": {
                    "dev_eui": frame.dev_eui.hex(),
                    "rejoin_type": frame.rejoin_type,
                    "rj_count": frame.rj_count,
                    "join_nonce": join_nonce,
                }
            },
        )
        await self._notify(device, request.dev_addr)
        return answer

    def handle_home_ns_request(self, dev_eui: bytes) -> NetID:
        """Return the home NetID recorded in the device's ``home_netid`` variable."""

        device = self._ctx.devices.load(dev_eui)
        value = device.variables.get(HOME_NETID_VARIABLE)
        if not value:
            return NetID(bytes(3))
        try:
            return parse_net_id(value)
        except ValueError as exc:
            raise LoRaWANError(ErrorKind.INTERNAL, f"invalid {HOME_NETID_VARIABLE} variable: {value}") from exc

    @staticmethod
    def _accept(request: JoinRequestContext, join_nonce: int) -> JoinAccept:
        return JoinAccept(
            join_nonce=join_nonce,
            net_id=request.net_id,
            dev_addr=request.dev_addr,
            dl_settings=request.dl_settings,
            rx_delay=request.rx_delay,
            cflist=request.cflist,
        )

    def _finish(
        self,
        device: Device,
        keys: DeviceKeys,
        request: JoinRequestContext,
        session: crypto.SessionKeys,
        phy: bytes,
        *,
        join_nonce: int,
        lorawan_11: bool,
        join_req_type: JoinRequestType,
        join_eui: bytes,
        dev_nonce: int | None,
    ) -> JoinAnswer:
        activation = self._ctx.activations.append(
            DeviceActivation(
                dev_eui=device.dev_eui,
                dev_addr=request.dev_addr,
                app_s_key=session.app_s_key,
                nwk_s_enc_key=session.nwk_s_enc_key,
                s_nwk_s_int_key=session.s_nwk_s_int_key,
                f_nwk_s_int_key=session.f_nwk_s_int_key,
                join_req_type=join_req_type,
                join_eui=EUI64(bytes(join_eui)),
                dev_nonce=dev_nonce,
                join_nonce=join_nonce,
            )
        )
        # mappings of the previous session can never be acknowledged
        self._ctx.queue.delete_all_for(device.dev_eui)

        kek = self._ctx.kek
        if lorawan_11:
            network_keys = {
                "SNwkSIntKey": kek.network_key_envelope(request.net_id, session.s_nwk_s_int_key),
                "FNwkSIntKey": kek.network_key_envelope(request.net_id, session.f_nwk_s_int_key),
                "NwkSEncKey": kek.network_key_envelope(request.net_id, session.nwk_s_enc_key),
            }
        else:
            network_keys = {"NwkSKey": kek.network_key_envelope(request.net_id, session.nwk_s_key)}
        return JoinAnswer(
            dev_eui=device.dev_eui,
            dev_addr=request.dev_addr,
            join_nonce=join_nonce,
            phy_payload=phy,
            lorawan_11=lorawan_11,
            session_keys=session,
            app_s_key=kek.application_key_envelope(session.app_s_key),
            network_keys=network_keys,
            activation_id=activation.id,
        )

    def _reject(self, exc: LoRaWANError, dev_eui: bytes, *, dev_nonce: int) -> None:
        if exc.is_security_failure:
            self._ctx.counters.record(exc)
            logger.warning(
                "join rejected",
                extra={"extra": {"dev_eui": bytes(dev_eui).hex(), "dev_nonce": dev_nonce, "kind": exc.kind.value}},
            )

    async def _notify(self, device: Device, dev_addr: bytes) -> None:
        application = self._ctx.application(device)
        event: DeviceEvent = JoinEvent(
            **JoinEvent.base_fields(device, application.name),
            dev_addr=bytes(dev_addr),
        )
        await publish_event(self._ctx.event_log, self._ctx.integration, event)
