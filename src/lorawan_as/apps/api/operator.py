# Operator API: inventory, devices, device queue, multicast groups and live logs.
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket
from fastapi.websockets import WebSocketDisconnect

from lorawan_as.apps.api.auth import authorize, bearer_token, get_context, get_ws_context, require_identity
from lorawan_as.apps.api.models import (
    ActivateBody,
    ApplicationBody,
    DeviceBody,
    DeviceProfileBody,
    EnqueueBody,
    KeysBody,
    MulticastEnqueueBody,
    MulticastGroupBody,
    MulticastMemberBody,
    NetworkServerBody,
    ServiceProfileBody,
    activation_out,
    device_out,
    keys_out,
    multicast_group_out,
    multicast_item_out,
    queue_item_out,
)
from lorawan_as.services.lorawan.context import ServerContext
from lorawan_as.services.lorawan.devices import AbpSession, DeviceService
from lorawan_as.services.lorawan.downlink import DownlinkPipeline
from lorawan_as.services.lorawan.enums import Action, Decision, ErrorKind
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.ids import EUI64, generate_id, parse_aes_key, parse_dev_addr, parse_eui64
from lorawan_as.services.lorawan.models import (
    Application,
    Device,
    DeviceKeys,
    DeviceProfile,
    NetworkServer,
    ServiceProfile,
)
from lorawan_as.services.lorawan.multicast import MulticastEngine
from lorawan_as.services.lorawan.ports import Identity, Target

router = APIRouter(prefix="/api", tags=["operator"])

logger = logging.getLogger(__name__)


def _eui(value: str) -> EUI64:
    try:
        return parse_eui64(value)
    except ValueError as exc:
        raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, str(exc)) from exc


def _device_target(device: Device, kind: str = "device") -> Target:
    return Target(kind=kind, id=device.dev_eui.hex(), application_id=device.application_id)


# ---------- inventory ----------
@router.post("/network-servers")
async def create_network_server(
    body: NetworkServerBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.CREATE, Target(kind="network_server"))
    network_server = NetworkServer(
        id=body.id or generate_id(),
        name=body.name,
        server=body.server,
        ca_cert=body.ca_cert,
        tls_cert=body.tls_cert,
        tls_key=body.tls_key,
    )
    ctx.inventory.create_network_server(network_server)
    return {"id": network_server.id}


@router.get("/network-servers/{network_server_id}")
async def get_network_server(
    network_server_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.READ, Target(kind="network_server", id=network_server_id))
    network_server = ctx.inventory.get_network_server(network_server_id)
    return {"id": network_server.id, "name": network_server.name, "server": network_server.server}


@router.post("/service-profiles")
async def create_service_profile(
    body: ServiceProfileBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.CREATE, Target(kind="service_profile"))
    profile = ServiceProfile(id=body.id or generate_id(), name=body.name, network_server_id=body.network_server_id)
    ctx.inventory.create_service_profile(profile)
    return {"id": profile.id}


@router.get("/service-profiles/{profile_id}")
async def get_service_profile(
    profile_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.READ, Target(kind="service_profile", id=profile_id))
    profile = ctx.inventory.get_service_profile(profile_id)
    return {"id": profile.id, "name": profile.name, "network_server_id": profile.network_server_id}


@router.post("/device-profiles")
async def create_device_profile(
    body: DeviceProfileBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.CREATE, Target(kind="device_profile"))
    profile = DeviceProfile(
        id=body.id or generate_id(),
        name=body.name,
        network_server_id=body.network_server_id,
        mac_version=body.mac_version,
        supports_join=body.supports_join,
        supports_class_b=body.supports_class_b,
        supports_class_c=body.supports_class_c,
    )
    ctx.inventory.create_device_profile(profile)
    return {"id": profile.id}


@router.get("/device-profiles/{profile_id}")
async def get_device_profile(
    profile_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.READ, Target(kind="device_profile", id=profile_id))
    profile = ctx.inventory.get_device_profile(profile_id)
    return {
        "id": profile.id,
        "name": profile.name,
        "network_server_id": profile.network_server_id,
        "mac_version": profile.mac_version.value,
        "supports_join": profile.supports_join,
        "supports_class_b": profile.supports_class_b,
        "supports_class_c": profile.supports_class_c,
    }


@router.post("/applications")
async def create_application(
    body: ApplicationBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    application = Application(
        id=body.id or generate_id(),
        name=body.name,
        service_profile_id=body.service_profile_id,
        payload_codec=body.payload_codec,
        payload_encoder_script=body.payload_encoder_script,
        payload_decoder_script=body.payload_decoder_script,
    )
    authorize(ctx, identity, Action.CREATE, Target(kind="application"))
    ctx.inventory.create_application(application)
    return {"id": application.id}


@router.get("/applications/{application_id}")
async def get_application(
    application_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.READ, Target(kind="application", id=application_id, application_id=application_id))
    application = ctx.inventory.get_application(application_id)
    return {
        "id": application.id,
        "name": application.name,
        "service_profile_id": application.service_profile_id,
        "payload_codec": application.payload_codec.value,
    }


# ---------- devices ----------
@router.post("/devices")
async def create_device(
    body: DeviceBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    device = body.to_device()
    authorize(ctx, identity, Action.CREATE, _device_target(device))
    await DeviceService(ctx).create(device)
    return device_out(device)


@router.get("/devices")
async def list_devices(
    application_id: Optional[str] = None,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.LIST, Target(kind="device", application_id=application_id))
    devices = DeviceService(ctx).list(application_id=application_id)
    return {"devices": [device_out(device) for device in devices]}


@router.get("/devices/{dev_eui}")
async def get_device(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    device = DeviceService(ctx).get(_eui(dev_eui))
    authorize(ctx, identity, Action.READ, _device_target(device))
    return device_out(device)


@router.put("/devices/{dev_eui}")
async def update_device(
    dev_eui: str,
    body: DeviceBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    current = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.UPDATE, _device_target(current))
    device = body.to_device()
    if device.dev_eui != current.dev_eui:
        raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "dev_eui of the body does not match the path")
    await service.update(device)
    return device_out(device)


@router.delete("/devices/{dev_eui}")
async def delete_device(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.DELETE, _device_target(device))
    await service.delete(device.dev_eui)
    return {}


@router.post("/devices/{dev_eui}/activate")
async def activate_device(
    dev_eui: str,
    body: ActivateBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.UPDATE, _device_target(device))
    nwk_s_key = body.nwk_s_key
    s_nwk_s_int_key = body.s_nwk_s_int_key or nwk_s_key
    f_nwk_s_int_key = body.f_nwk_s_int_key or nwk_s_key
    nwk_s_enc_key = body.nwk_s_enc_key or nwk_s_key
    if not (s_nwk_s_int_key and f_nwk_s_int_key and nwk_s_enc_key):
        raise LoRaWANError(
            ErrorKind.INVALID_ARGUMENT,
            "either nwk_s_key or all of s_nwk_s_int_key, f_nwk_s_int_key and nwk_s_enc_key are required",
        )
    session = AbpSession(
        dev_addr=parse_dev_addr(body.dev_addr),
        app_s_key=parse_aes_key(body.app_s_key),
        nwk_s_enc_key=parse_aes_key(nwk_s_enc_key),
        s_nwk_s_int_key=parse_aes_key(s_nwk_s_int_key),
        f_nwk_s_int_key=parse_aes_key(f_nwk_s_int_key),
        f_cnt_up=body.f_cnt_up,
        n_f_cnt_down=body.n_f_cnt_down,
        a_f_cnt_down=body.a_f_cnt_down,
    )
    activation = await service.activate(device.dev_eui, session)
    return activation_out(activation)


@router.get("/devices/{dev_eui}/activation")
async def get_device_activation(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.READ_KEYS, _device_target(device))
    return activation_out(service.get_activation(device.dev_eui))


@router.post("/devices/{dev_eui}/keys")
async def create_device_keys(
    dev_eui: str,
    body: KeysBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.UPDATE_KEYS, _device_target(device))
    keys = DeviceKeys(
        dev_eui=device.dev_eui,
        nwk_key=parse_aes_key(body.nwk_key),
        app_key=parse_aes_key(body.app_key) if body.app_key else None,
    )
    return keys_out(service.create_keys(keys))


@router.get("/devices/{dev_eui}/keys")
async def get_device_keys(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.READ_KEYS, _device_target(device))
    return keys_out(service.get_keys(device.dev_eui))


@router.put("/devices/{dev_eui}/keys")
async def update_device_keys(
    dev_eui: str,
    body: KeysBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.UPDATE_KEYS, _device_target(device))
    keys = await service.update_keys(
        device.dev_eui,
        nwk_key=parse_aes_key(body.nwk_key),
        app_key=parse_aes_key(body.app_key) if body.app_key else None,
    )
    return keys_out(keys)


@router.delete("/devices/{dev_eui}/keys")
async def delete_device_keys(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    service = DeviceService(ctx)
    device = service.get(_eui(dev_eui))
    authorize(ctx, identity, Action.UPDATE_KEYS, _device_target(device))
    service.delete_keys(device.dev_eui)
    return {}


# ---------- device queue ----------
@router.post("/devices/{dev_eui}/queue")
async def enqueue_device_queue_item(
    dev_eui: str,
    body: EnqueueBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    device = ctx.devices.load(_eui(dev_eui))
    authorize(ctx, identity, Action.ENQUEUE, _device_target(device, "device_queue"))
    f_cnt = await DownlinkPipeline(ctx).enqueue(
        device.dev_eui,
        f_port=body.f_port,
        data=bytes.fromhex(body.data) if body.data is not None else None,
        obj=body.object,
        confirmed=body.confirmed,
        reference=body.reference,
    )
    return {"f_cnt": f_cnt}


@router.delete("/devices/{dev_eui}/queue")
async def flush_device_queue(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    device = ctx.devices.load(_eui(dev_eui))
    authorize(ctx, identity, Action.FLUSH, _device_target(device, "device_queue"))
    await DownlinkPipeline(ctx).flush(device.dev_eui)
    return {}


@router.get("/devices/{dev_eui}/queue")
async def list_device_queue(
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    device = ctx.devices.load(_eui(dev_eui))
    authorize(ctx, identity, Action.LIST, _device_target(device, "device_queue"))
    items = await DownlinkPipeline(ctx).list_queue(device.dev_eui)
    return {"items": [queue_item_out(item) for item in items]}


# ---------- multicast groups ----------
def _group_target(ctx: ServerContext, group_id: str | None = None, service_profile_id: str | None = None) -> Target:
    if group_id is not None:
        service_profile_id = ctx.multicast.get(group_id).service_profile_id
    return Target(kind="multicast_group", id=group_id, service_profile_id=service_profile_id)


@router.post("/multicast-groups")
async def create_multicast_group(
    body: MulticastGroupBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.CREATE, _group_target(ctx, service_profile_id=body.service_profile_id))
    group = await MulticastEngine(ctx).create(body.to_group(body.id or generate_id()))
    return multicast_group_out(group)


@router.get("/multicast-groups")
async def list_multicast_groups(
    service_profile_id: Optional[str] = None,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.LIST, _group_target(ctx, service_profile_id=service_profile_id))
    groups = MulticastEngine(ctx).list(service_profile_id=service_profile_id)
    return {"multicast_groups": [multicast_group_out(group) for group in groups]}


@router.get("/multicast-groups/{group_id}")
async def get_multicast_group(
    group_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.READ, _group_target(ctx, group_id))
    return multicast_group_out(MulticastEngine(ctx).get(group_id))


@router.put("/multicast-groups/{group_id}")
async def update_multicast_group(
    group_id: str,
    body: MulticastGroupBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.UPDATE, _group_target(ctx, group_id))
    group = await MulticastEngine(ctx).update(body.to_group(group_id))
    return multicast_group_out(group)


@router.delete("/multicast-groups/{group_id}")
async def delete_multicast_group(
    group_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.DELETE, _group_target(ctx, group_id))
    await MulticastEngine(ctx).delete(group_id)
    return {}


@router.post("/multicast-groups/{group_id}/devices")
async def add_multicast_group_device(
    group_id: str,
    body: MulticastMemberBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.UPDATE, _group_target(ctx, group_id))
    await MulticastEngine(ctx).add_device(group_id, _eui(body.dev_eui))
    return {}


@router.get("/multicast-groups/{group_id}/devices")
async def list_multicast_group_devices(
    group_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.LIST, _group_target(ctx, group_id))
    return {"devices": [dev_eui.hex() for dev_eui in MulticastEngine(ctx).list_devices(group_id)]}


@router.delete("/multicast-groups/{group_id}/devices/{dev_eui}")
async def remove_multicast_group_device(
    group_id: str,
    dev_eui: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.UPDATE, _group_target(ctx, group_id))
    await MulticastEngine(ctx).remove_device(group_id, _eui(dev_eui))
    return {}


@router.post("/multicast-groups/{group_id}/queue")
async def enqueue_multicast_queue_items(
    group_id: str,
    body: MulticastEnqueueBody,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.ENQUEUE, _group_target(ctx, group_id))
    payloads = [(item.f_port, bytes.fromhex(item.data)) for item in body.items]
    counters = await MulticastEngine(ctx).enqueue_multiple(group_id, payloads)
    return {"f_cnt": counters}


@router.delete("/multicast-groups/{group_id}/queue")
async def flush_multicast_queue(
    group_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.FLUSH, _group_target(ctx, group_id))
    await MulticastEngine(ctx).flush_queue(group_id)
    return {}


@router.get("/multicast-groups/{group_id}/queue")
async def list_multicast_queue(
    group_id: str,
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    authorize(ctx, identity, Action.LIST, _group_target(ctx, group_id))
    items = await MulticastEngine(ctx).list_queue(group_id)
    return {"items": [multicast_item_out(item) for item in items]}


# ---------- internal ----------
@router.get("/internal/counters")
async def error_counters(
    ctx: ServerContext = Depends(get_context),
    identity: Identity = Depends(require_identity),
) -> dict:
    if not identity.is_admin:
        raise LoRaWANError(ErrorKind.PERMISSION_DENIED, "operator token required")
    return {"counters": ctx.counters.snapshot()}


# ---------- live logs ----------
async def _ws_device(websocket: WebSocket, ctx: ServerContext, dev_eui: str) -> Device | None:
    """Authenticate the socket and resolve the device; closes the socket on failure."""

    token = bearer_token(websocket.headers.get("authorization"), websocket.headers.get("x-lorawan-token"))
    identity = ctx.authorizer.identify(token or websocket.query_params.get("token"))
    try:
        if identity is None:
            raise LoRaWANError(ErrorKind.UNAUTHENTICATED, "invalid or missing token")
        device = ctx.devices.load(_eui(dev_eui))
        if ctx.authorizer.check(identity, Action.STREAM, _device_target(device)) is not Decision.ALLOW:
            raise LoRaWANError(ErrorKind.PERMISSION_DENIED, "stream on device is not allowed")
    except LoRaWANError as exc:
        await websocket.accept()
        await websocket.send_json({"error": exc.envelope.as_dict()})
        await websocket.close(code=1008)
        return None
    await websocket.accept()
    return device


async def _wait_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except (WebSocketDisconnect, RuntimeError):
        return


async def _pump(websocket: WebSocket, messages: AsyncIterator[Dict[str, Any]]) -> None:
    """Forward ``messages`` until either side goes away."""

    async def forward() -> None:
        try:
            async for message in messages:
                await websocket.send_json(message)
        except LoRaWANError as exc:
            await websocket.send_json({"error": exc.envelope.as_dict()})

    sender = asyncio.create_task(forward())
    receiver = asyncio.create_task(_wait_disconnect(websocket))
    try:
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
    if not receiver.cancelled() and receiver.done():
        return
    try:
        await websocket.close()
    except RuntimeError:
        pass


@router.websocket("/devices/{dev_eui}/events")
async def stream_event_logs(websocket: WebSocket, dev_eui: str) -> None:
    ctx = get_ws_context(websocket)
    device = await _ws_device(websocket, ctx, dev_eui)
    if device is None:
        return

    async def events() -> AsyncIterator[Dict[str, Any]]:
        async with ctx.event_log.subscribe(device.dev_eui, replay=True) as subscription:
            async for event in subscription:
                yield event.as_dict()

    logger.debug("event-log stream opened", extra={"extra": {"dev_eui": device.dev_eui.hex()}})
    await _pump(websocket, events())


@router.websocket("/devices/{dev_eui}/frames")
async def stream_frame_logs(websocket: WebSocket, dev_eui: str) -> None:
    ctx = get_ws_context(websocket)
    device = await _ws_device(websocket, ctx, dev_eui)
    if device is None:
        return
    client = ctx.client_for_device(device)
    logger.debug("frame-log stream opened", extra={"extra": {"dev_eui": device.dev_eui.hex()}})
    await _pump(websocket, client.stream_frame_logs(device.dev_eui))
