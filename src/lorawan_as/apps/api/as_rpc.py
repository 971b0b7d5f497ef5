# Application-server RPC called by the network-server.
from __future__ import annotations

from fastapi import APIRouter, Depends

from lorawan_as.apps.api.auth import get_context
from lorawan_as.apps.api.models import (
    DeviceLocationBody,
    DeviceStatusBody,
    DownlinkAckBody,
    ErrorBody,
    ProprietaryUplinkBody,
    UplinkDataBody,
)
from lorawan_as.services.lorawan.context import ServerContext
from lorawan_as.services.lorawan.downlink import DownlinkPipeline
from lorawan_as.services.lorawan.ids import parse_dev_addr, parse_eui64
from lorawan_as.services.lorawan.schemas import KeyEnvelope
from lorawan_as.services.lorawan.uplink import ActivationContext, UplinkPipeline, UplinkRequest

router = APIRouter(prefix="/api/as", tags=["application-server"])


def _uplink(ctx: ServerContext = Depends(get_context)) -> UplinkPipeline:
    return UplinkPipeline(ctx)


@router.post("/HandleUplinkData")
async def handle_uplink_data(body: UplinkDataBody, pipeline: UplinkPipeline = Depends(_uplink)) -> dict:
    activation_context = None
    if body.device_activation_context is not None:
        envelope = body.device_activation_context.app_s_key
        activation_context = ActivationContext(
            dev_addr=parse_dev_addr(body.device_activation_context.dev_addr),
            app_s_key=KeyEnvelope(aes_key=bytes.fromhex(envelope.aes_key), kek_label=envelope.kek_label),
        )
    await pipeline.handle_uplink_data(
        UplinkRequest(
            dev_eui=parse_eui64(body.dev_eui),
            f_cnt=body.f_cnt,
            f_port=body.f_port,
            data=bytes.fromhex(body.data),
            dev_addr=parse_dev_addr(body.dev_addr) if body.dev_addr else None,
            confirmed=body.confirmed_uplink,
            adr=body.adr,
            rx_info=[rx.to_rx_info() for rx in body.rx_info],
            tx_info=body.tx_info.to_tx_info(),
            battery=body.device_status_battery,
            margin=body.device_status_margin,
            location=body.location.to_location() if body.location else None,
            activation_context=activation_context,
        )
    )
    return {}


@router.post("/HandleDownlinkACK")
async def handle_downlink_ack(body: DownlinkAckBody, ctx: ServerContext = Depends(get_context)) -> dict:
    await DownlinkPipeline(ctx).handle_ack(parse_eui64(body.dev_eui), body.f_cnt, body.acknowledged)
    return {}


@router.post("/HandleError")
async def handle_error(body: ErrorBody, pipeline: UplinkPipeline = Depends(_uplink)) -> dict:
    await pipeline.handle_error(parse_eui64(body.dev_eui), body.type, body.error, body.f_cnt)
    return {}


@router.post("/HandleProprietaryUplink")
async def handle_proprietary_uplink(body: ProprietaryUplinkBody, pipeline: UplinkPipeline = Depends(_uplink)) -> dict:
    await pipeline.handle_proprietary_uplink(
        bytes.fromhex(body.mac_payload),
        bytes.fromhex(body.mic),
        [rx.to_rx_info() for rx in body.rx_info],
        body.tx_info.to_tx_info() if body.tx_info else None,
    )
    return {}


@router.post("/SetDeviceStatus")
async def set_device_status(body: DeviceStatusBody, pipeline: UplinkPipeline = Depends(_uplink)) -> dict:
    await pipeline.set_device_status(
        parse_eui64(body.dev_eui),
        margin=body.margin,
        battery=body.battery,
        external_power_source=body.external_power_source,
        battery_level_unavailable=body.battery_level_unavailable,
    )
    return {}


@router.post("/SetDeviceLocation")
async def set_device_location(body: DeviceLocationBody, pipeline: UplinkPipeline = Depends(_uplink)) -> dict:
    await pipeline.set_device_location(parse_eui64(body.dev_eui), body.location.to_location())
    return {}
