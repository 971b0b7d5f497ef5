from __future__ import annotations

import json

import httpx
import pytest

from lorawan_as.services.lorawan.enums import ErrorKind
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.models import DeviceQueueItem, NetworkServer
from lorawan_as.services.netserver.client import NetworkServerHttpClient
from lorawan_as.services.netserver.pool import NetworkServerClientPool, build_ssl_context

DEV_EUI = bytes.fromhex("0102030405060708")


class Recorder:
    def __init__(self, responses=None):
        self.requests: list[tuple[str, dict]] = []
        self.responses = responses or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((method, json.loads(request.content or b"{}")))
        response = self.responses.get(method)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return httpx.Response(200, json={})
        return response


def _client(recorder: Recorder) -> NetworkServerHttpClient:
    return NetworkServerHttpClient("http://ns.test:8000/", transport=httpx.MockTransport(recorder))


@pytest.mark.anyio
async def test_rpc_payloads():
    recorder = Recorder(
        {
            "GetDeviceQueueItemsForDevEUI": httpx.Response(
                200,
                json={
                    "items": [
                        {"devEUI": DEV_EUI.hex(), "fPort": 10, "confirmed": True, "frmPayload": "0a0b", "fCnt": 12}
                    ]
                },
            ),
            "GetRandomDevAddr": httpx.Response(200, json={"devAddr": "01020304"}),
        }
    )
    client = _client(recorder)
    try:
        await client.create_device({"devEUI": DEV_EUI.hex()})
        await client.create_device_queue_item(
            DeviceQueueItem(dev_eui=DEV_EUI, f_port=10, confirmed=False, frm_payload=b"\x01", f_cnt=3)
        )
        items = await client.get_device_queue_items(DEV_EUI)
        dev_addr = await client.get_random_dev_addr()
        await client.add_device_to_multicast_group("mg-1", DEV_EUI)
    finally:
        await client.aclose()

    assert recorder.requests[0] == ("CreateDevice", {"device": {"devEUI": DEV_EUI.hex()}})
    assert recorder.requests[1][0] == "CreateDeviceQueueItem"
    assert recorder.requests[1][1]["item"]["fCnt"] == 3
    assert recorder.requests[1][1]["item"]["frmPayload"] == "01"
    assert items == [
        DeviceQueueItem(dev_eui=DEV_EUI, f_port=10, confirmed=True, frm_payload=b"\x0a\x0b", f_cnt=12)
    ]
    assert dev_addr == bytes.fromhex("01020304")
    assert recorder.requests[-1] == (
        "AddDeviceToMulticastGroup",
        {"multicastGroupID": "mg-1", "devEUI": DEV_EUI.hex()},
    )
    assert client.closed


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response, kind",
    [
        (httpx.Response(404, json={"message": "object does not exist"}), ErrorKind.NOT_FOUND),
        (httpx.Response(409, json={"message": "object already exists"}), ErrorKind.ALREADY_EXISTS),
        (httpx.Response(500, text="boom"), ErrorKind.NETWORK_SERVER_UNAVAILABLE),
        (httpx.ReadTimeout("timed out"), ErrorKind.NETWORK_SERVER_UNAVAILABLE),
        (httpx.ConnectError("refused"), ErrorKind.NETWORK_SERVER_UNAVAILABLE),
    ],
)
async def test_error_mapping(response, kind):
    client = _client(Recorder({"DeleteDevice": response}))
    try:
        with pytest.raises(LoRaWANError) as excinfo:
            await client.delete_device(DEV_EUI)
    finally:
        await client.aclose()
    assert excinfo.value.kind is kind


@pytest.mark.anyio
async def test_not_found_message_is_kept():
    client = _client(Recorder({"DeleteDevice": httpx.Response(404, json={"message": "object does not exist"})}))
    try:
        with pytest.raises(LoRaWANError) as excinfo:
            await client.delete_device(DEV_EUI)
    finally:
        await client.aclose()
    assert "object does not exist" in excinfo.value.message


@pytest.mark.anyio
async def test_stream_frame_logs_reads_ndjson():
    body = b'{"uplinkFrame": {"fCnt": 1}}\n\nnot-json\n{"downlinkFrame": {"fCnt": 2}}\n'
    client = _client(Recorder({"StreamFrameLogsForDevice": httpx.Response(200, content=body)}))
    try:
        messages = [message async for message in client.stream_frame_logs(DEV_EUI)]
    finally:
        await client.aclose()
    assert messages == [{"uplinkFrame": {"fCnt": 1}}, {"downlinkFrame": {"fCnt": 2}}]


@pytest.mark.anyio
async def test_stream_frame_logs_error_status():
    client = _client(Recorder({"StreamFrameLogsForDevice": httpx.Response(404, json={"message": "no device"})}))
    try:
        with pytest.raises(LoRaWANError) as excinfo:
            async for _ in client.stream_frame_logs(DEV_EUI):
                pass
    finally:
        await client.aclose()
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_pool_reuses_and_rebuilds_clients():
    now = [0.0]
    pool = NetworkServerClientPool(
        idle_timeout=60.0,
        transport=httpx.MockTransport(Recorder()),
        clock=lambda: now[0],
    )
    ns = NetworkServer(id="ns-1", name="ns", server="http://ns-a:8000")
    first = pool.get(ns)
    assert pool.get(ns) is first

    ns.server = "http://ns-b:8000"
    second = pool.get(ns)
    assert second is not first
    assert second.base_url == "http://ns-b:8000"
    assert len(pool) == 1

    # the retired client is closed on the next sweep even though the new one is fresh
    assert await pool.sweep() == 0
    assert first.closed
    assert not second.closed

    now[0] = 61.0
    assert await pool.sweep() == 1
    assert second.closed
    assert len(pool) == 0

    third = pool.get(ns)
    await pool.close()
    assert third.closed


@pytest.mark.anyio
async def test_pool_keeps_clients_with_open_streams():
    now = [0.0]
    body = b'{"uplinkFrame": {"fCnt": 1}}\n{"uplinkFrame": {"fCnt": 2}}\n'
    pool = NetworkServerClientPool(
        idle_timeout=60.0,
        transport=httpx.MockTransport(Recorder({"StreamFrameLogsForDevice": httpx.Response(200, content=body)})),
        clock=lambda: now[0],
    )
    ns = NetworkServer(id="ns-1", name="ns", server="http://ns-a:8000")
    client = pool.get(ns)
    stream = client.stream_frame_logs(DEV_EUI)

    assert await stream.__anext__() == {"uplinkFrame": {"fCnt": 1}}
    now[0] = 600.0
    assert await pool.sweep() == 0
    assert not client.closed

    # a client retired while streaming stays open as well
    ns.server = "http://ns-b:8000"
    pool.get(ns)
    assert await pool.sweep() == 0
    assert not client.closed
    assert await stream.__anext__() == {"uplinkFrame": {"fCnt": 2}}

    await stream.aclose()
    assert client.in_flight == 0
    assert await pool.sweep() == 0
    assert client.closed
    await pool.close()


def test_plain_connections_use_default_verification():
    assert build_ssl_context("", "", "") is True
