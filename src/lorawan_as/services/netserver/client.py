"""JSON-over-HTTP client for the network-server API."""
from __future__ import annotations

import json
import logging
import ssl
from typing import Any, AsyncIterator, Mapping

import httpx

from ..lorawan.enums import ErrorKind
from ..lorawan.errors import LoRaWANError
from ..lorawan.ids import DevAddr, MulticastGroupId, parse_dev_addr, parse_eui64
from ..lorawan.models import DeviceQueueItem, MulticastQueueItem

__all__ = ["NetworkServerHttpClient"]

logger = logging.getLogger(__name__)


def _queue_item(data: Mapping[str, Any]) -> DeviceQueueItem:
    dev_addr = data.get("devAddr")
    return DeviceQueueItem(
        dev_eui=parse_eui64(str(data.get("devEUI") or "")),
        f_port=int(data.get("fPort") or 0),
        confirmed=bool(data.get("confirmed")),
        frm_payload=bytes.fromhex(str(data.get("frmPayload") or "")),
        f_cnt=int(data.get("fCnt") or 0),
        dev_addr=parse_dev_addr(dev_addr) if dev_addr else None,
    )


def _multicast_item(data: Mapping[str, Any]) -> MulticastQueueItem:
    return MulticastQueueItem(
        multicast_group_id=MulticastGroupId(str(data.get("multicastGroupID") or "")),
        f_cnt=int(data.get("fCnt") or 0),
        f_port=int(data.get("fPort") or 0),
        frm_payload=bytes.fromhex(str(data.get("frmPayload") or "")),
    )


class NetworkServerHttpClient:
    """One network-server endpoint.

    Every RPC is ``POST {base_url}/api/{Method}`` with a JSON body.  Transport
    failures and timeouts surface as ``NetworkServerUnavailable``, a 404 answer
    as ``NotFound``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 1.0,
        stream_timeout: float = 5.0,
        verify: bool | ssl.SSLContext = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._stream_timeout = stream_timeout
        # requests and streams currently using the connection pool
        self.in_flight = 0
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        await self._client.aclose()

    def _raise_for_status(self, method: str, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        message = response.text or f"HTTP {response.status_code}"
        try:
            content = response.json()
        except ValueError:
            content = None
        if isinstance(content, Mapping):
            detail = content.get("message") or content.get("error") or content.get("detail")
            if isinstance(detail, str):
                message = detail
        if response.status_code == 404:
            raise LoRaWANError(ErrorKind.NOT_FOUND, f"{method}: {message}")
        if response.status_code == 409:
            raise LoRaWANError(ErrorKind.ALREADY_EXISTS, f"{method}: {message}")
        raise LoRaWANError(
            ErrorKind.NETWORK_SERVER_UNAVAILABLE,
            f"{method} failed with HTTP {response.status_code}: {message}",
        )

    async def _call(self, method: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
        self.in_flight += 1
        try:
            response = await self._client.post(f"/api/{method}", json=dict(payload or {}))
        except httpx.TimeoutException as exc:
            logger.warning("network-server timeout", extra={"extra": {"method": method, "server": self.base_url}})
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, f"{method} timed out") from exc
        except httpx.RequestError as exc:
            logger.warning(
                "network-server unreachable",
                extra={"extra": {"method": method, "server": self.base_url, "error": str(exc)}},
            )
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, f"{method} failed: {exc}") from exc
        finally:
            self.in_flight -= 1
        self._raise_for_status(method, response)
        if not response.content:
            return {}
        try:
            content = response.json()
        except ValueError as exc:
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, f"{method} returned invalid JSON") from exc
        return dict(content) if isinstance(content, Mapping) else {}

    # Devices -----------------------------------------------------------
    async def create_device(self, device: Mapping[str, Any]) -> None:
        await self._call("CreateDevice", {"device": dict(device)})

    async def update_device(self, device: Mapping[str, Any]) -> None:
        await self._call("UpdateDevice", {"device": dict(device)})

    async def delete_device(self, dev_eui: bytes) -> None:
        await self._call("DeleteDevice", {"devEUI": bytes(dev_eui).hex()})

    async def activate_device(self, activation: Mapping[str, Any]) -> None:
        await self._call("ActivateDevice", {"deviceActivation": dict(activation)})

    async def deactivate_device(self, dev_eui: bytes) -> None:
        await self._call("DeactivateDevice", {"devEUI": bytes(dev_eui).hex()})

    async def get_device_activation(self, dev_eui: bytes) -> dict[str, Any]:
        result = await self._call("GetDeviceActivation", {"devEUI": bytes(dev_eui).hex()})
        return dict(result.get("deviceActivation") or {})

    async def get_random_dev_addr(self) -> DevAddr:
        result = await self._call("GetRandomDevAddr")
        try:
            return parse_dev_addr(str(result.get("devAddr") or ""))
        except ValueError as exc:
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, "GetRandomDevAddr returned no dev-addr") from exc

    # Device queue ------------------------------------------------------
    async def create_device_queue_item(self, item: DeviceQueueItem) -> None:
        await self._call("CreateDeviceQueueItem", {"item": item.as_payload()})

    async def flush_device_queue(self, dev_eui: bytes) -> None:
        await self._call("FlushDeviceQueueForDevEUI", {"devEUI": bytes(dev_eui).hex()})

    async def get_device_queue_items(self, dev_eui: bytes) -> list[DeviceQueueItem]:
        result = await self._call("GetDeviceQueueItemsForDevEUI", {"devEUI": bytes(dev_eui).hex()})
        return [_queue_item(item) for item in result.get("items") or []]

    # Multicast ---------------------------------------------------------
    async def create_multicast_group(self, group: Mapping[str, Any]) -> None:
        await self._call("CreateMulticastGroup", {"multicastGroup": dict(group)})

    async def update_multicast_group(self, group: Mapping[str, Any]) -> None:
        await self._call("UpdateMulticastGroup", {"multicastGroup": dict(group)})

    async def delete_multicast_group(self, group_id: str) -> None:
        await self._call("DeleteMulticastGroup", {"id": group_id})

    async def add_device_to_multicast_group(self, group_id: str, dev_eui: bytes) -> None:
        await self._call("AddDeviceToMulticastGroup", {"multicastGroupID": group_id, "devEUI": bytes(dev_eui).hex()})

    async def remove_device_from_multicast_group(self, group_id: str, dev_eui: bytes) -> None:
        await self._call(
            "RemoveDeviceFromMulticastGroup",
            {"multicastGroupID": group_id, "devEUI": bytes(dev_eui).hex()},
        )

    async def enqueue_multicast_queue_item(self, item: MulticastQueueItem) -> None:
        await self._call("EnqueueMulticastQueueItem", {"multicastQueueItem": item.as_payload()})

    async def flush_multicast_queue(self, group_id: str) -> None:
        await self._call("FlushMulticastQueueForMulticastGroup", {"multicastGroupID": group_id})

    async def get_multicast_queue_items(self, group_id: str) -> list[MulticastQueueItem]:
        result = await self._call("GetMulticastQueueItemsForMulticastGroup", {"multicastGroupID": group_id})
        return [_multicast_item(item) for item in result.get("multicastQueueItems") or []]

    # Streams -----------------------------------------------------------
    async def stream_frame_logs(self, dev_eui: bytes) -> AsyncIterator[dict[str, Any]]:
        """Yield frame-log messages from an NDJSON response until the server closes it."""

        method = "StreamFrameLogsForDevice"
        timeout = httpx.Timeout(self._stream_timeout, read=None)
        self.in_flight += 1
        try:
            async with self._client.stream(
                "POST",
                f"/api/{method}",
                json={"devEUI": bytes(dev_eui).hex()},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(method, response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        message = json.loads(line)
                    except ValueError:
                        logger.warning("invalid frame-log line", extra={"extra": {"dev_eui": bytes(dev_eui).hex()}})
                        continue
                    if isinstance(message, dict):
                        yield message
        except httpx.TimeoutException as exc:
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, f"{method} timed out") from exc
        except httpx.RequestError as exc:
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, f"{method} failed: {exc}") from exc
        finally:
            self.in_flight -= 1
