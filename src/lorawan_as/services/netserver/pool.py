from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import os
import ssl
import tempfile
import time
from typing import Callable, Dict

import httpx

from ..lorawan.models import NetworkServer
from .client import NetworkServerHttpClient

__all__ = ["NetworkServerClientPool", "build_ssl_context"]

logger = logging.getLogger(__name__)


def _fingerprint(network_server: NetworkServer) -> str:
    digest = hashlib.sha256()
    for part in (network_server.server, network_server.ca_cert, network_server.tls_cert, network_server.tls_key):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


def build_ssl_context(ca_cert: str, tls_cert: str, tls_key: str) -> ssl.SSLContext | bool:
    """Build the client TLS context from PEM strings.

    ``ssl`` only loads client certificates from files, so the PEM material is
    written to private temporary files that are removed right after loading.
    """

    if not (ca_cert or tls_cert or tls_key):
        return True
    context = ssl.create_default_context(cadata=ca_cert or None)
    if tls_cert and tls_key:
        paths: list[str] = []
        try:
            for pem in (tls_cert, tls_key):
                fd, path = tempfile.mkstemp(suffix=".pem")
                paths.append(path)
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(pem)
            context.load_cert_chain(certfile=paths[0], keyfile=paths[1])
        finally:
            for path in paths:
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass
    return context


@dataclass(slots=True)
class _PoolEntry:
    fingerprint: str
    client: NetworkServerHttpClient
    last_used: float


class NetworkServerClientPool:
    """One client per network-server, rebuilt when its address or TLS material changes."""

    def __init__(
        self,
        *,
        timeout: float = 1.0,
        stream_timeout: float = 5.0,
        idle_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._timeout = timeout
        self._stream_timeout = stream_timeout
        self._idle_timeout = idle_timeout
        self._transport = transport
        self._clock = clock or time.monotonic
        self._entries: Dict[str, _PoolEntry] = {}
        self._retired: list[NetworkServerHttpClient] = []

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, network_server: NetworkServer) -> NetworkServerHttpClient:
        fingerprint = _fingerprint(network_server)
        now = self._clock()
        entry = self._entries.get(network_server.id)
        if entry is not None and entry.fingerprint == fingerprint and not entry.client.closed:
            entry.last_used = now
            return entry.client
        if entry is not None:
            self._retired.append(entry.client)
            logger.info("network-server client rebuilt", extra={"extra": {"network_server_id": network_server.id}})
        client = NetworkServerHttpClient(
            network_server.server,
            timeout=self._timeout,
            stream_timeout=self._stream_timeout,
            verify=build_ssl_context(network_server.ca_cert, network_server.tls_cert, network_server.tls_key),
            transport=self._transport,
        )
        self._entries[network_server.id] = _PoolEntry(fingerprint=fingerprint, client=client, last_used=now)
        return client

    async def sweep(self) -> int:
        """Close clients idle for longer than the idle window and retired ones.

        A client with a request or stream in flight counts as used now and
        is never closed, retired or not.
        """

        now = self._clock()
        stale = []
        for key, entry in self._entries.items():
            if entry.client.in_flight:
                entry.last_used = now
            elif now - entry.last_used >= self._idle_timeout:
                stale.append(key)
        closing = [client for client in self._retired if not client.in_flight]
        self._retired = [client for client in self._retired if client.in_flight]
        for key in stale:
            closing.append(self._entries.pop(key).client)
        for client in closing:
            await client.aclose()
        return len(stale)

    async def close(self) -> None:
        closing = self._retired + [entry.client for entry in self._entries.values()]
        self._entries.clear()
        self._retired = []
        for client in closing:
            await client.aclose()
