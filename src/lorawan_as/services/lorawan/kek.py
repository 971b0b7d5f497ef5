"""Key-encryption-key handling for session keys exchanged with network-servers."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Mapping

from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap, aes_key_wrap

from .enums import ErrorKind
from .errors import LoRaWANError
from .ids import AES128Key
from .schemas import KeyEnvelope

__all__ = ["KEKStore"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class KEKStore:
    """Label to KEK mapping plus the label protecting application keys.

    Network keys are wrapped with the KEK whose label is the requesting
    ``NetID`` (hex); when no such KEK exists they travel in the clear.
    """

    keks: Mapping[str, bytes] = field(default_factory=dict)
    as_kek_label: str = ""

    @classmethod
    def from_config(cls, entries: Mapping[str, str], as_kek_label: str = "") -> "KEKStore":
        decoded: dict[str, bytes] = {}
        for label, value in entries.items():
            try:
                decoded[label] = bytes.fromhex(value)
            except ValueError as exc:
                raise ValueError(f"KEK {label!r} is not valid hex") from exc
        return cls(keks=decoded, as_kek_label=as_kek_label)

    def _wrap(self, label: str, key: bytes) -> KeyEnvelope:
        kek = self.keks[label]
        return KeyEnvelope(aes_key=aes_key_wrap(kek, bytes(key)), kek_label=label)

    def network_key_envelope(self, net_id: bytes, key: bytes) -> KeyEnvelope:
        label = net_id.hex()
        if label not in self.keks:
            return KeyEnvelope(aes_key=bytes(key))
        return self._wrap(label, key)

    def application_key_envelope(self, key: bytes) -> KeyEnvelope:
        if not self.as_kek_label:
            return KeyEnvelope(aes_key=bytes(key))
        if self.as_kek_label not in self.keks:
            raise LoRaWANError(ErrorKind.INTERNAL, f"as kek label not found in set: {self.as_kek_label}")
        return self._wrap(self.as_kek_label, key)

    def unwrap(self, envelope: KeyEnvelope) -> AES128Key:
        if not envelope.kek_label:
            if len(envelope.aes_key) != 16:
                raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, "unwrapped key must be 16 bytes")
            return AES128Key(envelope.aes_key)
        kek = self.keks.get(envelope.kek_label)
        if kek is None:
            raise LoRaWANError(ErrorKind.INTERNAL, f"unknown kek label: {envelope.kek_label}")
        try:
            key = aes_key_unwrap(kek, envelope.aes_key)
        except InvalidUnwrap as exc:
            logger.warning("key unwrap failed", extra={"extra": {"kek_label": envelope.kek_label}})
            raise LoRaWANError(ErrorKind.INTERNAL, "key unwrap error") from exc
        return AES128Key(key)
