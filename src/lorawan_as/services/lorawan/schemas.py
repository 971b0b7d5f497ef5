"""Pydantic-free envelopes returned by the core to its callers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

__all__ = ["ErrorEnvelope", "KeyEnvelope", "isoformat"]


def isoformat(dt: datetime) -> str:
    moment = dt.astimezone(timezone.utc)
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class ErrorEnvelope:
    code: str
    message: str
    hint: str | None = None
    event_id: str | None = None
    server_time_utc: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.hint is not None:
            data["hint"] = self.hint
        if self.event_id is not None:
            data["event_id"] = self.event_id
        if self.server_time_utc is not None:
            data["server_time_utc"] = isoformat(self.server_time_utc)
        return data


@dataclass(slots=True, frozen=True)
class KeyEnvelope:
    """A session key, optionally wrapped with a key-encryption key."""

    aes_key: bytes
    kek_label: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {"KEKLabel": self.kek_label, "AESKey": self.aes_key.hex()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyEnvelope":
        return cls(aes_key=bytes.fromhex(str(data.get("AESKey") or "")), kek_label=str(data.get("KEKLabel") or ""))
