"""Error type shared by every core operation."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
import threading
from typing import Mapping

from .enums import ErrorKind
from .ids import generate_event_id
from .schemas import ErrorEnvelope

__all__ = ["LoRaWANError", "ErrorCounters", "SECURITY_KINDS"]


_STATUS_CODES: Mapping[ErrorKind, int] = {
    ErrorKind.UNKNOWN_DEVICE: 404,
    ErrorKind.NO_ACTIVATION: 404,
    ErrorKind.NO_DEVICE_KEYS: 404,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DEV_NONCE_REUSED: 409,
    ErrorKind.JOIN_NONCE_EXHAUSTED: 409,
    ErrorKind.MIC_FAILED: 409,
    ErrorKind.FCNT_REPLAY: 409,
    ErrorKind.DUPLICATE_FRAME: 409,
    ErrorKind.COUNTER_EXHAUSTED: 409,
    ErrorKind.SERVICE_PROFILE_MISMATCH: 409,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.CODEC_FAILED: 422,
    ErrorKind.INVALID_ARGUMENT: 422,
    ErrorKind.NOT_SUPPORTED: 422,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NETWORK_SERVER_UNAVAILABLE: 503,
    ErrorKind.INTERNAL: 500,
}

SECURITY_KINDS = frozenset(
    {
        ErrorKind.MIC_FAILED,
        ErrorKind.DEV_NONCE_REUSED,
        ErrorKind.JOIN_NONCE_EXHAUSTED,
        ErrorKind.FCNT_REPLAY,
        ErrorKind.DUPLICATE_FRAME,
        ErrorKind.COUNTER_EXHAUSTED,
    }
)


class LoRaWANError(RuntimeError):
    """Exception raised when a core flow fails.

    ``kind`` is the taxonomy value callers branch on; the message is for humans.
    """

    def __init__(self, kind: ErrorKind, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.hint = hint

    @property
    def status_code(self) -> int:
        return _STATUS_CODES.get(self.kind, 500)

    @property
    def is_security_failure(self) -> bool:
        return self.kind in SECURITY_KINDS

    @property
    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(
            code=self.kind.value,
            message=self.message,
            hint=self.hint,
            event_id=generate_event_id(),
            server_time_utc=datetime.now(tz=timezone.utc),
        )

    def __repr__(self) -> str:
        return f"LoRaWANError({self.kind.value!r}, {self.message!r})"


class ErrorCounters:
    """Thread-safe tally of terminal failures, surfaced to operators."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    def record(self, error: LoRaWANError) -> None:
        with self._lock:
            self._counts[error.kind.value] += 1

    def get(self, kind: ErrorKind) -> int:
        with self._lock:
            return self._counts[kind.value]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)
