"""Frame-counter bookkeeping for activations and multicast groups."""
from __future__ import annotations

from .enums import ErrorKind
from .errors import LoRaWANError

__all__ = ["MAX_FCNT", "reconstruct_fcnt", "check_uplink_fcnt", "next_fcnt"]

MAX_FCNT = 0xFFFFFFFF
_ROLLOVER = 1 << 16


def reconstruct_fcnt(previous: int | None, observed: int) -> int:
    """Return the 32-bit counter nearest ``previous`` whose low 16 bits match ``observed``.

    Counters the network-server already reports in full (above 16 bits) are
    returned unchanged.
    """

    if observed > 0xFFFF or previous is None:
        return observed
    base = previous & ~0xFFFF
    candidates = [base - _ROLLOVER + observed, base + observed, base + _ROLLOVER + observed]
    candidates = [c for c in candidates if 0 <= c <= MAX_FCNT]
    return min(candidates, key=lambda c: (abs(c - previous), -c))


def check_uplink_fcnt(previous: int | None, observed: int, *, skip_check: bool = False) -> int:
    """Validate an uplink counter against the highest one seen so far.

    ``previous`` is ``None`` while the activation has not received a frame.
    Raises ``FCntReplay`` for older counters and ``DuplicateFrame`` for a repeat
    of the last one, unless ``skip_check`` is set.
    """

    f_cnt = reconstruct_fcnt(previous, observed)
    if skip_check or previous is None:
        return f_cnt
    if f_cnt == previous:
        raise LoRaWANError(ErrorKind.DUPLICATE_FRAME, f"frame-counter {f_cnt} was already received")
    if f_cnt < previous:
        raise LoRaWANError(
            ErrorKind.FCNT_REPLAY,
            f"frame-counter {f_cnt} is older than the last received counter {previous}",
        )
    return f_cnt


def next_fcnt(current: int) -> int:
    """Return the counter following ``current`` or fail when it would wrap."""

    if current >= MAX_FCNT:
        raise LoRaWANError(ErrorKind.COUNTER_EXHAUSTED, "32-bit frame-counter exhausted")
    return current + 1
