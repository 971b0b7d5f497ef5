from __future__ import annotations

import pytest

from lorawan_as.services.lorawan.enums import ErrorKind
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.fcnt import MAX_FCNT, check_uplink_fcnt, next_fcnt, reconstruct_fcnt


def test_rollover_sequence_is_reconstructed():
    previous = 65530
    seen = []
    for on_air in (65534, 65535, 0, 1):
        previous = check_uplink_fcnt(previous, on_air)
        seen.append(previous)
    assert seen == [65534, 65535, 65536, 65537]


def test_reconstruct_keeps_full_counters_and_first_frame():
    assert reconstruct_fcnt(None, 12) == 12
    assert reconstruct_fcnt(10, 70000) == 70000
    assert reconstruct_fcnt(131071, 5) == 131077
    assert reconstruct_fcnt(65540, 65530) == 65530


def test_older_counter_is_a_replay():
    with pytest.raises(LoRaWANError) as excinfo:
        check_uplink_fcnt(100, 99)
    assert excinfo.value.kind is ErrorKind.FCNT_REPLAY
    assert excinfo.value.is_security_failure


def test_repeated_counter_is_a_duplicate():
    with pytest.raises(LoRaWANError) as excinfo:
        check_uplink_fcnt(100, 100)
    assert excinfo.value.kind is ErrorKind.DUPLICATE_FRAME


def test_skip_check_accepts_older_counter():
    assert check_uplink_fcnt(100, 99, skip_check=True) == 99
    assert check_uplink_fcnt(None, 0) == 0


def test_next_fcnt_exhaustion():
    assert next_fcnt(12) == 13
    assert next_fcnt(MAX_FCNT - 1) == MAX_FCNT
    with pytest.raises(LoRaWANError) as excinfo:
        next_fcnt(MAX_FCNT)
    assert excinfo.value.kind is ErrorKind.COUNTER_EXHAUSTED
