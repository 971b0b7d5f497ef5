from __future__ import annotations

import pytest

from lorawan_as.services.lorawan.enums import ErrorKind
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.kek import KEKStore
from lorawan_as.services.lorawan.schemas import KeyEnvelope

KEY = bytes.fromhex("00112233445566778899aabbccddeeff")


@pytest.fixture()
def store() -> KEKStore:
    return KEKStore.from_config(
        {"010203": "000102030405060708090a0b0c0d0e0f", "as-label": "000102030405060708090a0b0c0d0e0f"},
        "as-label",
    )


def test_network_key_wrapped_for_known_net_id(store):
    envelope = store.network_key_envelope(bytes.fromhex("010203"), KEY)
    # RFC 3394 section 4.1
    assert envelope == KeyEnvelope(
        aes_key=bytes.fromhex("1fa68b0a8112b447aef34bd8fb5a7b829d3e862371d2cfe5"),
        kek_label="010203",
    )
    assert store.unwrap(envelope) == KEY


def test_network_key_in_clear_for_unknown_net_id(store):
    envelope = store.network_key_envelope(bytes.fromhex("000013"), KEY)
    assert envelope == KeyEnvelope(aes_key=KEY)
    assert envelope.as_dict() == {"KEKLabel": "", "AESKey": KEY.hex()}
    assert store.unwrap(envelope) == KEY


def test_application_key_envelope(store):
    envelope = store.application_key_envelope(KEY)
    assert envelope.kek_label == "as-label"
    assert store.unwrap(KeyEnvelope.from_dict(envelope.as_dict())) == KEY

    assert KEKStore().application_key_envelope(KEY) == KeyEnvelope(aes_key=KEY)


def test_missing_application_label_is_internal_error():
    store = KEKStore.from_config({}, "missing")
    with pytest.raises(LoRaWANError) as excinfo:
        store.application_key_envelope(KEY)
    assert excinfo.value.kind is ErrorKind.INTERNAL


def test_unwrap_failures(store):
    with pytest.raises(LoRaWANError) as excinfo:
        store.unwrap(KeyEnvelope(aes_key=bytes(24), kek_label="unknown"))
    assert excinfo.value.kind is ErrorKind.INTERNAL

    with pytest.raises(LoRaWANError) as excinfo:
        store.unwrap(KeyEnvelope(aes_key=bytes(24), kek_label="010203"))
    assert excinfo.value.kind is ErrorKind.INTERNAL

    with pytest.raises(LoRaWANError) as excinfo:
        store.unwrap(KeyEnvelope(aes_key=b"\x01\x02"))
    assert excinfo.value.kind is ErrorKind.INVALID_ARGUMENT


def test_invalid_kek_hex():
    with pytest.raises(ValueError):
        KEKStore.from_config({"label": "zz"})
