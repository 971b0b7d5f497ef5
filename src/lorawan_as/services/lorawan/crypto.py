"""AES-128 primitives for the LoRaWAN join and frame pipelines.

All operations are AES-ECB over fixed 16-byte blocks or AES-CMAC; nothing here
uses a random IV.  Identifiers are accepted in display byte order (see
:mod:`.ids`) and reversed to the little-endian wire order where the block
layouts require it.
"""
from __future__ import annotations

from dataclasses import dataclass
import hmac
import struct

from cryptography.hazmat.primitives import cmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .ids import AES128Key

__all__ = [
    "UPLINK",
    "DOWNLINK",
    "SessionKeys",
    "aes_encrypt",
    "aes_decrypt",
    "compute_cmac",
    "compute_mic",
    "mic_equal",
    "js_int_key",
    "js_enc_key",
    "derive_session_keys_10",
    "derive_session_keys_11",
    "encrypt_frm_payload",
    "encrypt_join_accept",
    "decrypt_join_accept",
]

UPLINK = 0
DOWNLINK = 1

_BLOCK = 16


@dataclass(slots=True, frozen=True)
class SessionKeys:
    """Keys produced by a join.  LoRaWAN 1.0 collapses the three network keys."""

    f_nwk_s_int_key: AES128Key
    s_nwk_s_int_key: AES128Key
    nwk_s_enc_key: AES128Key
    app_s_key: AES128Key

    @property
    def nwk_s_key(self) -> AES128Key:
        return self.f_nwk_s_int_key


def _ecb(key: bytes) -> Cipher:
    if len(key) != _BLOCK:
        raise ValueError("AES-128 key must be 16 bytes")
    return Cipher(algorithms.AES(bytes(key)), modes.ECB())


def aes_encrypt(key: bytes, data: bytes) -> bytes:
    if len(data) % _BLOCK:
        raise ValueError("data length must be a multiple of 16")
    encryptor = _ecb(key).encryptor()
    return encryptor.update(bytes(data)) + encryptor.finalize()


def aes_decrypt(key: bytes, data: bytes) -> bytes:
    if len(data) % _BLOCK:
        raise ValueError("data length must be a multiple of 16")
    decryptor = _ecb(key).decryptor()
    return decryptor.update(bytes(data)) + decryptor.finalize()


def compute_cmac(key: bytes, data: bytes) -> bytes:
    mac = cmac.CMAC(algorithms.AES(bytes(key)))
    mac.update(bytes(data))
    return mac.finalize()


def compute_mic(key: bytes, data: bytes) -> bytes:
    """Return the 4-byte LoRaWAN MIC (truncated CMAC) of ``data``."""

    return compute_cmac(key, data)[:4]


def mic_equal(expected: bytes, received: bytes) -> bool:
    return hmac.compare_digest(bytes(expected), bytes(received))


def _le(value: bytes) -> bytes:
    return bytes(reversed(value))


def _derive(key: bytes, typ: int, body: bytes) -> AES128Key:
    block = bytes([typ]) + body
    block = block + bytes(_BLOCK - len(block))
    return AES128Key(aes_encrypt(key, block))


def js_int_key(nwk_key: bytes, dev_eui: bytes) -> AES128Key:
    return _derive(nwk_key, 0x06, _le(dev_eui))


def js_enc_key(nwk_key: bytes, dev_eui: bytes) -> AES128Key:
    return _derive(nwk_key, 0x05, _le(dev_eui))


def _join_nonce_bytes(join_nonce: int) -> bytes:
    if not 0 <= join_nonce < 1 << 24:
        raise ValueError("join-nonce must fit in 24 bits")
    return struct.pack("<I", join_nonce)[:3]


def derive_session_keys_10(
    nwk_key: bytes,
    *,
    join_nonce: int,
    net_id: bytes,
    dev_nonce: int,
) -> SessionKeys:
    """LoRaWAN 1.0.x: ``NwkSKey`` (0x01) and ``AppSKey`` (0x02) under ``NwkKey``."""

    body = _join_nonce_bytes(join_nonce) + _le(net_id) + struct.pack("<H", dev_nonce)
    nwk_s_key = _derive(nwk_key, 0x01, body)
    app_s_key = _derive(nwk_key, 0x02, body)
    return SessionKeys(
        f_nwk_s_int_key=nwk_s_key,
        s_nwk_s_int_key=nwk_s_key,
        nwk_s_enc_key=nwk_s_key,
        app_s_key=app_s_key,
    )


def derive_session_keys_11(
    nwk_key: bytes,
    app_key: bytes,
    *,
    join_nonce: int,
    join_eui: bytes,
    dev_nonce: int,
) -> SessionKeys:
    """LoRaWAN 1.1: four keys, network ones under ``NwkKey`` and AppSKey under ``AppKey``.

    For rejoin requests ``dev_nonce`` carries the rejoin counter instead.
    """

    body = _join_nonce_bytes(join_nonce) + _le(join_eui) + struct.pack("<H", dev_nonce)
    return SessionKeys(
        f_nwk_s_int_key=_derive(nwk_key, 0x01, body),
        app_s_key=_derive(app_key, 0x02, body),
        s_nwk_s_int_key=_derive(nwk_key, 0x03, body),
        nwk_s_enc_key=_derive(nwk_key, 0x04, body),
    )


def encrypt_frm_payload(key: bytes, dev_addr: bytes, f_cnt: int, direction: int, payload: bytes) -> bytes:
    """Apply the FRMPayload keystream; the same call encrypts and decrypts.

    ``Ai = AES(K, 0x01 | 0x00000000 | Dir | DevAddr | FCnt | 0x00 | i)``.
    """

    if direction not in (UPLINK, DOWNLINK):
        raise ValueError("direction must be 0 (uplink) or 1 (downlink)")
    data = bytes(payload)
    if not data:
        return b""
    prefix = b"\x01" + bytes(4) + bytes([direction]) + _le(dev_addr) + struct.pack("<I", f_cnt & 0xFFFFFFFF) + b"\x00"
    blocks = (len(data) + _BLOCK - 1) // _BLOCK
    keystream = aes_encrypt(key, b"".join(prefix + bytes([i]) for i in range(1, blocks + 1)))
    return bytes(a ^ b for a, b in zip(data, keystream))


def encrypt_join_accept(key: bytes, payload_and_mic: bytes) -> bytes:
    """Encrypt a join-accept body (without MHDR).

    Devices run AES *encrypt* to recover the accept, so the server applies the
    inverse operation.
    """

    return aes_decrypt(key, payload_and_mic)


def decrypt_join_accept(key: bytes, encrypted: bytes) -> bytes:
    return aes_encrypt(key, encrypted)
