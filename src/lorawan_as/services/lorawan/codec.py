"""Application payload codecs.

The Cayenne LPP codec is implemented natively; ``custom_js`` applications run
their own decoder and encoder scripts in an embedded QuickJS engine.
"""
from __future__ import annotations

import json
import struct
from typing import Any, Callable, Mapping

import quickjs

from .enums import ErrorKind, PayloadCodec
from .errors import LoRaWANError

__all__ = ["CayenneLPP", "DEFAULT_JS_TIME_LIMIT", "JavaScriptCodec", "decode_payload", "encode_payload"]

DEFAULT_JS_TIME_LIMIT = 0.01


def _i24(data: bytes) -> int:
    return int.from_bytes(data, "big", signed=True)


def _pack_i24(value: int) -> bytes:
    return int(value).to_bytes(3, "big", signed=True)


class CayenneLPP:
    """Cayenne Low Power Payload, big-endian channel/type/value records."""

    # type id -> (object key, size, decode, encode)
    _TYPES: Mapping[int, tuple[str, int, Callable[[bytes], Any], Callable[[Any], bytes]]] = {
        0: ("digitalInput", 1, lambda b: b[0], lambda v: struct.pack(">B", int(v))),
        1: ("digitalOutput", 1, lambda b: b[0], lambda v: struct.pack(">B", int(v))),
        2: (
            "analogInput",
            2,
            lambda b: round(struct.unpack(">h", b)[0] / 100, 2),
            lambda v: struct.pack(">h", round(float(v) * 100)),
        ),
        3: (
            "analogOutput",
            2,
            lambda b: round(struct.unpack(">h", b)[0] / 100, 2),
            lambda v: struct.pack(">h", round(float(v) * 100)),
        ),
        101: ("illuminanceSensor", 2, lambda b: struct.unpack(">H", b)[0], lambda v: struct.pack(">H", int(v))),
        102: ("presenceSensor", 1, lambda b: b[0], lambda v: struct.pack(">B", int(v))),
        103: (
            "temperatureSensor",
            2,
            lambda b: round(struct.unpack(">h", b)[0] / 10, 1),
            lambda v: struct.pack(">h", round(float(v) * 10)),
        ),
        104: ("humiditySensor", 1, lambda b: b[0] / 2, lambda v: struct.pack(">B", round(float(v) * 2))),
        113: (
            "accelerometer",
            6,
            lambda b: dict(zip("xyz", (round(c / 1000, 3) for c in struct.unpack(">hhh", b)))),
            lambda v: struct.pack(">hhh", *(round(float(v[axis]) * 1000) for axis in "xyz")),
        ),
        115: (
            "barometer",
            2,
            lambda b: round(struct.unpack(">H", b)[0] / 10, 1),
            lambda v: struct.pack(">H", round(float(v) * 10)),
        ),
        134: (
            "gyrometer",
            6,
            lambda b: dict(zip("xyz", (round(c / 100, 2) for c in struct.unpack(">hhh", b)))),
            lambda v: struct.pack(">hhh", *(round(float(v[axis]) * 100) for axis in "xyz")),
        ),
        136: (
            "gpsLocation",
            9,
            lambda b: {
                "latitude": round(_i24(b[0:3]) / 10000, 4),
                "longitude": round(_i24(b[3:6]) / 10000, 4),
                "altitude": round(_i24(b[6:9]) / 100, 2),
            },
            lambda v: _pack_i24(round(float(v["latitude"]) * 10000))
            + _pack_i24(round(float(v["longitude"]) * 10000))
            + _pack_i24(round(float(v["altitude"]) * 100)),
        ),
    }

    @classmethod
    def decode(cls, data: bytes) -> dict[str, dict[int, Any]]:
        out: dict[str, dict[int, Any]] = {}
        view = bytes(data)
        pos = 0
        while pos < len(view):
            if pos + 2 > len(view):
                raise ValueError("truncated Cayenne LPP record header")
            channel, type_id = view[pos], view[pos + 1]
            spec = cls._TYPES.get(type_id)
            if spec is None:
                raise ValueError(f"invalid Cayenne LPP data type: {type_id}")
            name, size, decode, _ = spec
            pos += 2
            if pos + size > len(view):
                raise ValueError(f"truncated Cayenne LPP value for type {type_id}")
            out.setdefault(name, {})[channel] = decode(view[pos : pos + size])
            pos += size
        return out

    @classmethod
    def encode(cls, obj: Mapping[str, Mapping[Any, Any]]) -> bytes:
        by_name = {spec[0]: (type_id, spec) for type_id, spec in cls._TYPES.items()}
        out = bytearray()
        for name in sorted(obj, key=lambda n: by_name[n][0] if n in by_name else -1):
            if name not in by_name:
                raise ValueError(f"unknown Cayenne LPP field: {name}")
            type_id, (_, _, _, encode) = by_name[name]
            channels = obj[name]
            for channel in sorted(channels, key=int):
                out += bytes([int(channel), type_id])
                out += encode(channels[channel])
        return bytes(out)


class JavaScriptCodec:
    """Application scripts defining ``Decode(fPort, bytes, variables)`` and
    ``Encode(fPort, obj, variables)``.

    Every call runs in a fresh QuickJS context with a CPU time limit, so a
    script can neither keep state between frames nor stall the server.
    Arguments and results cross the engine boundary as JSON.
    """

    memory_limit = 16 * 1024 * 1024

    def __init__(self, script: str, *, time_limit: float = DEFAULT_JS_TIME_LIMIT) -> None:
        self.script = script
        self.time_limit = time_limit

    def _run(self, call: str) -> Any:
        context = quickjs.Context()
        context.set_memory_limit(self.memory_limit)
        context.set_time_limit(self.time_limit)
        context.eval(self.script)
        result = context.eval(f"JSON.stringify({call})")
        if result is None:
            raise ValueError("script function returned no value")
        return json.loads(result)

    def decode(self, f_port: int, data: bytes, variables: Mapping[str, str] | None = None) -> Any:
        args = f"{int(f_port)}, {json.dumps(list(bytes(data)))}, {json.dumps(dict(variables or {}))}"
        return self._run(f"Decode({args})")

    def encode(self, f_port: int, obj: Any, variables: Mapping[str, str] | None = None) -> bytes:
        args = f"{int(f_port)}, {json.dumps(obj)}, {json.dumps(dict(variables or {}))}"
        out = self._run(f"Encode({args})")
        if not isinstance(out, list):
            raise ValueError("Encode must return an array of bytes")
        for value in out:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
                raise ValueError(f"array value must be an integer, got: {value!r}")
            if not 0 <= value <= 255:
                raise ValueError(f"array value must be in byte range (0 - 255), got: {value}")
        return bytes(int(value) for value in out)


def decode_payload(
    codec: PayloadCodec,
    f_port: int,
    data: bytes,
    *,
    script: str = "",
    variables: Mapping[str, str] | None = None,
    time_limit: float = DEFAULT_JS_TIME_LIMIT,
) -> Any:
    """Decode ``data`` into an object; ``None`` when the application has no codec."""

    if codec is PayloadCodec.NONE or f_port == 0:
        return None
    if codec is PayloadCodec.CUSTOM_JS:
        if not script.strip():
            raise LoRaWANError(ErrorKind.CODEC_FAILED, "application has no payload decoder script")
        try:
            return JavaScriptCodec(script, time_limit=time_limit).decode(f_port, data, variables)
        except (quickjs.JSException, ValueError, TypeError) as exc:
            raise LoRaWANError(ErrorKind.CODEC_FAILED, f"decode payload error: {exc}") from exc
    try:
        return CayenneLPP.decode(data)
    except (ValueError, struct.error) as exc:
        raise LoRaWANError(ErrorKind.CODEC_FAILED, f"decode payload error: {exc}") from exc


def encode_payload(
    codec: PayloadCodec,
    f_port: int,
    obj: Any,
    *,
    script: str = "",
    variables: Mapping[str, str] | None = None,
    time_limit: float = DEFAULT_JS_TIME_LIMIT,
) -> bytes:
    """Encode a structured object into bytes with the application's codec."""

    if codec is PayloadCodec.NONE:
        raise LoRaWANError(ErrorKind.CODEC_FAILED, "application has no payload codec configured")
    if codec is PayloadCodec.CUSTOM_JS:
        if not script.strip():
            raise LoRaWANError(ErrorKind.CODEC_FAILED, "application has no payload encoder script")
        try:
            return JavaScriptCodec(script, time_limit=time_limit).encode(f_port, obj, variables)
        except (quickjs.JSException, ValueError, TypeError) as exc:
            raise LoRaWANError(ErrorKind.CODEC_FAILED, f"encode payload error: {exc}") from exc
    if not isinstance(obj, Mapping):
        raise LoRaWANError(ErrorKind.CODEC_FAILED, "Cayenne LPP object must be a mapping")
    try:
        return CayenneLPP.encode(obj)
    except (ValueError, KeyError, TypeError, struct.error) as exc:
        raise LoRaWANError(ErrorKind.CODEC_FAILED, f"encode payload error: {exc}") from exc
