from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping
import os
import yaml

__all__ = [
    "GeneralSettings",
    "StorageSettings",
    "NetworkServerSettings",
    "KEKEntry",
    "KEKSettings",
    "JoinServerSettings",
    "EventLogSettings",
    "LockSettings",
    "CodecSettings",
    "ApiSettings",
    "AppServerConfig",
    "load_config",
    "save_config",
]

ENV_CONFIG = "LORAWAN_AS_CONFIG"
ENV_DB = "LORAWAN_AS_DB"
ENV_TOKEN = "LORAWAN_AS_TOKEN"


@dataclass
class GeneralSettings:
    log_level: str = "INFO"
    log_json: bool = True


@dataclass
class StorageSettings:
    db_path: str = "lorawan-as.sqlite"


@dataclass
class NetworkServerSettings:
    # seconds
    timeout: float = 1.0
    stream_timeout: float = 5.0
    idle_timeout: float = 300.0


@dataclass
class KEKEntry:
    label: str
    kek: str


@dataclass
class KEKSettings:
    as_kek_label: str = ""
    set: list[KEKEntry] = field(default_factory=list)

    def as_mapping(self) -> dict[str, str]:
        return {entry.label: entry.kek for entry in self.set}


@dataclass
class JoinServerSettings:
    bind: str = "0.0.0.0:8003"
    # PEM file paths; client certificates are required when ca_cert is set
    ca_cert: str = ""
    tls_cert: str = ""
    tls_key: str = ""
    kek: KEKSettings = field(default_factory=KEKSettings)
    dev_nonce_window: int = 4096
    strict_dev_nonce: bool = False


@dataclass
class EventLogSettings:
    buffer_size: int = 100
    subscriber_queue_size: int = 64


@dataclass
class LockSettings:
    idle_seconds: float = 300.0


@dataclass
class CodecSettings:
    # seconds of CPU time a JavaScript codec call may use
    js_max_execution_time: float = 0.01


@dataclass
class ApiSettings:
    bind: str = "127.0.0.1:8080"
    operator_token: str | None = None


@dataclass
class AppServerConfig:
    general: GeneralSettings = field(default_factory=GeneralSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    network_server: NetworkServerSettings = field(default_factory=NetworkServerSettings)
    join_server: JoinServerSettings = field(default_factory=JoinServerSettings)
    event_log: EventLogSettings = field(default_factory=EventLogSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    codec: CodecSettings = field(default_factory=CodecSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "AppServerConfig":
        return _build(cls, data or {})


def _build(kind: type, data: Mapping[str, Any]) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"section for {kind.__name__} must be a mapping")
    known = {f.name: f for f in fields(kind)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"unknown {kind.__name__} option(s): {', '.join(sorted(unknown))}")
    values: dict[str, Any] = {}
    defaults = kind() if kind is not KEKEntry else None
    for name, value in data.items():
        current = getattr(defaults, name, None)
        if kind is KEKSettings and name == "set":
            values[name] = [_build(KEKEntry, item) for item in (value or [])]
        elif is_dataclass(current):
            values[name] = _build(type(current), value or {})
        else:
            values[name] = value
    return kind(**values)


def _config_path(path: str | Path | None) -> Path | None:
    if path is not None:
        return Path(path)
    env = os.environ.get(ENV_CONFIG)
    return Path(env) if env else None


def load_config(path: str | Path | None = None) -> AppServerConfig:
    """Read the YAML configuration; a missing file yields the defaults.

    ``LORAWAN_AS_DB`` and ``LORAWAN_AS_TOKEN`` override the corresponding
    file values.
    """

    cfg_path = _config_path(path)
    data: dict[str, Any] = {}
    if cfg_path is not None and cfg_path.exists():
        with cfg_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    conf = AppServerConfig.from_dict(data)
    db_path = os.environ.get(ENV_DB)
    if db_path:
        conf.storage.db_path = db_path
    token = os.environ.get(ENV_TOKEN)
    if token:
        conf.api.operator_token = token
    return conf


def save_config(conf: AppServerConfig, path: str | Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(conf.to_dict(), fh, allow_unicode=True, sort_keys=False)
    return target
