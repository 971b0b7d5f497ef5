"""SQLite implementations of the repository ports."""
from __future__ import annotations

from datetime import datetime, timezone
import json
import sqlite3
from typing import Any, Mapping

from ..enums import ErrorKind, JoinRequestType, MacVersion, MulticastGroupType, PayloadCodec
from ..errors import LoRaWANError
from ..ids import (
    AES128Key,
    ApplicationId,
    DevAddr,
    EUI64,
    MulticastGroupId,
    NetworkServerId,
    ProfileId,
)
from ..models import (
    Application,
    Device,
    DeviceActivation,
    DeviceKeys,
    DeviceProfile,
    DeviceQueueMapping,
    Location,
    MulticastGroup,
    NetworkServer,
    ServiceProfile,
)
from .sqlite import SQLitePersistence

__all__ = [
    "SQLiteInventoryRepo",
    "SQLiteDeviceRepo",
    "SQLiteActivationRepo",
    "SQLiteKeysRepo",
    "SQLiteQueueRepo",
    "SQLiteMulticastRepo",
]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _ts(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _blob(value: bytes | None) -> bytes | None:
    return None if value is None else bytes(value)


class _Repo:
    def __init__(self, persistence: SQLitePersistence) -> None:
        self._db = persistence

    def _one(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Row | None:
        with self._db.lock:
            return self._db.connection.execute(sql, params).fetchone()

    def _all(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._db.lock:
            return self._db.connection.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple[Any, ...], *, conflict: str | None = None) -> sqlite3.Cursor:
        try:
            with self._db.transaction() as conn:
                return conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            if conflict is None or "FOREIGN KEY" in str(exc):
                raise LoRaWANError(ErrorKind.INVALID_ARGUMENT, f"constraint violation: {exc}") from exc
            raise LoRaWANError(ErrorKind.ALREADY_EXISTS, conflict) from exc


class SQLiteInventoryRepo(_Repo):
    """Network-servers, profiles and applications the core resolves devices through."""

    def create_network_server(self, network_server: NetworkServer) -> None:
        self._write(
            "INSERT INTO network_servers(id, name, server, ca_cert, tls_cert, tls_key) VALUES(?, ?, ?, ?, ?, ?)",
            (
                network_server.id,
                network_server.name,
                network_server.server,
                network_server.ca_cert,
                network_server.tls_cert,
                network_server.tls_key,
            ),
            conflict="network-server already exists",
        )

    def get_network_server(self, network_server_id: str) -> NetworkServer:
        row = self._one("SELECT * FROM network_servers WHERE id = ?", (network_server_id,))
        if row is None:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "network-server does not exist")
        return NetworkServer(
            id=NetworkServerId(row["id"]),
            name=row["name"],
            server=row["server"],
            ca_cert=row["ca_cert"],
            tls_cert=row["tls_cert"],
            tls_key=row["tls_key"],
        )

    def create_service_profile(self, profile: ServiceProfile) -> None:
        self._write(
            "INSERT INTO service_profiles(id, name, network_server_id) VALUES(?, ?, ?)",
            (profile.id, profile.name, profile.network_server_id),
            conflict="service-profile already exists",
        )

    def get_service_profile(self, profile_id: str) -> ServiceProfile:
        row = self._one("SELECT * FROM service_profiles WHERE id = ?", (profile_id,))
        if row is None:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "service-profile does not exist")
        return ServiceProfile(
            id=ProfileId(row["id"]),
            name=row["name"],
            network_server_id=NetworkServerId(row["network_server_id"]),
        )

    def create_device_profile(self, profile: DeviceProfile) -> None:
        self._write(
            "INSERT INTO device_profiles(id, name, network_server_id, mac_version, supports_join, "
            "supports_class_b, supports_class_c) VALUES(?, ?, ?, ?, ?, ?, ?)",
            (
                profile.id,
                profile.name,
                profile.network_server_id,
                profile.mac_version.value,
                int(profile.supports_join),
                int(profile.supports_class_b),
                int(profile.supports_class_c),
            ),
            conflict="device-profile already exists",
        )

    def get_device_profile(self, profile_id: str) -> DeviceProfile:
        row = self._one("SELECT * FROM device_profiles WHERE id = ?", (profile_id,))
        if row is None:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "device-profile does not exist")
        return DeviceProfile(
            id=ProfileId(row["id"]),
            name=row["name"],
            network_server_id=NetworkServerId(row["network_server_id"]),
            mac_version=MacVersion.parse(row["mac_version"]),
            supports_join=bool(row["supports_join"]),
            supports_class_b=bool(row["supports_class_b"]),
            supports_class_c=bool(row["supports_class_c"]),
        )

    def create_application(self, application: Application) -> None:
        self._write(
            "INSERT INTO applications(id, name, service_profile_id, payload_codec, payload_encoder_script, "
            "payload_decoder_script) VALUES(?, ?, ?, ?, ?, ?)",
            (
                application.id,
                application.name,
                application.service_profile_id,
                application.payload_codec.value,
                application.payload_encoder_script,
                application.payload_decoder_script,
            ),
            conflict="application already exists",
        )

    def get_application(self, application_id: str) -> Application:
        row = self._one("SELECT * FROM applications WHERE id = ?", (application_id,))
        if row is None:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "application does not exist")
        return Application(
            id=ApplicationId(row["id"]),
            name=row["name"],
            service_profile_id=ProfileId(row["service_profile_id"]),
            payload_codec=PayloadCodec(row["payload_codec"]),
            payload_encoder_script=row["payload_encoder_script"],
            payload_decoder_script=row["payload_decoder_script"],
        )


class SQLiteDeviceRepo(_Repo):
    def _row_to_device(self, row: Mapping[str, Any]) -> Device:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Location(
                latitude=row["latitude"],
                longitude=row["longitude"],
                altitude=row["altitude"] or 0.0,
            )
        return Device(
            dev_eui=EUI64(bytes(row["dev_eui"])),
            application_id=ApplicationId(row["application_id"]),
            device_profile_id=ProfileId(row["device_profile_id"]),
            name=row["name"],
            description=row["description"],
            skip_fcnt_check=bool(row["skip_fcnt_check"]),
            last_seen_at=_parse_ts(row["last_seen_at"]),
            device_status_battery=row["device_status_battery"],
            device_status_margin=row["device_status_margin"],
            device_status_external_power=bool(row["device_status_external_power"]),
            location=location,
            variables=json.loads(row["variables_json"] or "{}"),
            tags=json.loads(row["tags_json"] or "{}"),
            created_at=_parse_ts(row["created_at"]) or _utcnow(),
            updated_at=_parse_ts(row["updated_at"]) or _utcnow(),
        )

    def load(self, dev_eui: bytes) -> Device:
        row = self._one("SELECT * FROM devices WHERE dev_eui = ?", (bytes(dev_eui),))
        if row is None:
            raise LoRaWANError(ErrorKind.UNKNOWN_DEVICE, f"device {bytes(dev_eui).hex()} does not exist")
        return self._row_to_device(row)

    def create(self, device: Device) -> None:
        location = device.location
        self._write(
            "INSERT INTO devices(dev_eui, application_id, device_profile_id, name, description, skip_fcnt_check, "
            "last_seen_at, device_status_battery, device_status_margin, device_status_external_power, latitude, "
            "longitude, altitude, variables_json, tags_json, created_at, updated_at) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                bytes(device.dev_eui),
                device.application_id,
                device.device_profile_id,
                device.name,
                device.description,
                int(device.skip_fcnt_check),
                _ts(device.last_seen_at),
                device.device_status_battery,
                device.device_status_margin,
                int(device.device_status_external_power),
                location.latitude if location else None,
                location.longitude if location else None,
                location.altitude if location else None,
                json.dumps(device.variables, sort_keys=True),
                json.dumps(device.tags, sort_keys=True),
                _ts(device.created_at),
                _ts(device.updated_at),
            ),
            conflict="device already exists",
        )

    def update(self, device: Device) -> None:
        device.updated_at = _utcnow()
        location = device.location
        cursor = self._write(
            "UPDATE devices SET device_profile_id = ?, name = ?, description = ?, skip_fcnt_check = ?, "
            "last_seen_at = ?, device_status_battery = ?, device_status_margin = ?, "
            "device_status_external_power = ?, latitude = ?, longitude = ?, altitude = ?, variables_json = ?, "
            "tags_json = ?, updated_at = ? WHERE dev_eui = ?",
            (
                device.device_profile_id,
                device.name,
                device.description,
                int(device.skip_fcnt_check),
                _ts(device.last_seen_at),
                device.device_status_battery,
                device.device_status_margin,
                int(device.device_status_external_power),
                location.latitude if location else None,
                location.longitude if location else None,
                location.altitude if location else None,
                json.dumps(device.variables, sort_keys=True),
                json.dumps(device.tags, sort_keys=True),
                _ts(device.updated_at),
                bytes(device.dev_eui),
            ),
        )
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.UNKNOWN_DEVICE, f"device {bytes(device.dev_eui).hex()} does not exist")

    def update_status(self, device: Device) -> None:
        self._write(
            "UPDATE devices SET last_seen_at = ?, device_status_battery = ?, device_status_margin = ?, "
            "device_status_external_power = ?, latitude = ?, longitude = ?, altitude = ?, updated_at = ? "
            "WHERE dev_eui = ?",
            (
                _ts(device.last_seen_at),
                device.device_status_battery,
                device.device_status_margin,
                int(device.device_status_external_power),
                device.location.latitude if device.location else None,
                device.location.longitude if device.location else None,
                device.location.altitude if device.location else None,
                _ts(device.updated_at),
                bytes(device.dev_eui),
            ),
        )

    def delete(self, dev_eui: bytes) -> None:
        cursor = self._write("DELETE FROM devices WHERE dev_eui = ?", (bytes(dev_eui),))
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.UNKNOWN_DEVICE, f"device {bytes(dev_eui).hex()} does not exist")

    def list(self, *, application_id: str | None = None) -> list[Device]:
        if application_id is None:
            rows = self._all("SELECT * FROM devices ORDER BY name")
        else:
            rows = self._all("SELECT * FROM devices WHERE application_id = ? ORDER BY name", (application_id,))
        return [self._row_to_device(row) for row in rows]


class SQLiteActivationRepo(_Repo):
    """Activations are append-only; the highest ``id`` per device is authoritative."""

    def _row_to_activation(self, row: Mapping[str, Any]) -> DeviceActivation:
        join_req_type = row["join_req_type"]
        return DeviceActivation(
            id=row["id"],
            dev_eui=EUI64(bytes(row["dev_eui"])),
            dev_addr=DevAddr(bytes(row["dev_addr"])),
            app_s_key=AES128Key(bytes(row["app_s_key"])),
            nwk_s_enc_key=AES128Key(bytes(row["nwk_s_enc_key"])),
            s_nwk_s_int_key=AES128Key(bytes(row["s_nwk_s_int_key"])),
            f_nwk_s_int_key=AES128Key(bytes(row["f_nwk_s_int_key"])),
            join_req_type=JoinRequestType(join_req_type) if join_req_type is not None else None,
            join_eui=EUI64(bytes(row["join_eui"])) if row["join_eui"] is not None else None,
            dev_nonce=row["dev_nonce"],
            join_nonce=row["join_nonce"],
            f_cnt_up=row["f_cnt_up"],
            n_f_cnt_down=row["n_f_cnt_down"],
            a_f_cnt_down=row["a_f_cnt_down"],
            created_at=_parse_ts(row["created_at"]) or _utcnow(),
        )

    def latest_for(self, dev_eui: bytes) -> DeviceActivation:
        row = self._one(
            "SELECT * FROM device_activations WHERE dev_eui = ? ORDER BY id DESC LIMIT 1",
            (bytes(dev_eui),),
        )
        if row is None:
            raise LoRaWANError(ErrorKind.NO_ACTIVATION, f"device {bytes(dev_eui).hex()} is not activated")
        return self._row_to_activation(row)

    def list_for(self, dev_eui: bytes) -> list[DeviceActivation]:
        rows = self._all("SELECT * FROM device_activations WHERE dev_eui = ? ORDER BY id DESC", (bytes(dev_eui),))
        return [self._row_to_activation(row) for row in rows]

    def append(self, activation: DeviceActivation) -> DeviceActivation:
        cursor = self._write(
            "INSERT INTO device_activations(dev_eui, dev_addr, app_s_key, nwk_s_enc_key, s_nwk_s_int_key, "
            "f_nwk_s_int_key, join_req_type, join_eui, dev_nonce, join_nonce, f_cnt_up, n_f_cnt_down, "
            "a_f_cnt_down, created_at) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                bytes(activation.dev_eui),
                bytes(activation.dev_addr),
                bytes(activation.app_s_key),
                bytes(activation.nwk_s_enc_key),
                bytes(activation.s_nwk_s_int_key),
                bytes(activation.f_nwk_s_int_key),
                int(activation.join_req_type) if activation.join_req_type is not None else None,
                _blob(activation.join_eui),
                activation.dev_nonce,
                activation.join_nonce,
                activation.f_cnt_up,
                activation.n_f_cnt_down,
                activation.a_f_cnt_down,
                _ts(activation.created_at),
            ),
        )
        activation.id = cursor.lastrowid
        return activation

    def update_counters(self, activation: DeviceActivation) -> None:
        if activation.id is None:
            raise LoRaWANError(ErrorKind.INTERNAL, "activation has not been stored")
        self._write(
            "UPDATE device_activations SET f_cnt_up = ?, n_f_cnt_down = ?, a_f_cnt_down = ? WHERE id = ?",
            (activation.f_cnt_up, activation.n_f_cnt_down, activation.a_f_cnt_down, activation.id),
        )

    def delete_all_for(self, dev_eui: bytes) -> int:
        return self._write("DELETE FROM device_activations WHERE dev_eui = ?", (bytes(dev_eui),)).rowcount


class SQLiteKeysRepo(_Repo):
    def load(self, dev_eui: bytes) -> DeviceKeys:
        row = self._one("SELECT * FROM device_keys WHERE dev_eui = ?", (bytes(dev_eui),))
        if row is None:
            raise LoRaWANError(ErrorKind.NO_DEVICE_KEYS, f"device {bytes(dev_eui).hex()} has no keys")
        return DeviceKeys(
            dev_eui=EUI64(bytes(row["dev_eui"])),
            nwk_key=AES128Key(bytes(row["nwk_key"])),
            app_key=AES128Key(bytes(row["app_key"])) if row["app_key"] is not None else None,
            join_nonce=row["join_nonce"],
            created_at=_parse_ts(row["created_at"]) or _utcnow(),
            updated_at=_parse_ts(row["updated_at"]) or _utcnow(),
        )

    def create(self, keys: DeviceKeys) -> None:
        self._write(
            "INSERT INTO device_keys(dev_eui, nwk_key, app_key, join_nonce, created_at, updated_at) "
            "VALUES(?, ?, ?, ?, ?, ?)",
            (
                bytes(keys.dev_eui),
                bytes(keys.nwk_key),
                _blob(keys.app_key),
                keys.join_nonce,
                _ts(keys.created_at),
                _ts(keys.updated_at),
            ),
            conflict="device-keys already exist",
        )

    def update(self, keys: DeviceKeys) -> None:
        keys.updated_at = _utcnow()
        cursor = self._write(
            "UPDATE device_keys SET nwk_key = ?, app_key = ?, join_nonce = ?, updated_at = ? WHERE dev_eui = ?",
            (bytes(keys.nwk_key), _blob(keys.app_key), keys.join_nonce, _ts(keys.updated_at), bytes(keys.dev_eui)),
        )
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.NO_DEVICE_KEYS, f"device {bytes(keys.dev_eui).hex()} has no keys")

    def delete(self, dev_eui: bytes) -> None:
        self._write("DELETE FROM device_keys WHERE dev_eui = ?", (bytes(dev_eui),))

    def update_nonces(self, dev_eui: bytes, *, join_nonce: int) -> None:
        self._write(
            "UPDATE device_keys SET join_nonce = ?, updated_at = ? WHERE dev_eui = ?",
            (join_nonce, _ts(_utcnow()), bytes(dev_eui)),
        )

    def has_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int) -> bool:
        row = self._one(
            "SELECT 1 FROM device_dev_nonces WHERE dev_eui = ? AND join_eui = ? AND dev_nonce = ?",
            (bytes(dev_eui), bytes(join_eui), dev_nonce),
        )
        return row is not None

    def max_dev_nonce(self, dev_eui: bytes, join_eui: bytes) -> int | None:
        row = self._one(
            "SELECT MAX(dev_nonce) AS max_nonce FROM device_dev_nonces WHERE dev_eui = ? AND join_eui = ?",
            (bytes(dev_eui), bytes(join_eui)),
        )
        return None if row is None else row["max_nonce"]

    def add_dev_nonce(self, dev_eui: bytes, join_eui: bytes, dev_nonce: int, *, keep: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO device_dev_nonces(dev_eui, join_eui, dev_nonce, created_at) VALUES(?, ?, ?, ?)",
                (bytes(dev_eui), bytes(join_eui), dev_nonce, _ts(_utcnow())),
            )
            conn.execute(
                "DELETE FROM device_dev_nonces WHERE dev_eui = ? AND id NOT IN "
                "(SELECT id FROM device_dev_nonces WHERE dev_eui = ? ORDER BY id DESC LIMIT ?)",
                (bytes(dev_eui), bytes(dev_eui), keep),
            )


class SQLiteQueueRepo(_Repo):
    def _row_to_mapping(self, row: Mapping[str, Any]) -> DeviceQueueMapping:
        return DeviceQueueMapping(
            id=row["id"],
            dev_eui=EUI64(bytes(row["dev_eui"])),
            f_cnt=row["f_cnt"],
            reference=row["reference"],
            created_at=_parse_ts(row["created_at"]) or _utcnow(),
        )

    def insert(self, mapping: DeviceQueueMapping) -> DeviceQueueMapping:
        cursor = self._write(
            "INSERT INTO device_queue_mappings(dev_eui, f_cnt, reference, created_at) VALUES(?, ?, ?, ?)",
            (bytes(mapping.dev_eui), mapping.f_cnt, mapping.reference, _ts(mapping.created_at)),
            conflict=f"frame-counter {mapping.f_cnt} is already mapped",
        )
        mapping.id = cursor.lastrowid
        return mapping

    def delete_by_fcnt(self, dev_eui: bytes, f_cnt: int) -> DeviceQueueMapping | None:
        """Pop the mapping for ``f_cnt``; older mappings of the device are discarded."""

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM device_queue_mappings WHERE dev_eui = ? AND f_cnt = ?",
                (bytes(dev_eui), f_cnt),
            ).fetchone()
            conn.execute(
                "DELETE FROM device_queue_mappings WHERE dev_eui = ? AND f_cnt <= ?",
                (bytes(dev_eui), f_cnt),
            )
        return None if row is None else self._row_to_mapping(row)

    def delete(self, mapping_id: int) -> None:
        self._write("DELETE FROM device_queue_mappings WHERE id = ?", (mapping_id,))

    def delete_all_for(self, dev_eui: bytes) -> int:
        return self._write("DELETE FROM device_queue_mappings WHERE dev_eui = ?", (bytes(dev_eui),)).rowcount

    def list_for(self, dev_eui: bytes) -> list[DeviceQueueMapping]:
        rows = self._all("SELECT * FROM device_queue_mappings WHERE dev_eui = ? ORDER BY f_cnt", (bytes(dev_eui),))
        return [self._row_to_mapping(row) for row in rows]


class SQLiteMulticastRepo(_Repo):
    def _row_to_group(self, row: Mapping[str, Any]) -> MulticastGroup:
        return MulticastGroup(
            id=MulticastGroupId(row["id"]),
            name=row["name"],
            service_profile_id=ProfileId(row["service_profile_id"]),
            mc_addr=DevAddr(bytes(row["mc_addr"])),
            mc_nwk_s_key=AES128Key(bytes(row["mc_nwk_s_key"])),
            mc_app_s_key=AES128Key(bytes(row["mc_app_s_key"])),
            f_cnt=row["f_cnt"],
            group_type=MulticastGroupType(row["group_type"]),
            dr=row["dr"],
            frequency=row["frequency"],
            ping_slot_period=row["ping_slot_period"],
            created_at=_parse_ts(row["created_at"]) or _utcnow(),
            updated_at=_parse_ts(row["updated_at"]) or _utcnow(),
        )

    def create(self, group: MulticastGroup) -> None:
        self._write(
            "INSERT INTO multicast_groups(id, name, service_profile_id, mc_addr, mc_nwk_s_key, mc_app_s_key, f_cnt, "
            "group_type, dr, frequency, ping_slot_period, created_at, updated_at) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                group.id,
                group.name,
                group.service_profile_id,
                bytes(group.mc_addr),
                bytes(group.mc_nwk_s_key),
                bytes(group.mc_app_s_key),
                group.f_cnt,
                group.group_type.value,
                group.dr,
                group.frequency,
                group.ping_slot_period,
                _ts(group.created_at),
                _ts(group.updated_at),
            ),
            conflict="multicast-group already exists",
        )

    def get(self, group_id: str) -> MulticastGroup:
        row = self._one("SELECT * FROM multicast_groups WHERE id = ?", (group_id,))
        if row is None:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "multicast-group does not exist")
        return self._row_to_group(row)

    def update(self, group: MulticastGroup) -> None:
        group.updated_at = _utcnow()
        cursor = self._write(
            "UPDATE multicast_groups SET name = ?, mc_addr = ?, mc_nwk_s_key = ?, mc_app_s_key = ?, f_cnt = MAX(f_cnt, ?), "
            "group_type = ?, dr = ?, frequency = ?, ping_slot_period = ?, updated_at = ? WHERE id = ?",
            (
                group.name,
                bytes(group.mc_addr),
                bytes(group.mc_nwk_s_key),
                bytes(group.mc_app_s_key),
                group.f_cnt,
                group.group_type.value,
                group.dr,
                group.frequency,
                group.ping_slot_period,
                _ts(group.updated_at),
                group.id,
            ),
        )
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "multicast-group does not exist")

    def update_fcnt(self, group_id: str, f_cnt: int) -> None:
        # the WHERE clause keeps the counter monotone even if callers race
        self._write(
            "UPDATE multicast_groups SET f_cnt = ?, updated_at = ? WHERE id = ? AND f_cnt <= ?",
            (f_cnt, _ts(_utcnow()), group_id, f_cnt),
        )

    def release_fcnt(self, group_id: str, reserved: int, f_cnt: int) -> None:
        # only hands the counter back when nothing advanced it past the reservation
        self._write(
            "UPDATE multicast_groups SET f_cnt = ?, updated_at = ? WHERE id = ? AND f_cnt = ?",
            (f_cnt, _ts(_utcnow()), group_id, reserved),
        )

    def delete(self, group_id: str) -> None:
        cursor = self._write("DELETE FROM multicast_groups WHERE id = ?", (group_id,))
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "multicast-group does not exist")

    def list(self, *, service_profile_id: str | None = None) -> list[MulticastGroup]:
        if service_profile_id is None:
            rows = self._all("SELECT * FROM multicast_groups ORDER BY name")
        else:
            rows = self._all(
                "SELECT * FROM multicast_groups WHERE service_profile_id = ? ORDER BY name",
                (service_profile_id,),
            )
        return [self._row_to_group(row) for row in rows]

    def add_device(self, group_id: str, dev_eui: bytes) -> None:
        self._write(
            "INSERT INTO multicast_group_devices(multicast_group_id, dev_eui, created_at) VALUES(?, ?, ?)",
            (group_id, bytes(dev_eui), _ts(_utcnow())),
            conflict="device is already a member of the multicast-group",
        )

    def remove_device(self, group_id: str, dev_eui: bytes) -> None:
        cursor = self._write(
            "DELETE FROM multicast_group_devices WHERE multicast_group_id = ? AND dev_eui = ?",
            (group_id, bytes(dev_eui)),
        )
        if cursor.rowcount == 0:
            raise LoRaWANError(ErrorKind.NOT_FOUND, "device is not a member of the multicast-group")

    def list_devices(self, group_id: str) -> list[bytes]:
        rows = self._all(
            "SELECT dev_eui FROM multicast_group_devices WHERE multicast_group_id = ? ORDER BY dev_eui",
            (group_id,),
        )
        return [bytes(row["dev_eui"]) for row in rows]
