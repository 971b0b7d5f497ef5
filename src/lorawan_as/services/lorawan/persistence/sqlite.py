"""SQLite persistence helpers for the application server."""
from __future__ import annotations

from contextlib import contextmanager
import sqlite3
import threading
from pathlib import Path
from typing import Final, Iterator

__all__ = ["SQLitePersistence"]


class SQLitePersistence:
    """Lightweight wrapper that initialises the schema and scopes transactions."""

    _SCHEMA: Final[str] = """
    PRAGMA journal_mode=WAL;
    PRAGMA foreign_keys=ON;

    CREATE TABLE IF NOT EXISTS network_servers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        server TEXT NOT NULL,
        ca_cert TEXT NOT NULL DEFAULT '',
        tls_cert TEXT NOT NULL DEFAULT '',
        tls_key TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS service_profiles (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        network_server_id TEXT NOT NULL REFERENCES network_servers(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS device_profiles (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        network_server_id TEXT NOT NULL REFERENCES network_servers(id) ON DELETE CASCADE,
        mac_version TEXT NOT NULL,
        supports_join INTEGER NOT NULL DEFAULT 1,
        supports_class_b INTEGER NOT NULL DEFAULT 0,
        supports_class_c INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS applications (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        service_profile_id TEXT NOT NULL REFERENCES service_profiles(id) ON DELETE CASCADE,
        payload_codec TEXT NOT NULL DEFAULT 'none',
        payload_encoder_script TEXT NOT NULL DEFAULT '',
        payload_decoder_script TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS devices (
        dev_eui BLOB PRIMARY KEY,
        application_id TEXT NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
        device_profile_id TEXT NOT NULL REFERENCES device_profiles(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        skip_fcnt_check INTEGER NOT NULL DEFAULT 0,
        last_seen_at TEXT,
        device_status_battery INTEGER,
        device_status_margin INTEGER,
        device_status_external_power INTEGER NOT NULL DEFAULT 0,
        latitude REAL,
        longitude REAL,
        altitude REAL,
        variables_json TEXT NOT NULL DEFAULT '{}',
        tags_json TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS device_keys (
        dev_eui BLOB PRIMARY KEY REFERENCES devices(dev_eui) ON DELETE CASCADE,
        nwk_key BLOB NOT NULL,
        app_key BLOB,
        join_nonce INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS device_dev_nonces (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dev_eui BLOB NOT NULL REFERENCES devices(dev_eui) ON DELETE CASCADE,
        join_eui BLOB NOT NULL,
        dev_nonce INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (dev_eui, join_eui, dev_nonce)
    );

    CREATE TABLE IF NOT EXISTS device_activations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dev_eui BLOB NOT NULL REFERENCES devices(dev_eui) ON DELETE CASCADE,
        dev_addr BLOB NOT NULL,
        app_s_key BLOB NOT NULL,
        nwk_s_enc_key BLOB NOT NULL,
        s_nwk_s_int_key BLOB NOT NULL,
        f_nwk_s_int_key BLOB NOT NULL,
        join_req_type INTEGER,
        join_eui BLOB,
        dev_nonce INTEGER,
        join_nonce INTEGER,
        f_cnt_up INTEGER,
        n_f_cnt_down INTEGER NOT NULL DEFAULT 0,
        a_f_cnt_down INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS device_queue_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dev_eui BLOB NOT NULL REFERENCES devices(dev_eui) ON DELETE CASCADE,
        f_cnt INTEGER NOT NULL,
        reference TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (dev_eui, f_cnt)
    );

    CREATE TABLE IF NOT EXISTS multicast_groups (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        service_profile_id TEXT NOT NULL REFERENCES service_profiles(id) ON DELETE CASCADE,
        mc_addr BLOB NOT NULL,
        mc_nwk_s_key BLOB NOT NULL,
        mc_app_s_key BLOB NOT NULL,
        f_cnt INTEGER NOT NULL DEFAULT 0,
        group_type TEXT NOT NULL,
        dr INTEGER NOT NULL DEFAULT 0,
        frequency INTEGER NOT NULL DEFAULT 0,
        ping_slot_period INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS multicast_group_devices (
        multicast_group_id TEXT NOT NULL REFERENCES multicast_groups(id) ON DELETE CASCADE,
        dev_eui BLOB NOT NULL REFERENCES devices(dev_eui) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        PRIMARY KEY (multicast_group_id, dev_eui)
    );

    CREATE INDEX IF NOT EXISTS idx_device_activations_dev_eui
        ON device_activations(dev_eui, id);

    CREATE INDEX IF NOT EXISTS idx_device_dev_nonces_dev_eui
        ON device_dev_nonces(dev_eui, id);
    """

    def __init__(self, db_path: str | Path) -> None:
        self._path = Path(db_path)
        if not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one ``BEGIN IMMEDIATE`` transaction.

        Nested blocks join the outermost transaction.  The block must not
        await: the connection is shared by every coroutine of the process.
        """

        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._conn
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            self._conn.execute("COMMIT")

    def _ensure_schema(self) -> None:
        self._conn.executescript(self._SCHEMA)
