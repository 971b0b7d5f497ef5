from __future__ import annotations

import logging

import pytest
import typer
import yaml
from typer.testing import CliRunner

from lorawan_as.apps.cli.app import app, split_bind
from lorawan_as.services.config import AppServerConfig, load_config, save_config
from lorawan_as.services.logging import JsonFormatter, setup_logging

runner = CliRunner()


def test_defaults_without_file(monkeypatch):
    monkeypatch.delenv("LORAWAN_AS_CONFIG", raising=False)
    monkeypatch.delenv("LORAWAN_AS_DB", raising=False)
    monkeypatch.delenv("LORAWAN_AS_TOKEN", raising=False)
    conf = load_config()
    assert conf.api.bind == "127.0.0.1:8080"
    assert conf.join_server.dev_nonce_window == 4096
    assert conf.join_server.kek.set == []


def test_yaml_sections_and_kek_entries(tmp_path, monkeypatch):
    monkeypatch.delenv("LORAWAN_AS_DB", raising=False)
    monkeypatch.delenv("LORAWAN_AS_TOKEN", raising=False)
    path = tmp_path / "as.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {"db_path": "/var/lib/as.sqlite"},
                "join_server": {
                    "strict_dev_nonce": True,
                    "kek": {"as_kek_label": "as", "set": [{"label": "as", "kek": "000102030405060708090a0b0c0d0e0f"}]},
                },
                "api": {"operator_token": "from-file"},
            }
        ),
        encoding="utf-8",
    )

    conf = load_config(path)

    assert conf.storage.db_path == "/var/lib/as.sqlite"
    assert conf.join_server.strict_dev_nonce is True
    assert conf.join_server.kek.as_mapping() == {"as": "000102030405060708090a0b0c0d0e0f"}
    assert conf.api.operator_token == "from-file"


def test_environment_overrides(tmp_path, monkeypatch):
    path = save_config(AppServerConfig(), tmp_path / "as.yaml")
    monkeypatch.setenv("LORAWAN_AS_CONFIG", str(path))
    monkeypatch.setenv("LORAWAN_AS_DB", "/tmp/other.sqlite")
    monkeypatch.setenv("LORAWAN_AS_TOKEN", "from-env")

    conf = load_config()

    assert conf.storage.db_path == "/tmp/other.sqlite"
    assert conf.api.operator_token == "from-env"


@pytest.mark.parametrize(
    "data",
    [
        {"storage": {"db_path": "x", "extra": 1}},
        {"unknown_section": {}},
        {"api": "not-a-mapping"},
    ],
)
def test_invalid_config_is_rejected(tmp_path, data):
    path = tmp_path / "as.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_split_bind():
    assert split_bind("127.0.0.1:8080") == ("127.0.0.1", 8080)
    assert split_bind(":8003") == ("0.0.0.0", 8003)
    with pytest.raises(typer.BadParameter):
        split_bind("localhost")


def test_init_config_writes_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("LORAWAN_AS_DB", raising=False)
    monkeypatch.delenv("LORAWAN_AS_TOKEN", raising=False)
    target = tmp_path / "conf" / "as.yaml"

    result = runner.invoke(app, ["init-config", str(target)])

    assert result.exit_code == 0, result.output
    assert str(target) in result.output
    assert load_config(target).to_dict() == AppServerConfig().to_dict()


def test_serve_rejects_unknown_options(tmp_path):
    path = tmp_path / "as.yaml"
    path.write_text("api:\n  port: 1\n", encoding="utf-8")
    result = runner.invoke(app, ["serve", "--config", str(path)])
    assert result.exit_code != 0


def test_json_logging():
    logger = setup_logging("debug", json_output=True)
    logger.propagate = True
    assert logger.level == logging.DEBUG
    assert isinstance(logger.handlers[0].formatter, JsonFormatter)

    record = logging.LogRecord("lorawan_as.test", logging.INFO, __file__, 1, "uplink", None, None)
    record.extra = {"dev_eui": "0102030405060708"}
    line = logger.handlers[0].formatter.format(record)
    assert '"dev_eui": "0102030405060708"' in line
    assert '"msg": "uplink"' in line
