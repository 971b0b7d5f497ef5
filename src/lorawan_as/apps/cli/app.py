# src/lorawan_as/apps/cli/app.py
from __future__ import annotations

import ssl
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from lorawan_as.apps.api.server import create_app, create_join_server_app
from lorawan_as.services.config import AppServerConfig, load_config, save_config
from lorawan_as.services.logging import setup_logging

app = typer.Typer(help="LoRaWAN application server")


def split_bind(bind: str) -> tuple[str, int]:
    host, sep, port = bind.rpartition(":")
    if not sep or not port.isdigit():
        raise typer.BadParameter(f"bind address must look like host:port, got {bind!r}")
    return host or "0.0.0.0", int(port)


def _load(config: Optional[Path]) -> AppServerConfig:
    try:
        conf = load_config(config)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    setup_logging(conf.general.log_level, json_output=conf.general.log_json)
    return conf


@app.command("serve")
def serve(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config; defaults to $LORAWAN_AS_CONFIG"),
    bind: Optional[str] = typer.Option(None, "--bind", help="host:port, overrides api.bind"),
):
    """Run the operator API and the network-server RPC surface."""
    conf = _load(config)
    host, port = split_bind(bind or conf.api.bind)
    uvicorn.run(create_app(config=conf), host=host, port=port, log_config=None)


@app.command("join-server")
def join_server(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config; defaults to $LORAWAN_AS_CONFIG"),
    bind: Optional[str] = typer.Option(None, "--bind", help="host:port, overrides join_server.bind"),
):
    """Run the join-server endpoint; client certificates are required when a CA is configured."""
    conf = _load(config)
    js = conf.join_server
    host, port = split_bind(bind or js.bind)
    tls: dict = {}
    if js.tls_cert and js.tls_key:
        tls = {"ssl_certfile": js.tls_cert, "ssl_keyfile": js.tls_key}
        if js.ca_cert:
            tls.update(ssl_ca_certs=js.ca_cert, ssl_cert_reqs=ssl.CERT_REQUIRED)
    elif js.ca_cert:
        raise typer.BadParameter("join_server.ca_cert requires tls_cert and tls_key", param_hint="--config")
    uvicorn.run(create_join_server_app(config=conf), host=host, port=port, log_config=None, **tls)


@app.command("init-config")
def init_config(path: Path = typer.Argument(..., help="where to write the default configuration")):
    """Write a configuration file holding the default settings."""
    target = save_config(AppServerConfig(), path)
    typer.echo(str(target))


if __name__ == "__main__":
    app()
