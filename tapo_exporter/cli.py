from __future__ import annotations

import json
import logging
import sys
from typing import Optional, Tuple

import click

from . import __version__
from .client import DeviceConnectError
from .config import ConfigError, resolve_settings
from .exporter import Exporter
from .server import build_registry, make_app, serve

LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class LogfmtFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = "ts=%s level=%s caller=%s:%d msg=%s" % (
            self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            record.levelname.lower(),
            record.module,
            record.lineno,
            _quote(record.getMessage()),
        )
        if record.exc_info:
            line += " exc=%s" % _quote(self.formatException(record.exc_info))
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "caller": f"{record.module}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc)


def _quote(s: str) -> str:
    if s and not any(c in s for c in ' "=\n'):
        return s
    return json.dumps(s)


def setup_logging(level: str, fmt: str = "logfmt") -> None:
    lvl = LOG_LEVELS.get(level.lower(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else LogfmtFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(lvl)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("devices", nargs=-1)
@click.option("--tapo.username", "username", envvar="TAPO_USERNAME", help="Tapo username.")
@click.option("--tapo.password", "password", envvar="TAPO_PASSWORD", help="Tapo password.")
@click.option("--web.listen-address", "listen_address", default=None, help="Address on which to expose metrics. [default: :9782]")
@click.option("--web.telemetry-path", "telemetry_path", default=None, help="Path under which to expose metrics. [default: /metrics]")
@click.option("--http.timeout", "timeout", default=None, help="Timeout for each call out to a device, e.g. 10s. [default: 10s]")
@click.option(
    "--web.disable-exporter-metrics",
    "disable_exporter_metrics",
    is_flag=True,
    help="Exclude metrics about the exporter itself (process_*, python_*).",
)
@click.option("--config.file", "config_file", envvar="TAPO_EXPORTER_CONFIG", default=None, help="YAML or JSON config file.")
@click.option(
    "--log.level",
    "log_level",
    envvar="LOG_LEVEL",
    default="info",
    show_default=True,
    type=click.Choice(sorted(LOG_LEVELS), case_sensitive=False),
)
@click.option("--log.format", "log_format", default="logfmt", show_default=True, type=click.Choice(["logfmt", "json"]))
@click.version_option(__version__, prog_name="tapo_exporter")
def main(
    devices: Tuple[str, ...],
    username: Optional[str],
    password: Optional[str],
    listen_address: Optional[str],
    telemetry_path: Optional[str],
    timeout: Optional[str],
    disable_exporter_metrics: bool,
    config_file: Optional[str],
    log_level: str,
    log_format: str,
) -> None:
    """Export the state of Tapo smart plugs at DEVICES to Prometheus."""
    setup_logging(log_level, log_format)
    log = logging.getLogger("tapo_exporter")

    try:
        settings = resolve_settings(
            devices=devices,
            username=username,
            password=password,
            listen_address=listen_address,
            telemetry_path=telemetry_path,
            timeout=timeout,
            disable_exporter_metrics=disable_exporter_metrics,
            config_file=config_file,
        )
    except ConfigError as e:
        raise click.UsageError(str(e)) from e

    log.info("starting tapo_exporter version=%s python=%s", __version__, sys.version.split()[0])
    if settings.config_file:
        log.info("config_file=%s", settings.config_file)

    try:
        exporter = Exporter.from_addresses(settings.devices, settings.credentials, settings.timeout_seconds)
    except DeviceConnectError as e:
        log.error("cannot create device err=%r", str(e))
        sys.exit(1)

    registry = build_registry(exporter, settings.disable_exporter_metrics)
    app = make_app(registry, settings.telemetry_path)
    host, port = settings.listen

    log.info(
        "telemetry_path=%s devices=%s timeout=%.1fs exporter_metrics=%s",
        settings.telemetry_path,
        len(settings.devices),
        settings.timeout_seconds,
        0 if settings.disable_exporter_metrics else 1,
    )

    serve(host, port, app, exporter)
