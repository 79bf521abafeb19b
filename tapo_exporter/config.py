from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .client import Credentials

DEFAULT_LISTEN_ADDRESS = ":9782"
DEFAULT_TELEMETRY_PATH = "/metrics"
DEFAULT_TIMEOUT = "10s"


class ConfigError(ValueError):
    pass


@dataclass
class Settings:
    devices: List[str]
    credentials: Credentials
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    telemetry_path: str = DEFAULT_TELEMETRY_PATH
    timeout_seconds: float = 10.0
    disable_exporter_metrics: bool = False
    config_file: Optional[str] = None

    @property
    def listen(self) -> Tuple[str, int]:
        return parse_listen_address(self.listen_address)


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    try:
        if s.startswith(":"):
            return "", int(s[1:])
        if ":" in s:
            host, port_s = s.rsplit(":", 1)
            return host.strip("[]"), int(port_s)
        return "", int(s)
    except ValueError as e:
        raise ConfigError(f"invalid listen address {s!r}") from e


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: Any) -> float:
    """Parse "10s", "1m30s", "500ms" (or a bare number of seconds)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        s = str(value).strip()
        if not s:
            raise ConfigError("empty duration")
        try:
            seconds = float(s)
        except ValueError:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART.finditer(s):
                if m.start() != pos:
                    raise ConfigError(f"invalid duration {s!r}") from None
                seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
                pos = m.end()
            if pos != len(s):
                raise ConfigError(f"invalid duration {s!r}") from None
    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigError(f"duration must be positive, got {value!r}")
    return seconds


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping/object")
    return data


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = cfg.get(name, {})
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return sec


def resolve_settings(
    devices: Sequence[str] = (),
    username: Optional[str] = None,
    password: Optional[str] = None,
    listen_address: Optional[str] = None,
    telemetry_path: Optional[str] = None,
    timeout: Optional[str] = None,
    disable_exporter_metrics: bool = False,
    config_file: Optional[str] = None,
) -> Settings:
    """Merge command line values over the config file over the defaults."""
    cfg = load_config_file(config_file) if config_file else {}
    web_cfg = _section(cfg, "web")
    tapo_cfg = _section(cfg, "tapo")
    http_cfg = _section(cfg, "http")

    file_devices = cfg.get("devices", []) or []
    if not isinstance(file_devices, list):
        raise ConfigError("'devices' must be a list of addresses")

    addresses: List[str] = []
    for d in list(devices) or [str(x) for x in file_devices]:
        d = str(d).strip()
        if d and d not in addresses:
            addresses.append(d)
    if not addresses:
        raise ConfigError("no devices configured")

    user = username or tapo_cfg.get("username")
    pw = password or tapo_cfg.get("password")
    if not user or not pw:
        raise ConfigError("tapo username and password are required")

    listen = listen_address or str(web_cfg.get("listen_address", DEFAULT_LISTEN_ADDRESS))
    parse_listen_address(listen)

    path = telemetry_path or str(web_cfg.get("telemetry_path", DEFAULT_TELEMETRY_PATH))
    if not path.startswith("/"):
        raise ConfigError(f"telemetry path must start with '/', got {path!r}")

    return Settings(
        devices=addresses,
        credentials=Credentials(str(user), str(pw)),
        listen_address=listen,
        telemetry_path=path,
        timeout_seconds=parse_duration(timeout or http_cfg.get("timeout", DEFAULT_TIMEOUT)),
        disable_exporter_metrics=disable_exporter_metrics or bool(web_cfg.get("disable_exporter_metrics", False)),
        config_file=config_file,
    )
