from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigError

CONFIG_PATH_ENV = "THERMNODE_CONFIG_PATH"
ENV_PREFIX = "THERMNODE_"

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_LOG_FORMATS = {"text", "json"}
_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


@dataclass(frozen=True)
class DeviceConfig:
    # Radio / advertising
    max_connections: int = 1
    hci_device: int = -1
    check_le_support: bool = True
    beacon_interval_s: float = 0.0
    name_interval_s: float = 5.0
    device_name: str = "EveryTherm Sensor"

    # Sensor
    sensor_period_s: float = 30.0
    notify_interval_s: float = 30.0
    spi_bus: int = 0
    spi_device: int = 1
    spi_max_speed_hz: int = 1_000_000

    # WiFi
    wifi_interface: str = "wlan0"
    wpa_config_path: str = "/etc/wpa_supplicant/wpa_supplicant.conf"
    wpa_country: str = "US"
    command_timeout_s: float = 15.0
    probe_url: str = "https://google.com"
    probe_timeout_s: float = 5.0

    # Reporting
    report_url: str = "http://services.pcsw.us/everytherm/report"
    report_timeout_s: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    syslog_host: str | None = None
    syslog_port: int = 514


FIELD_NAMES = frozenset(f.name for f in fields(DeviceConfig))


def env_var_for(field_name: str) -> str:
    return ENV_PREFIX + field_name.upper()


def load_device_config(*, overrides: Mapping[str, Any] | None = None) -> DeviceConfig:
    """Build the process configuration.

    Precedence, lowest first: defaults, the YAML file named by
    ``THERMNODE_CONFIG_PATH``, ``THERMNODE_*`` environment variables,
    ``overrides`` (CLI flags). ``None`` overrides are ignored.
    """

    raw: dict[str, Any] = {}
    origin = "defaults"

    config_path = os.getenv(CONFIG_PATH_ENV)
    if overrides and overrides.get("config_path"):
        config_path = str(overrides["config_path"])
    if config_path:
        raw.update(load_yaml_config(Path(config_path).expanduser()))
        origin = str(config_path)

    for name in FIELD_NAMES:
        value = os.getenv(env_var_for(name))
        if value is not None and value.strip() != "":
            raw[name] = value

    for name, value in (overrides or {}).items():
        if name == "config_path" or value is None:
            continue
        raw[name] = value

    return parse_device_config(raw, origin=origin)


def load_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"{CONFIG_PATH_ENV} does not exist: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config at {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config at {path} must be a YAML object")

    unknown = sorted(set(loaded) - FIELD_NAMES)
    if unknown:
        raise ConfigError(f"{path}: unknown config keys: {', '.join(unknown)}")
    return dict(loaded)


def parse_device_config(raw: Mapping[str, Any], *, origin: str) -> DeviceConfig:
    defaults = DeviceConfig()

    def _get(name: str) -> Any:
        return raw.get(name, getattr(defaults, name))

    log_level = _as_str(_get("log_level"), "log_level", origin=origin).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"{origin}: log_level must be one of {sorted(_LOG_LEVELS)}")

    log_format = _as_str(_get("log_format"), "log_format", origin=origin).lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"{origin}: log_format must be one of {sorted(_LOG_FORMATS)}")

    syslog_port = _as_int(_get("syslog_port"), "syslog_port", origin=origin, minimum=1)
    if syslog_port > 65535:
        raise ConfigError(f"{origin}: syslog_port must be <= 65535")

    syslog_host = _get("syslog_host")
    if syslog_host is not None:
        syslog_host = str(syslog_host).strip() or None

    beacon_interval_s = _as_duration(_get("beacon_interval_s"), "beacon_interval_s", origin=origin, allow_zero=True)
    name_interval_s = _as_duration(_get("name_interval_s"), "name_interval_s", origin=origin)

    return DeviceConfig(
        max_connections=_as_int(_get("max_connections"), "max_connections", origin=origin, minimum=1),
        hci_device=_as_int(_get("hci_device"), "hci_device", origin=origin, minimum=-1),
        check_le_support=_as_bool(_get("check_le_support"), "check_le_support", origin=origin),
        beacon_interval_s=beacon_interval_s,
        name_interval_s=name_interval_s,
        device_name=_as_str(_get("device_name"), "device_name", origin=origin),
        sensor_period_s=_as_duration(_get("sensor_period_s"), "sensor_period_s", origin=origin),
        notify_interval_s=_as_duration(_get("notify_interval_s"), "notify_interval_s", origin=origin),
        spi_bus=_as_int(_get("spi_bus"), "spi_bus", origin=origin, minimum=0),
        spi_device=_as_int(_get("spi_device"), "spi_device", origin=origin, minimum=0),
        spi_max_speed_hz=_as_int(_get("spi_max_speed_hz"), "spi_max_speed_hz", origin=origin, minimum=1),
        wifi_interface=_as_str(_get("wifi_interface"), "wifi_interface", origin=origin),
        wpa_config_path=_as_str(_get("wpa_config_path"), "wpa_config_path", origin=origin),
        wpa_country=_as_str(_get("wpa_country"), "wpa_country", origin=origin).upper(),
        command_timeout_s=_as_duration(_get("command_timeout_s"), "command_timeout_s", origin=origin),
        probe_url=_as_str(_get("probe_url"), "probe_url", origin=origin),
        probe_timeout_s=_as_duration(_get("probe_timeout_s"), "probe_timeout_s", origin=origin),
        report_url=_as_str(_get("report_url"), "report_url", origin=origin, allow_empty=True),
        report_timeout_s=_as_duration(_get("report_timeout_s"), "report_timeout_s", origin=origin),
        log_level=log_level,
        log_format=log_format,
        syslog_host=syslog_host,
        syslog_port=syslog_port,
    )


def _as_str(value: Any, name: str, *, origin: str, allow_empty: bool = False) -> str:
    if value is None:
        value = ""
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"{origin}: {name} must be a string")
    text = str(value).strip()
    if not text and not allow_empty:
        raise ConfigError(f"{origin}: {name} must be non-empty")
    return text


def _as_int(value: Any, name: str, *, origin: str, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{origin}: {name} must be an integer")
    try:
        parsed = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{origin}: {name} must be an integer") from exc
    if parsed < minimum:
        raise ConfigError(f"{origin}: {name} must be >= {minimum}")
    return parsed


def _as_bool(value: Any, name: str, *, origin: str) -> bool:
    if isinstance(value, bool):
        return value
    norm = str(value).strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise ConfigError(f"{origin}: {name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _as_duration(value: Any, name: str, *, origin: str, allow_zero: bool = False) -> float:
    """Seconds as a number, or a string such as ``"2s"``, ``"500ms"``, ``"1m"``."""

    if isinstance(value, bool):
        raise ConfigError(f"{origin}: {name} must be a duration")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigError(f"{origin}: {name} must be a duration like 30, 2s, 500ms or 1m")
        seconds = float(match.group("value")) * _DURATION_UNITS[match.group("unit")]

    if seconds < 0 or (seconds == 0 and not allow_zero):
        raise ConfigError(f"{origin}: {name} must be {'>= 0' if allow_zero else '> 0'}")
    return seconds
