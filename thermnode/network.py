from __future__ import annotations

import json
import logging
import re
import socket
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

import requests

from .errors import NetworkConfigError, NetworkQueryError

logger = logging.getLogger("thermnode.network")

SSID_OFF = "off/any"
SSID_UNKNOWN = "UNKNOWN"
DEFAULT_INTERFACE = "wlan0"
DEFAULT_PROBE_URL = "https://google.com"
DEFAULT_WPA_CONFIG_PATH = Path("/etc/wpa_supplicant/wpa_supplicant.conf")

CommandRunner = Callable[[list[str], float], str | None]
HttpProbe = Callable[[str, float], bool]
LocalAddressResolver = Callable[[], str]
Launcher = Callable[[Callable[[], None]], None]

_CONNECTED_ESSID_RE = re.compile(r'ESSID:(?:"(?P<quoted>.*)"|(?P<bare>\S+))')
_SCAN_ESSID_RE = re.compile(r'ESSID:"(?P<ssid>.*)"')


class NetworkStatus(str, Enum):
    DOWN = "DOWN"
    LOCAL = "LOCAL"
    UP = "UP"


@dataclass(frozen=True)
class NetworkConfig:
    ssid: str
    password: str = ""

    @classmethod
    def from_json(cls, data: bytes | str) -> "NetworkConfig":
        """Parse ``{"ssid": ..., "password": ...}`` sent by a peer."""

        try:
            raw = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise NetworkConfigError(f"network config is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise NetworkConfigError("network config must be a JSON object")

        ssid = raw.get("ssid")
        password = raw.get("password", "")
        if not isinstance(ssid, str) or not ssid:
            raise NetworkConfigError("network config requires a non-empty string 'ssid'")
        if password is None:
            password = ""
        if not isinstance(password, str):
            raise NetworkConfigError("network config 'password' must be a string")
        return cls(ssid=ssid, password=password)


@dataclass(frozen=True)
class NetworkInfo:
    ssid: str = ""
    ipaddr: str = ""
    status: NetworkStatus = NetworkStatus.DOWN
    available: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "ssid": self.ssid,
            "ipaddr": self.ipaddr,
            "status": self.status.value,
            "available": list(self.available),
        }


class WifiInspector(Protocol):
    def connected_ssid(self) -> str: ...

    def local_ip_address(self) -> str: ...

    def available_ssids(self) -> list[str]: ...


class WifiConfigurator(Protocol):
    def apply(self, config: NetworkConfig) -> None: ...


class ShellWifiInspector:
    """Reads WiFi state from the wireless-tools CLIs (iwconfig/iwlist)."""

    def __init__(
        self,
        interface: str = DEFAULT_INTERFACE,
        *,
        command_timeout_s: float = 15.0,
        command_runner: CommandRunner | None = None,
        local_address_resolver: LocalAddressResolver | None = None,
    ) -> None:
        self.interface = interface
        self.command_timeout_s = command_timeout_s
        self._command_runner = command_runner or _run_command
        self._local_address_resolver = local_address_resolver or _default_local_address

    def connected_ssid(self) -> str:
        out = self._command_runner(["iwconfig", self.interface], self.command_timeout_s)
        if out is None:
            raise NetworkQueryError(f"iwconfig {self.interface} failed")
        return parse_connected_ssid(out)

    def local_ip_address(self) -> str:
        try:
            return self._local_address_resolver()
        except OSError as exc:
            raise NetworkQueryError(f"cannot resolve local address: {exc}") from exc

    def available_ssids(self) -> list[str]:
        out = self._command_runner(["iwlist", self.interface, "scan"], self.command_timeout_s)
        if out is None:
            raise NetworkQueryError(f"iwlist {self.interface} scan failed")
        ssids = parse_scan_ssids(out)
        logger.debug("scan found %d networks: %s", len(ssids), ssids)
        return ssids


def parse_connected_ssid(output: str) -> str:
    """Return the ESSID from ``iwconfig`` output, ``""`` when there is none."""

    for line in output.splitlines():
        match = _CONNECTED_ESSID_RE.search(line)
        if not match:
            continue
        quoted = match.group("quoted")
        return quoted if quoted is not None else match.group("bare")
    return ""


def parse_scan_ssids(output: str) -> list[str]:
    """Return every ESSID from ``iwlist scan`` output in scan order."""

    ssids: list[str] = []
    for line in output.splitlines():
        match = _SCAN_ESSID_RE.search(line)
        if match:
            ssids.append(match.group("ssid"))
    return ssids


class NetworkStatusPipeline:
    """Builds a point-in-time NetworkInfo.

    Every step can fail on its own and only degrades its own field. The scan
    list never changes the overall status.
    """

    def __init__(
        self,
        inspector: WifiInspector,
        *,
        probe_url: str = DEFAULT_PROBE_URL,
        probe_timeout_s: float = 5.0,
        http_probe: HttpProbe | None = None,
    ) -> None:
        self.inspector = inspector
        self.probe_url = probe_url
        self.probe_timeout_s = probe_timeout_s
        self._http_probe = http_probe or _default_http_probe

    def query(self) -> NetworkInfo:
        ssid, ipaddr, status = self._link_status()
        return NetworkInfo(
            ssid=ssid,
            ipaddr=ipaddr,
            status=status,
            available=tuple(self._available()),
        )

    def _link_status(self) -> tuple[str, str, NetworkStatus]:
        try:
            ssid = self.inspector.connected_ssid()
        except NetworkQueryError as exc:
            logger.error("connected SSID query failed: %s", exc)
            return SSID_UNKNOWN, "", NetworkStatus.DOWN

        if not ssid or ssid == SSID_OFF:
            return "", "", NetworkStatus.DOWN

        logger.info("connected to SSID %s", ssid)
        try:
            ipaddr = self.inspector.local_ip_address()
        except NetworkQueryError as exc:
            logger.error("error obtaining IP address: %s", exc)
            ipaddr = ""

        status = NetworkStatus.UP if self._reachable() else NetworkStatus.LOCAL
        return ssid, ipaddr, status

    def _reachable(self) -> bool:
        try:
            return bool(self._http_probe(self.probe_url, self.probe_timeout_s))
        except Exception as exc:
            logger.warning("reachability probe failed: %s", exc)
            return False

    def _available(self) -> list[str]:
        try:
            return list(self.inspector.available_ssids())
        except NetworkQueryError as exc:
            logger.error("error determining available SSIDs: %s", exc)
            return []


def render_wpa_config(config: NetworkConfig, *, country: str = "US") -> str:
    lines = [
        f"country={country}",
        "ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=netdev",
        "update_config=1",
        "network={",
        f'\tssid="{_escape_wpa(config.ssid)}"',
    ]
    if config.password:
        lines.append(f'\tpsk="{_escape_wpa(config.password)}"')
    else:
        lines.append("\tkey_mgmt=NONE")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _escape_wpa(value: str) -> str:
    if "\n" in value or "\r" in value:
        raise NetworkConfigError("network config values must not contain line breaks")
    return value.replace("\\", "\\\\").replace('"', '\\"')


class WpaSupplicantConfigurator:
    """Writes wpa_supplicant.conf and asks wpa_cli to reload it.

    ``apply`` returns once the file is written. The reconfigure command runs
    on a background thread and its outcome is only logged.
    """

    def __init__(
        self,
        path: Path = DEFAULT_WPA_CONFIG_PATH,
        *,
        interface: str = DEFAULT_INTERFACE,
        country: str = "US",
        command_timeout_s: float = 15.0,
        command_runner: CommandRunner | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self.path = Path(path)
        self.interface = interface
        self.country = country
        self.command_timeout_s = command_timeout_s
        self._command_runner = command_runner or _run_command
        self._launcher = launcher or _launch_daemon

    def apply(self, config: NetworkConfig) -> None:
        text = render_wpa_config(config, country=self.country)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.touch(mode=0o600, exist_ok=True)
            tmp.chmod(0o600)
            tmp.write_text(text, encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            raise NetworkConfigError(f"cannot write {self.path}: {exc}") from exc

        logger.info("wrote WiFi configuration for SSID %s", config.ssid)
        self._launcher(self.reconfigure)

    def reconfigure(self) -> bool:
        out = self._command_runner(
            ["wpa_cli", "-i", self.interface, "reconfigure"],
            self.command_timeout_s,
        )
        if out is None:
            logger.warning("wpa_cli reconfigure on %s failed", self.interface)
            return False
        logger.info("wpa_cli reconfigure on %s: %s", self.interface, out or "ok")
        return True


def _launch_daemon(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="wpa-reconfigure", daemon=True).start()


def _run_command(command: list[str], timeout_s: float) -> str | None:
    try:
        proc = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=max(0.1, float(timeout_s)),
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        logger.debug("command %s failed: %s", command[0], exc)
        return None

    if proc.returncode != 0:
        logger.debug("command %s exited %s: %s", command[0], proc.returncode, proc.stderr.strip())
        return None
    return proc.stdout.strip()


def _default_local_address() -> str:
    # connect() on a UDP socket only selects a route; nothing is sent.
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect(("8.8.8.8", 80))
        return str(sock.getsockname()[0])


def _default_http_probe(url: str, timeout_s: float) -> bool:
    try:
        resp = requests.get(url, timeout=timeout_s, allow_redirects=True, stream=True)
    except requests.RequestException:
        return False
    try:
        return 200 <= resp.status_code < 500
    finally:
        resp.close()
