from __future__ import annotations

import stat
from pathlib import Path
from typing import Callable

import pytest

from thermnode.errors import NetworkConfigError
from thermnode.network import NetworkConfig, WpaSupplicantConfigurator, render_wpa_config


class _CapturingLauncher:
    """Records the reconfigure callback and the file content at launch time."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self.launched: list[Callable[[], None]] = []
        self.content_at_launch: list[str] = []

    def __call__(self, fn: Callable[[], None]) -> None:
        self.content_at_launch.append(self._path.read_text(encoding="utf-8"))
        self.launched.append(fn)


def test_render_with_password() -> None:
    text = render_wpa_config(NetworkConfig("HomeNet", "secret123"), country="GB")

    assert text == (
        "country=GB\n"
        "ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=netdev\n"
        "update_config=1\n"
        "network={\n"
        '\tssid="HomeNet"\n'
        '\tpsk="secret123"\n'
        "}\n"
    )


def test_render_open_network_uses_no_key_management() -> None:
    text = render_wpa_config(NetworkConfig("Cafe"))

    assert '\tssid="Cafe"\n' in text
    assert "\tkey_mgmt=NONE\n" in text
    assert "psk=" not in text


def test_render_escapes_quotes_and_backslashes() -> None:
    text = render_wpa_config(NetworkConfig('My "Net"', "a\\b"))

    assert '\tssid="My \\"Net\\""\n' in text
    assert '\tpsk="a\\\\b"\n' in text


def test_render_rejects_line_breaks() -> None:
    with pytest.raises(NetworkConfigError):
        render_wpa_config(NetworkConfig("Home\nNet", "x"))


def test_apply_writes_file_before_reconfigure(tmp_path: Path) -> None:
    path = tmp_path / "wpa_supplicant.conf"
    launcher = _CapturingLauncher(path)
    commands: list[list[str]] = []

    def _runner(cmd: list[str], _timeout: float) -> str | None:
        commands.append(cmd)
        return "OK"

    configurator = WpaSupplicantConfigurator(
        path,
        interface="wlan0",
        command_runner=_runner,
        launcher=launcher,
    )
    configurator.apply(NetworkConfig("HomeNet", "secret123"))

    content = path.read_text(encoding="utf-8")
    assert '\tssid="HomeNet"\n' in content
    assert '\tpsk="secret123"\n' in content
    assert launcher.content_at_launch == [content]
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert not path.with_suffix(".conf.tmp").exists()

    # Launch is deferred; nothing ran until the launcher calls back.
    assert commands == []
    launcher.launched[0]()
    assert commands == [["wpa_cli", "-i", "wlan0", "reconfigure"]]


def test_apply_replaces_previous_configuration(tmp_path: Path) -> None:
    path = tmp_path / "wpa_supplicant.conf"
    path.write_text("stale\n", encoding="utf-8")
    configurator = WpaSupplicantConfigurator(path, launcher=lambda _fn: None)

    configurator.apply(NetworkConfig("Office", ""))

    content = path.read_text(encoding="utf-8")
    assert "stale" not in content
    assert "key_mgmt=NONE" in content


def test_apply_write_failure_raises_and_skips_reconfigure(tmp_path: Path) -> None:
    launched: list[object] = []
    configurator = WpaSupplicantConfigurator(
        tmp_path / "missing-dir" / "wpa_supplicant.conf",
        launcher=launched.append,
    )

    with pytest.raises(NetworkConfigError):
        configurator.apply(NetworkConfig("HomeNet", "secret123"))
    assert launched == []


def test_reconfigure_reports_command_failure(tmp_path: Path) -> None:
    configurator = WpaSupplicantConfigurator(
        tmp_path / "wpa.conf",
        command_runner=lambda _cmd, _timeout: None,
    )
    assert configurator.reconfigure() is False


def test_network_config_from_json() -> None:
    assert NetworkConfig.from_json(b'{"ssid":"HomeNet","password":"secret123"}') == NetworkConfig(
        "HomeNet", "secret123"
    )
    assert NetworkConfig.from_json('{"ssid":"Cafe"}') == NetworkConfig("Cafe", "")
    assert NetworkConfig.from_json('{"ssid":"Cafe","password":null}') == NetworkConfig("Cafe", "")


@pytest.mark.parametrize(
    "payload",
    [
        b"{not json",
        b"\xff\xfe",
        b'["HomeNet"]',
        b'{"password":"x"}',
        b'{"ssid":""}',
        b'{"ssid":42}',
        b'{"ssid":"HomeNet","password":123}',
    ],
)
def test_network_config_rejects_malformed_payloads(payload: bytes) -> None:
    with pytest.raises(NetworkConfigError):
        NetworkConfig.from_json(payload)
