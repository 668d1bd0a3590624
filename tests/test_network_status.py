from __future__ import annotations

import pytest
import requests

from thermnode import network
from thermnode.errors import NetworkQueryError
from thermnode.network import (
    NetworkInfo,
    NetworkStatus,
    NetworkStatusPipeline,
    ShellWifiInspector,
    parse_connected_ssid,
    parse_scan_ssids,
)

_IWCONFIG_CONNECTED = """\
wlan0     IEEE 802.11  ESSID:"HomeNet"
          Mode:Managed  Frequency:2.437 GHz  Access Point: 11:22:33:44:55:66
          Bit Rate=72.2 Mb/s   Tx-Power=31 dBm
"""

_IWCONFIG_IDLE = """\
wlan0     IEEE 802.11  ESSID:off/any
          Mode:Managed  Access Point: Not-Associated   Tx-Power=31 dBm
"""

_IWLIST_SCAN = """\
wlan0     Scan completed :
          Cell 01 - Address: 11:22:33:44:55:66
                    ESSID:"HomeNet"
                    Quality=70/70  Signal level=-33 dBm
          Cell 02 - Address: 22:33:44:55:66:77
                    ESSID:"Cafe Guest"
          Cell 03 - Address: 33:44:55:66:77:88
                    ESSID:""
"""


class _FakeInspector:
    def __init__(
        self,
        *,
        ssid: str | Exception = "HomeNet",
        ipaddr: str | Exception = "192.168.1.40",
        available: list[str] | Exception | None = None,
    ) -> None:
        self._ssid = ssid
        self._ipaddr = ipaddr
        self._available = ["HomeNet", "Cafe"] if available is None else available
        self.calls: list[str] = []

    def connected_ssid(self) -> str:
        self.calls.append("ssid")
        if isinstance(self._ssid, Exception):
            raise self._ssid
        return self._ssid

    def local_ip_address(self) -> str:
        self.calls.append("ip")
        if isinstance(self._ipaddr, Exception):
            raise self._ipaddr
        return self._ipaddr

    def available_ssids(self) -> list[str]:
        self.calls.append("scan")
        if isinstance(self._available, Exception):
            raise self._available
        return list(self._available)


class _RecordingProbe:
    def __init__(self, result: bool | Exception = True) -> None:
        self._result = result
        self.calls: list[tuple[str, float]] = []

    def __call__(self, url: str, timeout_s: float) -> bool:
        self.calls.append((url, timeout_s))
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


def test_parse_connected_ssid_quoted() -> None:
    assert parse_connected_ssid(_IWCONFIG_CONNECTED) == "HomeNet"


def test_parse_connected_ssid_off_any() -> None:
    assert parse_connected_ssid(_IWCONFIG_IDLE) == "off/any"


def test_parse_connected_ssid_without_essid_line() -> None:
    assert parse_connected_ssid("lo        no wireless extensions.\n") == ""


def test_parse_scan_ssids_keeps_scan_order() -> None:
    assert parse_scan_ssids(_IWLIST_SCAN) == ["HomeNet", "Cafe Guest", ""]


def test_unassociated_interface_reports_down_with_scan_results() -> None:
    inspector = _FakeInspector(ssid="off/any", available=["A", "B"])
    probe = _RecordingProbe()

    info = NetworkStatusPipeline(inspector, http_probe=probe).query()

    assert info == NetworkInfo(ssid="", ipaddr="", status=NetworkStatus.DOWN, available=("A", "B"))
    assert "ip" not in inspector.calls
    assert probe.calls == []


def test_empty_ssid_is_treated_as_unassociated() -> None:
    info = NetworkStatusPipeline(_FakeInspector(ssid=""), http_probe=_RecordingProbe()).query()

    assert info.ssid == ""
    assert info.status is NetworkStatus.DOWN


def test_ssid_query_failure_reports_unknown() -> None:
    inspector = _FakeInspector(ssid=NetworkQueryError("iwconfig missing"))
    probe = _RecordingProbe()

    info = NetworkStatusPipeline(inspector, http_probe=probe).query()

    assert info.ssid == "UNKNOWN"
    assert info.ipaddr == ""
    assert info.status is NetworkStatus.DOWN
    assert info.available == ("HomeNet", "Cafe")
    assert probe.calls == []


def test_connected_and_reachable_is_up() -> None:
    probe = _RecordingProbe(True)
    pipeline = NetworkStatusPipeline(
        _FakeInspector(),
        probe_url="https://example.test",
        probe_timeout_s=2.0,
        http_probe=probe,
    )

    info = pipeline.query()

    assert info.ssid == "HomeNet"
    assert info.ipaddr == "192.168.1.40"
    assert info.status is NetworkStatus.UP
    assert probe.calls == [("https://example.test", 2.0)]


def test_connected_but_unreachable_is_local() -> None:
    info = NetworkStatusPipeline(_FakeInspector(), http_probe=_RecordingProbe(False)).query()
    assert info.status is NetworkStatus.LOCAL


def test_probe_exception_is_treated_as_unreachable() -> None:
    info = NetworkStatusPipeline(_FakeInspector(), http_probe=_RecordingProbe(RuntimeError("boom"))).query()
    assert info.status is NetworkStatus.LOCAL


def test_ip_failure_only_blanks_the_address() -> None:
    inspector = _FakeInspector(ipaddr=NetworkQueryError("no route"))

    info = NetworkStatusPipeline(inspector, http_probe=_RecordingProbe(True)).query()

    assert info.ssid == "HomeNet"
    assert info.ipaddr == ""
    assert info.status is NetworkStatus.UP


def test_scan_failure_yields_empty_list_without_changing_status() -> None:
    inspector = _FakeInspector(available=NetworkQueryError("scan busy"))

    info = NetworkStatusPipeline(inspector, http_probe=_RecordingProbe(True)).query()

    assert info.available == ()
    assert info.status is NetworkStatus.UP


def test_repeated_queries_of_unchanged_environment_are_equal() -> None:
    pipeline = NetworkStatusPipeline(_FakeInspector(), http_probe=_RecordingProbe(False))
    assert pipeline.query() == pipeline.query()


def test_network_info_json_shape() -> None:
    info = NetworkInfo(ssid="HomeNet", ipaddr="10.0.0.2", status=NetworkStatus.LOCAL, available=("HomeNet",))
    assert info.to_json() == {
        "ssid": "HomeNet",
        "ipaddr": "10.0.0.2",
        "status": "LOCAL",
        "available": ["HomeNet"],
    }


def test_shell_inspector_runs_wireless_tools() -> None:
    commands: list[list[str]] = []

    def _runner(cmd: list[str], timeout_s: float) -> str | None:
        commands.append(cmd)
        assert timeout_s == 3.0
        return _IWLIST_SCAN if "scan" in cmd else _IWCONFIG_CONNECTED

    inspector = ShellWifiInspector("wlan1", command_timeout_s=3.0, command_runner=_runner)

    assert inspector.connected_ssid() == "HomeNet"
    assert inspector.available_ssids() == ["HomeNet", "Cafe Guest", ""]
    assert commands == [["iwconfig", "wlan1"], ["iwlist", "wlan1", "scan"]]


def test_shell_inspector_command_failure_raises() -> None:
    inspector = ShellWifiInspector(command_runner=lambda _cmd, _timeout: None)

    with pytest.raises(NetworkQueryError):
        inspector.connected_ssid()
    with pytest.raises(NetworkQueryError):
        inspector.available_ssids()


def test_shell_inspector_address_failure_raises() -> None:
    def _no_route() -> str:
        raise OSError("Network is unreachable")

    inspector = ShellWifiInspector(local_address_resolver=_no_route)

    with pytest.raises(NetworkQueryError, match="unreachable"):
        inspector.local_ip_address()


def test_default_probe_treats_request_errors_as_unreachable(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*_args: object, **_kwargs: object) -> None:
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(network.requests, "get", _fail)

    assert network._default_http_probe("https://google.com", 1.0) is False


@pytest.mark.parametrize(("status_code", "expected"), [(200, True), (404, True), (503, False)])
def test_default_probe_status_codes(monkeypatch: pytest.MonkeyPatch, status_code: int, expected: bool) -> None:
    closed: list[bool] = []

    class _FakeResponse:
        def __init__(self) -> None:
            self.status_code = status_code

        def close(self) -> None:
            closed.append(True)

    monkeypatch.setattr(network.requests, "get", lambda *_a, **_k: _FakeResponse())

    assert network._default_http_probe("https://google.com", 1.0) is expected
    assert closed == [True]
