from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from .advertising import AdvertisingScheduler
from .ble.radio import SERVICE_UUID, Radio
from .bridge import CharacteristicBridge, build_service
from .config import DeviceConfig, load_device_config
from .errors import ConfigError, RadioError
from .logging_setup import configure_logging
from .network import (
    HttpProbe,
    NetworkStatusPipeline,
    ShellWifiInspector,
    WifiConfigurator,
    WifiInspector,
    WpaSupplicantConfigurator,
)
from .reporting import RemoteReporter
from .sensor import BusFactory, SensorAcquisitionLoop, SensorBus, open_spidev
from .state import DeviceState

logger = logging.getLogger("thermnode.runtime")

_JOIN_TIMEOUT_S = 5.0


@dataclass
class SensorNode:
    config: DeviceConfig
    state: DeviceState
    stop_event: threading.Event
    radio: Radio
    reporter: RemoteReporter
    pipeline: NetworkStatusPipeline
    configurator: WifiConfigurator
    bridge: CharacteristicBridge
    acquisition: SensorAcquisitionLoop
    advertising: AdvertisingScheduler


def build_node(
    config: DeviceConfig,
    *,
    radio: Radio | None = None,
    bus_factory: BusFactory | None = None,
    reporter: RemoteReporter | None = None,
    inspector: WifiInspector | None = None,
    configurator: WifiConfigurator | None = None,
    http_probe: HttpProbe | None = None,
    stop_event: threading.Event | None = None,
) -> SensorNode:
    stop_event = stop_event or threading.Event()
    state = DeviceState()

    if radio is None:
        from .ble.bluez import BluezRadio

        radio = BluezRadio(
            hci_device=config.hci_device,
            max_connections=config.max_connections,
            check_le_support=config.check_le_support,
        )

    bus_factory = bus_factory or _spi_bus_factory(config)
    reporter = reporter or RemoteReporter(config.report_url, timeout_s=config.report_timeout_s)
    inspector = inspector or ShellWifiInspector(
        config.wifi_interface,
        command_timeout_s=config.command_timeout_s,
    )
    pipeline = NetworkStatusPipeline(
        inspector,
        probe_url=config.probe_url,
        probe_timeout_s=config.probe_timeout_s,
        http_probe=http_probe,
    )
    configurator = configurator or WpaSupplicantConfigurator(
        Path(config.wpa_config_path),
        interface=config.wifi_interface,
        country=config.wpa_country,
        command_timeout_s=config.command_timeout_s,
    )
    bridge = CharacteristicBridge(
        state,
        pipeline,
        configurator,
        notify_interval_s=config.notify_interval_s,
        stop_event=stop_event,
    )
    acquisition = SensorAcquisitionLoop(
        state,
        bus_factory,
        reporter,
        period_s=config.sensor_period_s,
        stop_event=stop_event,
    )
    advertising = AdvertisingScheduler(
        radio,
        config.device_name,
        (SERVICE_UUID,),
        beacon_interval_s=config.beacon_interval_s,
        name_interval_s=config.name_interval_s,
        stop_event=stop_event,
    )
    return SensorNode(
        config=config,
        state=state,
        stop_event=stop_event,
        radio=radio,
        reporter=reporter,
        pipeline=pipeline,
        configurator=configurator,
        bridge=bridge,
        acquisition=acquisition,
        advertising=advertising,
    )


def _spi_bus_factory(config: DeviceConfig) -> BusFactory:
    def _open() -> SensorBus:
        return open_spidev(config.spi_bus, config.spi_device, max_speed_hz=config.spi_max_speed_hz)

    return _open


def bring_up(node: SensorNode) -> None:
    """Start acquisition, then the radio, identity, GATT service and advertising.

    Raises RadioError (including IdentityResolutionError) when the radio
    cannot be powered on, its address cannot be read, or the service cannot
    be registered. Those are fatal for the process.
    """

    # Sampling starts before the radio so a reading is ready for the first peer.
    node.acquisition.start()

    node.radio.power_on()
    identity = node.radio.resolve_identity()
    node.state.set_identity(identity)
    logger.info("device identity %s", identity)

    node.radio.register_service(build_service(node.bridge))
    node.advertising.start()
    logger.info(
        "advertising as %r (%s)",
        node.config.device_name,
        node.advertising.mode.value,
    )


def shutdown(node: SensorNode) -> None:
    node.stop_event.set()
    node.advertising.join(_JOIN_TIMEOUT_S)
    node.acquisition.join(_JOIN_TIMEOUT_S)
    node.reporter.close()
    try:
        node.radio.close()
    except RadioError as exc:
        logger.warning("closing radio failed: %s", exc)


def run(config: DeviceConfig, **kwargs: Any) -> int:
    node = build_node(config, **kwargs)
    try:
        bring_up(node)
    except RadioError as exc:
        logger.critical("bluetooth bring-up failed: %s", exc)
        shutdown(node)
        return 1

    node.stop_event.wait()
    logger.info("shutting down")
    shutdown(node)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thermnode",
        description="BLE temperature sensor node",
    )
    parser.add_argument("--config", dest="config_path", help="YAML config file")
    parser.add_argument("--mc", dest="max_connections", type=int, help="Maximum concurrent connections")
    parser.add_argument("--id", dest="beacon_interval_s", help="iBeacon duration (0 disables alternation)")
    parser.add_argument("--ii", dest="name_interval_s", help="Name/services advertising interval")
    parser.add_argument("--name", dest="device_name", help="Advertised device name")
    parser.add_argument("--dev", dest="hci_device", type=int, help="HCI device id (-1 = first adapter)")
    parser.add_argument(
        "--chk",
        dest="check_le_support",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Check the adapter supports LE advertising",
    )
    parser.add_argument("--logging-host", dest="syslog_host", help="Syslog host")
    parser.add_argument("--logging-port", dest="syslog_port", type=int, help="Syslog UDP port")
    parser.add_argument("--logging-level", dest="log_level", help="Log level (DEBUG, INFO, ...)")
    parser.add_argument("--log-format", dest="log_format", choices=["text", "json"], help="Log format")
    return parser


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        logger.info("received signal %s", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()

    args = build_arg_parser().parse_args(argv)
    try:
        config = load_device_config(overrides=vars(args))
    except ConfigError as exc:
        raise SystemExit(f"[thermnode] invalid config: {exc}") from exc

    configure_logging(
        level=config.log_level,
        log_format=config.log_format,
        syslog_host=config.syslog_host,
        syslog_port=config.syslog_port,
    )
    logger.info(
        "configuring sensor node: name=%r mc=%d dev=%d beacon=%.1fs name_interval=%.1fs report=%s",
        config.device_name,
        config.max_connections,
        config.hci_device,
        config.beacon_interval_s,
        config.name_interval_s,
        config.report_url or "disabled",
    )

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    return run(config, stop_event=stop_event)
