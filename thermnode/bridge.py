from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable

from .ble.radio import (
    CONFIG_CHARACTERISTIC_UUID,
    SENSOR_CHARACTERISTIC_UUID,
    SERVICE_UUID,
    CharacteristicDefinition,
    GattStatus,
    Notifier,
    ServiceDefinition,
)
from .errors import NetworkConfigError
from .network import NetworkConfig, NetworkInfo, NetworkStatusPipeline, WifiConfigurator
from .state import DeviceState, StateSnapshot

logger = logging.getLogger("thermnode.bridge")

SENSOR_ERROR_PAYLOAD = b"ERROR"
DEFAULT_NOTIFY_INTERVAL_S = 30.0

NetworkInfoEncoder = Callable[[NetworkInfo], bytes]


def encode_network_info(info: NetworkInfo) -> bytes:
    return json.dumps(info.to_json(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encode_sensor_value(snapshot: StateSnapshot) -> bytes:
    if snapshot.last_error is not None:
        return SENSOR_ERROR_PAYLOAD
    return str(int(snapshot.last_reading)).encode("ascii")


class CharacteristicBridge:
    """GATT handlers for the network configuration and sensor characteristics.

    Handlers are called by the radio on its own threads. They only touch
    DeviceState through snapshots, so a slow scan or a stalled peer never
    holds the state lock.
    """

    def __init__(
        self,
        state: DeviceState,
        pipeline: NetworkStatusPipeline,
        configurator: WifiConfigurator,
        *,
        notify_interval_s: float = DEFAULT_NOTIFY_INTERVAL_S,
        poll_interval_s: float = 0.5,
        stop_event: threading.Event | None = None,
        encoder: NetworkInfoEncoder | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.pipeline = pipeline
        self.configurator = configurator
        self.notify_interval_s = notify_interval_s
        self.poll_interval_s = poll_interval_s
        self._stop = stop_event or threading.Event()
        self._encoder = encoder or encode_network_info
        self._monotonic = monotonic

    def handle_config_read(self) -> tuple[GattStatus, bytes]:
        try:
            info = self.pipeline.query()
        except Exception:
            logger.exception("network status query failed")
            return GattStatus.UNEXPECTED_ERROR, b""

        try:
            payload = self._encoder(info)
        except (TypeError, ValueError) as exc:
            logger.error("error marshalling network info for reporting: %s", exc)
            return GattStatus.UNEXPECTED_ERROR, b""
        return GattStatus.SUCCESS, payload

    def handle_config_write(self, data: bytes) -> GattStatus:
        try:
            config = NetworkConfig.from_json(bytes(data))
        except NetworkConfigError as exc:
            logger.error("error unmarshalling network config from peer: %s", exc)
            return GattStatus.UNEXPECTED_ERROR

        try:
            self.configurator.apply(config)
        except NetworkConfigError as exc:
            logger.error("error configuring network: %s", exc)
            return GattStatus.UNEXPECTED_ERROR
        return GattStatus.SUCCESS

    def handle_sensor_notify(self, notifier: Notifier) -> None:
        logger.info("sensor subscription started")
        while not notifier.done() and not self._stop.is_set():
            payload = encode_sensor_value(self.state.read())
            try:
                notifier.notify(payload)
            except Exception as exc:
                logger.warning("sensor notify failed, ending subscription: %s", exc)
                break
            if self._hold(notifier):
                break
        logger.info("sensor subscription ended")

    def _hold(self, notifier: Notifier) -> bool:
        """Wait one notify interval. True when the subscription or process ended."""

        deadline = self._monotonic() + self.notify_interval_s
        while True:
            if notifier.done():
                return True
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return False
            if self._stop.wait(min(self.poll_interval_s, remaining)):
                return True


def build_service(bridge: CharacteristicBridge) -> ServiceDefinition:
    return ServiceDefinition(
        uuid=SERVICE_UUID,
        characteristics=(
            CharacteristicDefinition(
                uuid=CONFIG_CHARACTERISTIC_UUID,
                on_read=bridge.handle_config_read,
                on_write=bridge.handle_config_write,
            ),
            CharacteristicDefinition(
                uuid=SENSOR_CHARACTERISTIC_UUID,
                on_notify=bridge.handle_sensor_notify,
            ),
        ),
    )
