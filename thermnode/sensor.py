from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, runtime_checkable

from .errors import SensorBusUnavailableError, SensorError, SensorReadError
from .reporting import SnapshotReporter
from .state import DeviceState, StateSnapshot

logger = logging.getLogger("thermnode.sensor")

DEFAULT_PERIOD_S = 30.0
DEFAULT_READ_SIZE = 3


@runtime_checkable
class SensorBus(Protocol):
    def readbytes(self, length: int, /) -> list[int]: ...

    def close(self) -> None: ...


BusFactory = Callable[[], SensorBus]


def open_spidev(
    bus: int = 0,
    device: int = 1,
    *,
    max_speed_hz: int = 1_000_000,
    mode: int = 0,
    bits_per_word: int = 8,
) -> SensorBus:
    try:
        import spidev  # type: ignore[import-not-found]
    except ImportError as exc:
        raise SensorBusUnavailableError(
            "SPI temperature sensor requires spidev (install on Pi: pip install spidev)"
        ) from exc

    handle = spidev.SpiDev()
    try:
        handle.open(bus, device)
        handle.max_speed_hz = max_speed_hz
        handle.mode = mode
        handle.bits_per_word = bits_per_word
    except OSError as exc:
        handle.close()
        raise SensorBusUnavailableError(f"cannot open /dev/spidev{bus}.{device}: {exc}") from exc
    return handle


class SensorAcquisitionLoop:
    """Reads the sensor on a fixed period and publishes into DeviceState.

    The bus is opened once when the loop starts and held until it exits. A
    failed open does not stop the loop: every cycle records the same setup
    error, exactly like a failing read, and the loop keeps going. There is no
    backoff and no retry cap.
    """

    def __init__(
        self,
        state: DeviceState,
        bus_factory: BusFactory,
        reporter: SnapshotReporter,
        *,
        period_s: float = DEFAULT_PERIOD_S,
        read_size: int = DEFAULT_READ_SIZE,
        stop_event: threading.Event | None = None,
    ) -> None:
        if read_size < 1:
            raise ValueError("read_size must be >= 1")
        self.state = state
        self.period_s = period_s
        self.read_size = read_size
        self._bus_factory = bus_factory
        self._reporter = reporter
        self._stop = stop_event or threading.Event()
        self._setup_error: SensorError | None = None
        self._last_error_signature: str | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="sensor-acquisition", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        bus = self._open_bus()
        try:
            while not self._stop.is_set():
                self.run_cycle(bus)
                if self._stop.wait(self.period_s):
                    break
        finally:
            if bus is not None:
                try:
                    bus.close()
                except OSError as exc:
                    logger.warning("closing sensor bus failed: %s", exc)
            logger.info("sensor acquisition stopped")

    def run_cycle(self, bus: SensorBus | None) -> StateSnapshot:
        try:
            data = self._read(bus)
        except SensorError as exc:
            self._log_failure(exc)
            return self.state.record_error(exc)
        except Exception as exc:
            logger.exception("unexpected sensor failure")
            return self.state.record_error(exc)

        snapshot = self.state.record_reading(data[0])
        if self._last_error_signature is not None:
            logger.info("sensor recovered; reading=%s", snapshot.last_reading)
            self._last_error_signature = None

        if snapshot.has_identity:
            try:
                self._reporter.submit(snapshot)
            except Exception:
                logger.exception("report submission failed")
        return snapshot

    def _open_bus(self) -> SensorBus | None:
        try:
            return self._bus_factory()
        except SensorError as exc:
            self._setup_error = exc
        except Exception as exc:
            self._setup_error = SensorBusUnavailableError(f"sensor bus setup failed: {exc}")
        self._log_failure(self._setup_error)
        self.state.record_error(self._setup_error)
        return None

    def _read(self, bus: SensorBus | None) -> list[int]:
        if bus is None:
            raise self._setup_error or SensorBusUnavailableError("sensor bus not initialised")
        try:
            data = list(bus.readbytes(self.read_size))
        except OSError as exc:
            raise SensorReadError(f"sensor read failed: {exc}") from exc
        if len(data) < self.read_size:
            raise SensorReadError(f"short sensor read: wanted {self.read_size} bytes, got {len(data)}")
        return data

    def _log_failure(self, exc: BaseException) -> None:
        # Same failure every 30 s would flood the log; only report changes.
        signature = f"{type(exc).__name__}:{exc}"
        if signature != self._last_error_signature:
            logger.warning("sensor read failed: %s", exc)
            self._last_error_signature = signature
        else:
            logger.debug("sensor read still failing: %s", exc)
