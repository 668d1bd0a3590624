from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Sequence

from .ble.radio import DEFAULT_BEACON, IBeacon, Radio
from .errors import RadioError

logger = logging.getLogger("thermnode.advertising")

WaitFn = Callable[[float], bool]
PhaseCallback = Callable[["AdvertisingPhase"], None]


class AdvertisingMode(str, Enum):
    STATIC = "STATIC"
    ALTERNATING = "ALTERNATING"


class AdvertisingPhase(str, Enum):
    NAME_ONLY = "NAME_ONLY"
    NAME_MODE = "NAME_MODE"
    BEACON_MODE = "BEACON_MODE"


class AdvertisingScheduler:
    """Alternates between iBeacon and name+services advertising.

    With a zero beacon interval the device advertises its name and services
    once and stays there. Otherwise it broadcasts the beacon for
    ``beacon_interval_s``, then name+services for ``name_interval_s``, and
    repeats until the stop event is set.
    """

    def __init__(
        self,
        radio: Radio,
        name: str,
        service_uuids: Sequence[str],
        *,
        beacon_interval_s: float = 0.0,
        name_interval_s: float = 5.0,
        beacon: IBeacon = DEFAULT_BEACON,
        stop_event: threading.Event | None = None,
        wait: WaitFn | None = None,
        on_phase: PhaseCallback | None = None,
    ) -> None:
        if beacon_interval_s < 0:
            raise ValueError("beacon_interval_s must be >= 0")
        if beacon_interval_s > 0 and name_interval_s <= 0:
            raise ValueError("name_interval_s must be > 0 when alternating")

        self.radio = radio
        self.name = name
        self.service_uuids = tuple(service_uuids)
        self.beacon_interval_s = float(beacon_interval_s)
        self.name_interval_s = float(name_interval_s)
        self.beacon = beacon
        self._stop = stop_event or threading.Event()
        self._wait = wait or self._stop.wait
        self._on_phase = on_phase
        self._phase: AdvertisingPhase | None = None
        self._thread: threading.Thread | None = None

    @property
    def mode(self) -> AdvertisingMode:
        return AdvertisingMode.STATIC if self.beacon_interval_s == 0 else AdvertisingMode.ALTERNATING

    @property
    def phase(self) -> AdvertisingPhase | None:
        return self._phase

    def start(self) -> threading.Thread | None:
        if self.mode is AdvertisingMode.STATIC:
            self._enter(AdvertisingPhase.NAME_ONLY)
            return None
        self._thread = threading.Thread(target=self.run, name="advertising", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        logger.info(
            "alternating advertising: beacon %.1fs, name %.1fs",
            self.beacon_interval_s,
            self.name_interval_s,
        )
        while not self._stop.is_set():
            self._enter(AdvertisingPhase.BEACON_MODE)
            if self._wait(self.beacon_interval_s):
                break
            self._enter(AdvertisingPhase.NAME_MODE)
            if self._wait(self.name_interval_s):
                break
        logger.info("advertising scheduler stopped")

    def _enter(self, phase: AdvertisingPhase) -> None:
        try:
            if phase is AdvertisingPhase.BEACON_MODE:
                self.radio.advertise_beacon(self.beacon)
            else:
                self.radio.advertise_name_and_services(self.name, self.service_uuids)
        except RadioError as exc:
            logger.error("switching advertising to %s failed: %s", phase.value, exc)

        self._phase = phase
        logger.debug("advertising phase %s", phase.value)
        if self._on_phase is not None:
            self._on_phase(phase)
