from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

from .errors import IdentityAlreadySetError


@dataclass
class DeviceFields:
    """Mutable fields behind the device lock. Only mutators see this object."""

    identity: str = ""
    last_reading: int = 0
    last_error: BaseException | None = None


Mutator = Callable[[DeviceFields], None]


@dataclass(frozen=True)
class StateSnapshot:
    identity: str
    last_reading: int
    last_error: BaseException | None

    @property
    def has_identity(self) -> bool:
        return bool(self.identity)

    @property
    def healthy(self) -> bool:
        return self.last_error is None


class DeviceState:
    """Shared device record.

    Every field access happens under one lock. Readers get a copy taken in a
    single acquisition; writers pass a mutator that runs while the lock is
    held. Mutators must only touch memory: sensor reads, network calls and
    radio notifications happen outside the lock.

    ``last_error`` is only cleared by ``record_reading``. Nothing else resets
    it, so consumers always see the last known health of the sensor.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fields = DeviceFields()

    def read(self) -> StateSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def write(self, mutator: Mutator) -> StateSnapshot:
        with self._lock:
            mutator(self._fields)
            return self._snapshot_locked()

    def record_reading(self, value: int) -> StateSnapshot:
        def _apply(fields: DeviceFields) -> None:
            fields.last_reading = int(value)
            fields.last_error = None

        return self.write(_apply)

    def record_error(self, error: BaseException) -> StateSnapshot:
        def _apply(fields: DeviceFields) -> None:
            fields.last_error = error

        return self.write(_apply)

    def set_identity(self, identity: str) -> StateSnapshot:
        if not identity:
            raise ValueError("identity must be non-empty")

        def _apply(fields: DeviceFields) -> None:
            if fields.identity and fields.identity != identity:
                raise IdentityAlreadySetError(
                    f"identity already set to {fields.identity!r}, refusing {identity!r}"
                )
            fields.identity = identity

        return self.write(_apply)

    def _snapshot_locked(self) -> StateSnapshot:
        return StateSnapshot(
            identity=self._fields.identity,
            last_reading=self._fields.last_reading,
            last_error=self._fields.last_error,
        )
