from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Protocol, Sequence

SERVICE_UUID = "d9f99901-97cd-4506-ae8b-ceecf44b84c4"
CONFIG_CHARACTERISTIC_UUID = "d9f99901-97cd-4506-ae8b-ceecf44b84c5"
SENSOR_CHARACTERISTIC_UUID = "d9f99901-97cd-4506-ae8b-ceecf44b84c6"

APPLE_COMPANY_ID = 0x004C
_IBEACON_PREFIX = b"\x02\x15"


class GattStatus(IntEnum):
    """ATT status codes returned to the peer."""

    SUCCESS = 0x00
    UNEXPECTED_ERROR = 0x0E


class Notifier(Protocol):
    def done(self) -> bool: ...

    def notify(self, data: bytes) -> None: ...


ReadHandler = Callable[[], tuple[GattStatus, bytes]]
WriteHandler = Callable[[bytes], GattStatus]
NotifyHandler = Callable[[Notifier], None]


@dataclass(frozen=True)
class CharacteristicDefinition:
    uuid: str
    on_read: ReadHandler | None = None
    on_write: WriteHandler | None = None
    on_notify: NotifyHandler | None = None

    @property
    def flags(self) -> tuple[str, ...]:
        out: list[str] = []
        if self.on_read is not None:
            out.append("read")
        if self.on_write is not None:
            out.append("write")
        if self.on_notify is not None:
            out.append("notify")
        return tuple(out)


@dataclass(frozen=True)
class ServiceDefinition:
    uuid: str
    characteristics: tuple[CharacteristicDefinition, ...]


@dataclass(frozen=True)
class IBeacon:
    proximity_uuid: str
    major: int
    minor: int
    measured_power: int

    def manufacturer_data(self) -> bytes:
        """Apple manufacturer-specific payload (without the company id)."""

        return _IBEACON_PREFIX + struct.pack(
            ">16sHHb",
            uuid.UUID(self.proximity_uuid).bytes,
            self.major,
            self.minor,
            self.measured_power,
        )


DEFAULT_BEACON = IBeacon(
    proximity_uuid="5affffff-ffff-ffff-ffff-ffffffffffff",
    major=1,
    minor=2,
    measured_power=-59,
)


class Radio(Protocol):
    """BLE peripheral capability used by bring-up and the advertising loop."""

    def power_on(self) -> None: ...

    def resolve_identity(self) -> str: ...

    def register_service(self, service: ServiceDefinition) -> None: ...

    def advertise_name_and_services(self, name: str, service_uuids: Sequence[str]) -> None: ...

    def advertise_beacon(self, beacon: IBeacon) -> None: ...

    def close(self) -> None: ...
