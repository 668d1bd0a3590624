from .radio import (
    CONFIG_CHARACTERISTIC_UUID,
    DEFAULT_BEACON,
    SENSOR_CHARACTERISTIC_UUID,
    SERVICE_UUID,
    CharacteristicDefinition,
    GattStatus,
    IBeacon,
    Notifier,
    Radio,
    ServiceDefinition,
)

__all__ = [
    "CONFIG_CHARACTERISTIC_UUID",
    "DEFAULT_BEACON",
    "SENSOR_CHARACTERISTIC_UUID",
    "SERVICE_UUID",
    "CharacteristicDefinition",
    "GattStatus",
    "IBeacon",
    "Notifier",
    "Radio",
    "ServiceDefinition",
]
