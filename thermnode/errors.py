from __future__ import annotations


class ThermNodeError(Exception):
    """Base class for errors raised by the sensor node."""


class ConfigError(ThermNodeError, ValueError):
    """Raised when process configuration is invalid."""


class SensorError(ThermNodeError):
    """Raised when the temperature sensor cannot produce a reading."""


class SensorBusUnavailableError(SensorError):
    """Raised when the sensor bus could not be opened."""


class SensorReadError(SensorError):
    """Raised when a bus read fails or returns too few bytes."""


class NetworkQueryError(ThermNodeError):
    """Raised when a WiFi inspection command fails."""


class NetworkConfigError(ThermNodeError):
    """Raised when a WiFi configuration cannot be applied."""


class ReportError(ThermNodeError):
    """Raised when the remote collector rejects or never receives a report."""


class RadioError(ThermNodeError):
    """Raised when the Bluetooth radio cannot be brought up or driven."""


class IdentityResolutionError(RadioError):
    """Raised when the adapter address cannot be read after power-on."""


class IdentityAlreadySetError(ThermNodeError):
    """Raised when identity is written a second time with a different value."""
