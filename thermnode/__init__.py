from .errors import ThermNodeError
from .state import DeviceState, StateSnapshot

__version__ = "0.1.0"

__all__ = [
    "DeviceState",
    "StateSnapshot",
    "ThermNodeError",
    "__version__",
]
