"""BlueZ peripheral over D-Bus.

dbus-next reads D-Bus signatures from method annotations at runtime, so this
module must not use ``from __future__ import annotations``.

All D-Bus traffic happens on one asyncio loop owned by ``BleThread``. The
public ``BluezRadio`` methods are synchronous: they submit a coroutine to that
loop and wait for the result. GATT read/write handlers are awaited on the
loop but run in its default executor, so a slow scan or probe never delays
advertising, notifications or connection tracking. Notify subscriptions get
their own thread so a 30 s notify cadence never blocks the bus.
"""

import asyncio
import concurrent.futures
import itertools
import logging
import re
import threading
from typing import Any, Callable, Coroutine, Sequence

from dbus_next import BusType, DBusError, Message, MessageType, Variant
from dbus_next.aio import MessageBus
from dbus_next.service import PropertyAccess, ServiceInterface, dbus_property, method

from ..errors import IdentityResolutionError, RadioError
from .radio import APPLE_COMPANY_ID, CharacteristicDefinition, GattStatus, IBeacon, ServiceDefinition

logger = logging.getLogger("thermnode.ble")

BLUEZ_SERVICE = "org.bluez"
ADAPTER_IFACE = "org.bluez.Adapter1"
DEVICE_IFACE = "org.bluez.Device1"
GATT_MANAGER_IFACE = "org.bluez.GattManager1"
GATT_SERVICE_IFACE = "org.bluez.GattService1"
GATT_CHARACTERISTIC_IFACE = "org.bluez.GattCharacteristic1"
LE_ADVERTISING_MANAGER_IFACE = "org.bluez.LEAdvertisingManager1"
LE_ADVERTISEMENT_IFACE = "org.bluez.LEAdvertisement1"
DBUS_OM_IFACE = "org.freedesktop.DBus.ObjectManager"
DBUS_PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

APP_PATH = "/org/thermnode"
_ADDRESS_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$")
_DEVICE_PATH_RE = re.compile(r"/dev_([0-9A-Fa-f]{2}(?:_[0-9A-Fa-f]{2}){5})$")


class BleThread:
    """Dedicated thread with a persistent asyncio event loop for D-Bus I/O."""

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RadioError("BLE thread not started")
        return self._loop

    def start(self) -> None:
        """Spawn the daemon thread and block until its loop is running."""
        ready = threading.Event()

        def _run() -> None:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop.set_exception_handler(self._exception_handler)
            self._loop = loop
            ready.set()
            loop.run_forever()
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.run_until_complete(loop.shutdown_default_executor())
            loop.close()

        self._thread = threading.Thread(target=_run, daemon=True, name="ble-io")
        self._thread.start()
        ready.wait()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Submit a coroutine to the BLE loop."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        self.loop.call_soon_threadsafe(fn, *args)

    def stop(self) -> None:
        """Stop the event loop and join the thread."""
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5.0)
        self._loop = None
        self._thread = None

    def _exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(
            "unhandled error in BLE loop: %s",
            context.get("message", "no message"),
            exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
        )


class BluezNotifier:
    """Notifier handed to a sensor-notify handler for one subscription."""

    def __init__(self, characteristic: "GattCharacteristic", ble: BleThread) -> None:
        self._characteristic = characteristic
        self._ble = ble
        self._closed = threading.Event()

    def done(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def notify(self, data: bytes) -> None:
        if self.done():
            raise RadioError("subscription closed")
        self._ble.call_soon(self._characteristic.publish_value, bytes(data))


class GattService(ServiceInterface):
    def __init__(self, path: str, definition: ServiceDefinition) -> None:
        super().__init__(GATT_SERVICE_IFACE)
        self.path = path
        self.definition = definition
        self.characteristic_paths: list[str] = []

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> "s":
        return self.definition.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Primary(self) -> "b":
        return True

    @dbus_property(access=PropertyAccess.READ)
    def Characteristics(self) -> "ao":
        return list(self.characteristic_paths)

    def managed_properties(self) -> dict[str, Variant]:
        return {
            "UUID": Variant("s", self.definition.uuid),
            "Primary": Variant("b", True),
            "Characteristics": Variant("ao", list(self.characteristic_paths)),
        }


class GattCharacteristic(ServiceInterface):
    def __init__(
        self,
        path: str,
        service_path: str,
        definition: CharacteristicDefinition,
        ble: BleThread,
    ) -> None:
        super().__init__(GATT_CHARACTERISTIC_IFACE)
        self.path = path
        self.service_path = service_path
        self.definition = definition
        self._ble = ble
        self._value = b""
        self._read_cache: dict[str, bytes] = {}
        self._notifier: BluezNotifier | None = None
        self._notify_ids = itertools.count(1)

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> "s":
        return self.definition.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Service(self) -> "o":
        return self.service_path

    @dbus_property(access=PropertyAccess.READ)
    def Flags(self) -> "as":
        return list(self.definition.flags)

    @dbus_property(access=PropertyAccess.READ)
    def Value(self) -> "ay":
        return self._value

    @dbus_property(access=PropertyAccess.READ)
    def Notifying(self) -> "b":
        return self._notifier is not None

    @method()
    async def ReadValue(self, options: "a{sv}") -> "ay":
        return await self.read_value(options)

    @method()
    async def WriteValue(self, value: "ay", options: "a{sv}"):
        await self.write_value(bytes(value), options)

    async def read_value(self, options: dict[str, Variant]) -> bytes:
        if self.definition.on_read is None:
            raise DBusError("org.bluez.Error.NotSupported", "read not supported")

        peer = _option_str(options, "device")
        offset = _option_int(options, "offset")
        if offset == 0:
            status, payload = await _offload(self.definition.on_read)
            if status != GattStatus.SUCCESS:
                raise DBusError("org.bluez.Error.Failed", f"read failed with status 0x{int(status):02x}")
            self._read_cache[peer] = payload
            return payload

        # Long reads arrive as follow-up requests with a growing offset;
        # serve them from the payload this peer got at offset 0.
        cached = self._read_cache.get(peer)
        if cached is None or offset > len(cached):
            raise DBusError("org.bluez.Error.InvalidOffset", f"offset {offset} without a matching read")
        return cached[offset:]

    async def write_value(self, data: bytes, options: dict[str, Variant]) -> None:
        if self.definition.on_write is None:
            raise DBusError("org.bluez.Error.NotSupported", "write not supported")
        if _option_int(options, "offset") != 0:
            raise DBusError("org.bluez.Error.InvalidOffset", "long writes are not supported")

        status = await _offload(self.definition.on_write, data)
        if status != GattStatus.SUCCESS:
            raise DBusError("org.bluez.Error.Failed", f"write failed with status 0x{int(status):02x}")

    @method()
    def StartNotify(self):
        if self.definition.on_notify is None:
            raise DBusError("org.bluez.Error.NotSupported", "notify not supported")
        if self._notifier is not None:
            return

        notifier = BluezNotifier(self, self._ble)
        self._notifier = notifier
        self.emit_properties_changed({"Notifying": True})
        threading.Thread(
            target=self.definition.on_notify,
            args=(notifier,),
            name=f"sensor-notify-{next(self._notify_ids)}",
            daemon=True,
        ).start()

    @method()
    def StopNotify(self):
        if self._notifier is None:
            return
        self._notifier.close()
        self._notifier = None
        self.emit_properties_changed({"Notifying": False})

    def publish_value(self, data: bytes) -> None:
        self._value = data
        if self._notifier is not None:
            self.emit_properties_changed({"Value": data})

    def close_subscription(self) -> None:
        if self._notifier is not None:
            self._notifier.close()
            self._notifier = None

    def managed_properties(self) -> dict[str, Variant]:
        return {
            "UUID": Variant("s", self.definition.uuid),
            "Service": Variant("o", self.service_path),
            "Flags": Variant("as", list(self.definition.flags)),
        }


class GattApplication(ServiceInterface):
    """ObjectManager root handed to GattManager1.RegisterApplication."""

    def __init__(self, path: str) -> None:
        super().__init__(DBUS_OM_IFACE)
        self.path = path
        self.services: list[GattService] = []
        self.characteristics: list[GattCharacteristic] = []

    @method()
    def GetManagedObjects(self) -> "a{oa{sa{sv}}}":
        return self.managed_objects()

    def managed_objects(self) -> dict[str, dict[str, dict[str, Variant]]]:
        out: dict[str, dict[str, dict[str, Variant]]] = {}
        for service in self.services:
            out[service.path] = {GATT_SERVICE_IFACE: service.managed_properties()}
        for characteristic in self.characteristics:
            out[characteristic.path] = {GATT_CHARACTERISTIC_IFACE: characteristic.managed_properties()}
        return out


class LEAdvertisement(ServiceInterface):
    """org.bluez.LEAdvertisement1 for either name+services or iBeacon."""

    def __init__(
        self,
        path: str,
        *,
        advertising_type: str,
        local_name: str = "",
        service_uuids: Sequence[str] = (),
        manufacturer_data: dict[int, bytes] | None = None,
    ) -> None:
        super().__init__(LE_ADVERTISEMENT_IFACE)
        self.path = path
        self.advertising_type = advertising_type
        self.local_name = local_name
        self.service_uuids = list(service_uuids)
        self.manufacturer_data = dict(manufacturer_data or {})

    @classmethod
    def for_name(cls, path: str, name: str, service_uuids: Sequence[str]) -> "LEAdvertisement":
        return cls(path, advertising_type="peripheral", local_name=name, service_uuids=service_uuids)

    @classmethod
    def for_beacon(cls, path: str, beacon: IBeacon) -> "LEAdvertisement":
        return cls(
            path,
            advertising_type="broadcast",
            manufacturer_data={APPLE_COMPANY_ID: beacon.manufacturer_data()},
        )

    @dbus_property(access=PropertyAccess.READ)
    def Type(self) -> "s":
        return self.advertising_type

    @dbus_property(access=PropertyAccess.READ)
    def LocalName(self) -> "s":
        return self.local_name

    @dbus_property(access=PropertyAccess.READ)
    def ServiceUUIDs(self) -> "as":
        return list(self.service_uuids)

    @dbus_property(access=PropertyAccess.READ)
    def ManufacturerData(self) -> "a{qv}":
        # dbus-next wants "ay" values as bytes, not list[int].
        return {company: Variant("ay", bytes(data)) for company, data in self.manufacturer_data.items()}

    @dbus_property(access=PropertyAccess.READ)
    def Includes(self) -> "as":
        return []

    @method()
    def Release(self):
        logger.info("advertisement %s released by BlueZ", self.path)


def device_address_from_path(path: str) -> str | None:
    match = _DEVICE_PATH_RE.search(path)
    if not match:
        return None
    return match.group(1).replace("_", ":").upper()


class BluezRadio:
    """Radio implementation backed by BlueZ on the system bus."""

    def __init__(
        self,
        *,
        hci_device: int = -1,
        max_connections: int = 1,
        check_le_support: bool = True,
        call_timeout_s: float = 30.0,
        power_on_timeout_s: float = 10.0,
    ) -> None:
        self.hci_device = hci_device
        self.max_connections = max_connections
        self.check_le_support = check_le_support
        self.call_timeout_s = call_timeout_s
        self.power_on_timeout_s = power_on_timeout_s

        self._ble = BleThread()
        self._bus: MessageBus | None = None
        self._adapter_path: str | None = None
        self._app: GattApplication | None = None
        self._app_registered = False
        self._advert: LEAdvertisement | None = None
        self._advert_ids = itertools.count()
        self._connected: list[str] = []

    # -- synchronous API --------------------------------------------------

    def power_on(self) -> None:
        self._ble.start()
        self._call(self._power_on())
        logger.info("bluetooth adapter %s powered on", self._adapter_path)

    def resolve_identity(self) -> str:
        try:
            address = str(self._call(self._adapter_property("address"))).upper()
        except RadioError as exc:
            raise IdentityResolutionError(f"cannot read adapter address: {exc}") from exc
        if not _ADDRESS_RE.match(address):
            raise IdentityResolutionError(f"adapter reported an invalid address: {address!r}")
        return address

    def register_service(self, service: ServiceDefinition) -> None:
        self._call(self._register_service(service))
        logger.info("registered GATT service %s", service.uuid)

    def advertise_name_and_services(self, name: str, service_uuids: Sequence[str]) -> None:
        path = f"{APP_PATH}/advertisement{next(self._advert_ids)}"
        self._call(self._swap_advertisement(LEAdvertisement.for_name(path, name, service_uuids)))

    def advertise_beacon(self, beacon: IBeacon) -> None:
        path = f"{APP_PATH}/advertisement{next(self._advert_ids)}"
        self._call(self._swap_advertisement(LEAdvertisement.for_beacon(path, beacon)))

    def close(self) -> None:
        if self._bus is not None:
            try:
                self._call(self._teardown())
            except RadioError as exc:
                logger.warning("bluetooth teardown failed: %s", exc)
        self._ble.stop()

    # -- loop-side coroutines ---------------------------------------------

    def _call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        try:
            future = self._ble.submit(coro)
        except RadioError:
            coro.close()
            raise
        try:
            return future.result(timeout=self.call_timeout_s)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise RadioError("timed out waiting for BlueZ") from exc
        except DBusError as exc:
            raise RadioError(f"{exc.type}: {exc.text}") from exc
        except (OSError, EOFError) as exc:
            raise RadioError(f"D-Bus connection failed: {exc}") from exc

    async def _power_on(self) -> None:
        self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        self._adapter_path = await self._find_adapter()
        adapter = await self._interface(self._adapter_path, ADAPTER_IFACE)

        if not await adapter.get_powered():
            await adapter.set_powered(True)

        deadline = asyncio.get_running_loop().time() + self.power_on_timeout_s
        while not await adapter.get_powered():
            if asyncio.get_running_loop().time() >= deadline:
                raise RadioError(f"adapter {self._adapter_path} did not power on")
            await asyncio.sleep(0.2)

        await self._watch_connections()

    async def _find_adapter(self) -> str:
        managed = await self._managed_objects()
        candidates = sorted(path for path, ifaces in managed.items() if ADAPTER_IFACE in ifaces)
        if self.hci_device >= 0:
            wanted = f"/org/bluez/hci{self.hci_device}"
            candidates = [path for path in candidates if path == wanted]
        if not candidates:
            raise RadioError("no bluetooth adapter found (is bluetoothd running?)")

        path = candidates[0]
        if self.check_le_support and LE_ADVERTISING_MANAGER_IFACE not in managed[path]:
            raise RadioError(f"adapter {path} does not support LE advertising")
        return path

    async def _adapter_property(self, name: str) -> Any:
        if self._adapter_path is None:
            raise RadioError("adapter not powered on")
        adapter = await self._interface(self._adapter_path, ADAPTER_IFACE)
        return await getattr(adapter, f"get_{name}")()

    async def _register_service(self, definition: ServiceDefinition) -> None:
        bus = self._require_bus()
        app = GattApplication(APP_PATH)
        service_path = f"{APP_PATH}/service0"
        service = GattService(service_path, definition)
        app.services.append(service)

        for idx, char_def in enumerate(definition.characteristics):
            char_path = f"{service_path}/char{idx}"
            characteristic = GattCharacteristic(char_path, service_path, char_def, self._ble)
            service.characteristic_paths.append(char_path)
            app.characteristics.append(characteristic)

        bus.export(app.path, app)
        bus.export(service.path, service)
        for characteristic in app.characteristics:
            bus.export(characteristic.path, characteristic)

        manager = await self._interface(self._adapter_path or "", GATT_MANAGER_IFACE)
        await manager.call_register_application(app.path, {})
        self._app = app
        self._app_registered = True

    async def _swap_advertisement(self, advert: LEAdvertisement) -> None:
        bus = self._require_bus()
        manager = await self._interface(self._adapter_path or "", LE_ADVERTISING_MANAGER_IFACE)

        previous = self._advert
        if previous is not None:
            try:
                await manager.call_unregister_advertisement(previous.path)
            except DBusError as exc:
                logger.debug("unregister advertisement %s: %s", previous.path, exc.text)
            bus.unexport(previous.path)
            self._advert = None

        bus.export(advert.path, advert)
        await manager.call_register_advertisement(advert.path, {})
        self._advert = advert

    async def _teardown(self) -> None:
        bus = self._require_bus()
        if self._advert is not None:
            manager = await self._interface(self._adapter_path or "", LE_ADVERTISING_MANAGER_IFACE)
            try:
                await manager.call_unregister_advertisement(self._advert.path)
            except DBusError as exc:
                logger.debug("unregister advertisement: %s", exc.text)
            self._advert = None

        if self._app is not None:
            for characteristic in self._app.characteristics:
                characteristic.close_subscription()
            if self._app_registered:
                manager = await self._interface(self._adapter_path or "", GATT_MANAGER_IFACE)
                try:
                    await manager.call_unregister_application(self._app.path)
                except DBusError as exc:
                    logger.debug("unregister application: %s", exc.text)
            self._app = None

        bus.disconnect()
        self._bus = None

    async def _watch_connections(self) -> None:
        bus = self._require_bus()
        rule = (
            "type='signal',sender='org.bluez',"
            f"interface='{DBUS_PROPERTIES_IFACE}',member='PropertiesChanged',arg0='{DEVICE_IFACE}'"
        )
        await bus.call(
            Message(
                destination="org.freedesktop.DBus",
                path="/org/freedesktop/DBus",
                interface="org.freedesktop.DBus",
                member="AddMatch",
                signature="s",
                body=[rule],
            )
        )
        bus.add_message_handler(self._on_message)

    def _on_message(self, msg: Message) -> None:
        if msg.message_type != MessageType.SIGNAL or msg.member != "PropertiesChanged":
            return None
        if not msg.body or msg.body[0] != DEVICE_IFACE:
            return None
        changed = msg.body[1]
        if "Connected" not in changed:
            return None
        self.track_connection(msg.path, bool(changed["Connected"].value))
        return None

    def track_connection(self, device_path: str, connected: bool) -> None:
        address = device_address_from_path(device_path) or device_path
        if not connected:
            if device_path in self._connected:
                self._connected.remove(device_path)
            logger.info("Disconnect: %s", address)
            return

        logger.info("Connect: %s", address)
        if device_path not in self._connected:
            self._connected.append(device_path)
        if len(self._connected) > self.max_connections:
            logger.warning(
                "connection limit %d reached; disconnecting %s", self.max_connections, address
            )
            self._ble.loop.create_task(self._disconnect(device_path))

    async def _disconnect(self, device_path: str) -> None:
        try:
            device = await self._interface(device_path, DEVICE_IFACE)
            await device.call_disconnect()
        except DBusError as exc:
            logger.warning("disconnecting %s failed: %s", device_path, exc.text)

    async def _managed_objects(self) -> dict[str, dict[str, dict[str, Variant]]]:
        om = await self._interface("/", DBUS_OM_IFACE)
        return await om.call_get_managed_objects()

    async def _interface(self, path: str, iface: str) -> Any:
        bus = self._require_bus()
        intro = await bus.introspect(BLUEZ_SERVICE, path)
        return bus.get_proxy_object(BLUEZ_SERVICE, path, intro).get_interface(iface)

    def _require_bus(self) -> MessageBus:
        if self._bus is None:
            raise RadioError("D-Bus connection not established")
        return self._bus


def _option_int(options: dict[str, Variant], key: str) -> int:
    raw = options.get(key)
    if raw is None:
        return 0
    value = raw.value if isinstance(raw, Variant) else raw
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _option_str(options: dict[str, Variant], key: str) -> str:
    raw = options.get(key)
    if raw is None:
        return ""
    return str(raw.value if isinstance(raw, Variant) else raw)


async def _offload(fn: Callable[..., Any], *args: Any) -> Any:
    # Handlers shell out and hit the network; keep them off the D-Bus loop.
    return await asyncio.get_running_loop().run_in_executor(None, fn, *args)
