"""
BlueZ object announcements over D-Bus (dbus-fast)
-------------------------------------------------

Mirrors what a GDBus client does for BlueZ: every (object path, interface)
pair exported by ``org.bluez`` becomes one proxy, announced once through a
callback.  Existing objects are replayed from ``GetManagedObjects`` and new
ones arrive through ``InterfacesAdded``.  Cached properties are refreshed from
``PropertiesChanged`` so later reads see current values.
"""

import asyncio
import enum
import sys
from typing import Callable, Dict, Iterable, Optional, Tuple

from bleak.exc import BleakDBusError
from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus


BLUEZ_SERVICE = "org.bluez"
DBUS_SERVICE = "org.freedesktop.DBus"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

# Error replies meaning bluetoothd has not claimed its bus name yet
SERVICE_MISSING_ERRORS = (
    "org.freedesktop.DBus.Error.ServiceUnknown",
    "org.freedesktop.DBus.Error.NameHasNoOwner",
)

ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
# Older BlueZ releases exported GATT objects under these names
LEGACY_SERVICE_INTERFACE = "org.bluez.Service1"
LEGACY_CHARACTERISTIC_INTERFACE = "org.bluez.Characteristic1"
GATT_SERVICE_INTERFACE = "org.bluez.GattService1"
GATT_CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"


class InterfaceKind(enum.Enum):
    ADAPTER = "adapter"
    DEVICE = "device"
    SERVICE = "service"
    CHARACTERISTIC = "characteristic"
    UNKNOWN = "unknown"


_INTERFACE_KINDS = {
    ADAPTER_INTERFACE: InterfaceKind.ADAPTER,
    DEVICE_INTERFACE: InterfaceKind.DEVICE,
    LEGACY_SERVICE_INTERFACE: InterfaceKind.SERVICE,
    GATT_SERVICE_INTERFACE: InterfaceKind.SERVICE,
    LEGACY_CHARACTERISTIC_INTERFACE: InterfaceKind.CHARACTERISTIC,
    GATT_CHARACTERISTIC_INTERFACE: InterfaceKind.CHARACTERISTIC,
}


def classify_interface(interface: str) -> InterfaceKind:
    """Map a D-Bus interface name onto the object kinds the client acts on."""
    return _INTERFACE_KINDS.get(interface, InterfaceKind.UNKNOWN)


def raise_for_error(reply: Message) -> Message:
    """Turn a D-Bus error reply into a BleakDBusError, pass others through."""
    if reply.message_type == MessageType.ERROR:
        raise BleakDBusError(reply.error_name, reply.body)
    return reply


def add_match_message(rule: str) -> Message:
    return Message(
        destination=DBUS_SERVICE,
        path="/org/freedesktop/DBus",
        interface=DBUS_SERVICE,
        member="AddMatch",
        signature="s",
        body=[rule],
    )


class BluezProxy:
    """
    Local stand-in for one interface of one remote BlueZ object.

    Property reads are served from the cached values that came with the
    announcement.  Property writes and method calls go to the remote side and
    raise BleakDBusError if it answers with an error.
    """

    def __init__(self, bus: MessageBus, path: str, interface: str, properties: Dict[str, Variant]):
        self.bus = bus
        self.path = path
        self.interface = interface
        self.kind = classify_interface(interface)
        self._properties = dict(properties)

    def __repr__(self) -> str:
        return f"<BluezProxy {self.interface} at {self.path}>"

    def get_property(self, name: str) -> Optional[Variant]:
        """Return the cached Variant for *name*, or None if the object has no such property."""
        return self._properties.get(name)

    def update_properties(self, changed: Dict[str, Variant], invalidated: Iterable[str] = ()):
        self._properties.update(changed)
        for name in invalidated:
            self._properties.pop(name, None)

    async def set_property(self, name: str, value: Variant) -> None:
        reply = await self.bus.call(
            Message(
                destination=BLUEZ_SERVICE,
                path=self.path,
                interface=PROPERTIES_INTERFACE,
                member="Set",
                signature="ssv",
                body=[self.interface, name, value],
            )
        )
        raise_for_error(reply)
        self._properties[name] = value

    async def call_method(self, member: str, signature: str = "", body: Iterable = ()) -> list:
        reply = await self.bus.call(
            Message(
                destination=BLUEZ_SERVICE,
                path=self.path,
                interface=self.interface,
                member=member,
                signature=signature,
                body=list(body),
            )
        )
        return raise_for_error(reply).body


class BluezObjectClient:
    """
    Announce every BlueZ object to *on_object_appeared*, once per interface.

    Announcement order follows the bus: the replayed managed objects first,
    then objects as BlueZ adds them.  Nothing is ever withdrawn.  If
    bluetoothd is not running yet the client keeps waiting and replays the
    managed objects once ``org.bluez`` gets an owner.
    """

    def __init__(
        self,
        on_object_appeared: Callable[[BluezProxy], None],
        bus_type: BusType = BusType.SYSTEM,
    ):
        self.on_object_appeared = on_object_appeared
        self.bus_type = bus_type
        self.bus: Optional[MessageBus] = None
        self.proxies: Dict[Tuple[str, str], BluezProxy] = {}
        self.service_available = False
        self._replay_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self.bus = await MessageBus(bus_type=self.bus_type).connect()
        self.bus.add_message_handler(self._handle_message)

        # Subscribe before replaying so nothing added in between is missed
        for rule in (
            f"type='signal',sender='{BLUEZ_SERVICE}',interface='{OBJECT_MANAGER_INTERFACE}',member='InterfacesAdded'",
            f"type='signal',sender='{BLUEZ_SERVICE}',interface='{PROPERTIES_INTERFACE}',member='PropertiesChanged'",
            f"type='signal',sender='{DBUS_SERVICE}',interface='{DBUS_SERVICE}',member='NameOwnerChanged',arg0='{BLUEZ_SERVICE}'",
        ):
            raise_for_error(await self.bus.call(add_match_message(rule)))

        await self.replay_managed_objects()

    async def replay_managed_objects(self) -> bool:
        """Announce what BlueZ already exports; False if bluetoothd is not on the bus."""
        try:
            reply = raise_for_error(
                await self.bus.call(
                    Message(
                        destination=BLUEZ_SERVICE,
                        path="/",
                        interface=OBJECT_MANAGER_INTERFACE,
                        member="GetManagedObjects",
                    )
                )
            )
        except BleakDBusError as e:
            if e.dbus_error not in SERVICE_MISSING_ERRORS:
                raise
            self.service_available = False
            return False

        self.service_available = True
        for path, interfaces in reply.body[0].items():
            self._add_interfaces(path, interfaces)
        return True

    async def _replay_after_name_owned(self) -> None:
        try:
            await self.replay_managed_objects()
        except BleakDBusError as e:
            print(f"Could not list BlueZ objects: {e}", file=sys.stderr)

    def stop(self) -> None:
        if self._replay_task is not None:
            self._replay_task.cancel()
            self._replay_task = None
        if self.bus is None:
            return
        self.bus.remove_message_handler(self._handle_message)
        self.bus.disconnect()
        self.bus = None

    def _add_interfaces(self, path: str, interfaces: Dict[str, Dict[str, Variant]]) -> None:
        for interface, properties in interfaces.items():
            key = (path, interface)
            known = self.proxies.get(key)
            if known is not None:
                # Seen in both the replay and a signal
                known.update_properties(properties)
                continue
            proxy = BluezProxy(self.bus, path, interface, properties)
            self.proxies[key] = proxy
            self.on_object_appeared(proxy)

    def _handle_message(self, message: Message) -> None:
        if message.message_type != MessageType.SIGNAL:
            return
        if message.interface == OBJECT_MANAGER_INTERFACE and message.member == "InterfacesAdded":
            path, interfaces = message.body
            self._add_interfaces(path, interfaces)
        elif message.interface == PROPERTIES_INTERFACE and message.member == "PropertiesChanged":
            interface, changed, invalidated = message.body
            proxy = self.proxies.get((message.path, interface))
            if proxy is not None:
                proxy.update_properties(changed, invalidated)
        elif message.interface == DBUS_SERVICE and message.member == "NameOwnerChanged":
            name, _old_owner, new_owner = message.body
            if name != BLUEZ_SERVICE:
                return
            if not new_owner:
                self.service_available = False
                return
            self._replay_task = asyncio.get_running_loop().create_task(self._replay_after_name_owned())
