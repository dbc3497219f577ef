#!/usr/bin/env python3
"""
Immediate Alert ("Find Me") BLE CLI (Linux / BlueZ)
---------------------------------------------------

Finds a BLE peripheral through BlueZ, connects to it, and sets the Alert
Level characteristic of its Immediate Alert Service, making the device beep,
flash or stop doing so.

It uses:
  - dbus-fast (BlueZ object tree over the system bus)
  - bleak     (GATT UUID tables, BlueZ D-Bus error type)

Usage examples:

  # Make a tag alert loudly, using the first adapter found
  python3 findme_ble_cli.py --device AA:BB:CC:DD:EE:FF --alert-level high

  # Silence it again, through hci1 only
  python3 findme_ble_cli.py -i hci1 -b AA:BB:CC:DD:EE:FF -a none

Nothing happens until BlueZ announces an adapter; the adapter is powered on,
discovery is started and the device is connected as the objects show up.
One second after the device is connected the discovered characteristics are
scanned and the alert level is written once.
"""

import argparse
import asyncio
import enum
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from bleak.exc import BleakDBusError
from bleak.uuids import normalize_uuid_16, uuidstr_to_str
from dbus_fast import Variant
from dbus_fast.errors import AuthError

from bluez_objects import GATT_CHARACTERISTIC_INTERFACE, BluezObjectClient, BluezProxy, InterfaceKind


# ---------------------------------------------------------------------
# Configuration & Constants
# ---------------------------------------------------------------------

IMMEDIATE_ALERT_UUID = normalize_uuid_16(0x1802)
ALERT_LEVEL_CHR_UUID = normalize_uuid_16(0x2A06)

# Grace period for service/characteristic objects still arriving after connect
WRITE_DELAY_SEC = 1.0

DEFAULT_ADAPTER = os.getenv("FINDME_ADAPTER", "").strip() or None
DEFAULT_TIMEOUT = os.getenv("FINDME_TIMEOUT", "").strip()


class AlertLevel(enum.IntEnum):
    NONE = 0x00
    MILD = 0x01
    HIGH = 0x02

    @classmethod
    def parse(cls, literal: str) -> "AlertLevel":
        """Parse one of the CLI literals none|mild|high (lower case only)."""
        if literal not in ("none", "mild", "high"):
            raise ValueError(f"invalid alert level: {literal!r}")
        return cls[literal.upper()]

    @property
    def label(self) -> str:
        return self.name.lower()

    def encode(self) -> bytes:
        return bytes([self.value])


class BootstrapState(enum.Enum):
    IDLE = "idle"
    POWERING_ON = "powering on"
    STARTING_DISCOVERY = "starting discovery"
    DISCOVERING = "discovering"


@dataclass(frozen=True)
class Characteristic:
    path: str
    proxy: BluezProxy


@dataclass
class RunState:
    target_address: str
    alert_level: AlertLevel
    adapter_filter: Optional[str] = None
    adapter: Optional[BluezProxy] = None
    immediate_alert_service_path: Optional[str] = None
    characteristics: List[Characteristic] = field(default_factory=list)
    pending_timer: Optional[asyncio.Task] = None


# ---------------------------------------------------------------------
# Property helpers
# ---------------------------------------------------------------------


def get_typed_property(proxy, name: str, signature: str, report_missing: bool = False):
    """
    Read a cached property and check its D-Bus type.

    Returns None when the property is absent or has another type; the caller
    skips the object in both cases.
    """
    variant = proxy.get_property(name)
    if variant is None:
        if report_missing:
            print(f"Could not read property {name}", file=sys.stderr)
        return None

    if variant.signature != signature:
        print(f"Invalid type for {name} on {proxy.path}", file=sys.stderr)
        return None

    return variant.value


async def write_alert_value(proxy, payload: bytes):
    # GattCharacteristic1 exposes Value read-only, writes go through WriteValue
    if proxy.interface == GATT_CHARACTERISTIC_INTERFACE:
        await proxy.call_method("WriteValue", "aya{sv}", [payload, {}])
    else:
        await proxy.set_property("Value", Variant("ay", payload))


# ---------------------------------------------------------------------
# Discovery / connection state machine
# ---------------------------------------------------------------------


class FindMeSession:
    """
    Owns the run state and reacts to BlueZ objects as they are announced.

    ``finished`` resolves to the process exit status once the run is over:
    after the alert write completes, or when the Immediate Alert Service
    turns out to be missing.
    """

    def __init__(self, state: RunState, sleep=asyncio.sleep):
        self.state = state
        self.bootstrap_state = BootstrapState.IDLE
        self.device_matched = False
        self.write_attempted = False
        self.finished = asyncio.get_running_loop().create_future()
        self._sleep = sleep
        self._tasks = set()
        self._handlers = {
            InterfaceKind.ADAPTER: self._adapter_appeared,
            InterfaceKind.DEVICE: self._device_appeared,
            InterfaceKind.SERVICE: self._service_appeared,
            InterfaceKind.CHARACTERISTIC: self._characteristic_appeared,
        }

    def finish(self, status: int):
        if not self.finished.done():
            self.finished.set_result(status)

    def cancel_pending(self):
        for task in list(self._tasks):
            task.cancel()

    def describe_progress(self) -> str:
        if self.state.adapter is None:
            return "no adapter found"
        if not self.device_matched:
            return f"adapter {self.bootstrap_state.value}, device {self.state.target_address} not found"
        if self.state.pending_timer is None:
            return f"device {self.state.target_address} not connected"
        return "alert level not written"

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"Unexpected error: {exc!r}", file=sys.stderr)
            self.finish(1)

    # -- announcements -------------------------------------------------

    def on_object_appeared(self, proxy):
        handler = self._handlers.get(proxy.kind)
        if handler is not None:
            handler(proxy)

    def _adapter_appeared(self, proxy):
        # Use either the first adapter found or the one given by --adapter
        if self.state.adapter is not None:
            return

        adapter_filter = self.state.adapter_filter
        if adapter_filter is not None and not proxy.path.endswith(adapter_filter):
            return

        print(f"Found adapter: {proxy.path}", file=sys.stderr)
        self.state.adapter = proxy
        self._spawn(self.bootstrap_adapter(proxy))

    def _device_appeared(self, proxy):
        address = get_typed_property(proxy, "Address", "s")
        if address is None or address != self.state.target_address:
            return

        self.start_connection(proxy)

    def _service_appeared(self, proxy):
        uuid = get_typed_property(proxy, "UUID", "s")
        if uuid is None or uuid != IMMEDIATE_ALERT_UUID:
            return

        if self.state.immediate_alert_service_path is not None:
            return

        print(f"Found {uuidstr_to_str(uuid)} Service: {proxy.path}", file=sys.stderr)
        self.state.immediate_alert_service_path = proxy.path

    def _characteristic_appeared(self, proxy):
        # Matched against the service at write time; the service may come later
        self.state.characteristics.append(Characteristic(proxy.path, proxy))

    # -- adapter bootstrap ---------------------------------------------

    async def bootstrap_adapter(self, adapter):
        """Power the adapter on, then start discovery."""
        self.bootstrap_state = BootstrapState.POWERING_ON
        try:
            await adapter.set_property("Powered", Variant("b", True))
        except BleakDBusError as e:
            print(f"Failed to set Powered: {e}", file=sys.stderr)
            return

        self.bootstrap_state = BootstrapState.STARTING_DISCOVERY
        try:
            await adapter.call_method("StartDiscovery")
        except BleakDBusError as e:
            print(f"Failed to Start Discovery: {e}", file=sys.stderr)
        else:
            print("Discovery started successfully", file=sys.stderr)

        # Objects may already be arriving, so a failed start does not block
        self.bootstrap_state = BootstrapState.DISCOVERING

    # -- device connection ---------------------------------------------

    def start_connection(self, device):
        if self.device_matched:
            return
        self.device_matched = True

        connected = get_typed_property(device, "Connected", "b", report_missing=True)
        if connected is None:
            return

        if connected:
            self.arm_write_trigger()
        else:
            self._spawn(self.connect_device(device))

    async def connect_device(self, device):
        try:
            await device.call_method("Connect")
        except BleakDBusError as e:
            print(f"Failed to Connect: {e}", file=sys.stderr)
            return

        print("Connected successfully", file=sys.stderr)
        self.arm_write_trigger()

    # -- deferred write ------------------------------------------------

    def arm_write_trigger(self) -> asyncio.Task:
        if self.state.pending_timer is None:
            self.state.pending_timer = self._spawn(self._fire_after_delay())
        return self.state.pending_timer

    async def _fire_after_delay(self):
        await self._sleep(WRITE_DELAY_SEC)
        await self.write_immediate_alert()

    async def write_immediate_alert(self):
        if self.state.immediate_alert_service_path is None:
            print(f"Immediate Alert Service not found on {self.state.target_address}", file=sys.stderr)
            self.finish(1)
            return

        for characteristic in list(self.state.characteristics):
            if await self.change_alert_level(characteristic):
                return

        print(f"Alert Level characteristic not found on {self.state.target_address}", file=sys.stderr)
        self.finish(1)

    async def change_alert_level(self, characteristic: Characteristic) -> bool:
        """Write the alert level if *characteristic* is the Alert Level characteristic; True once written."""
        if self.write_attempted:
            return True

        if not characteristic.path.startswith(self.state.immediate_alert_service_path + "/"):
            return False

        uuid = get_typed_property(characteristic.proxy, "UUID", "s")
        if uuid is None or uuid != ALERT_LEVEL_CHR_UUID:
            return False

        print(f"Found IAS Alert Level characteristic: {characteristic.path}", file=sys.stderr)

        level = self.state.alert_level
        self.write_attempted = True
        try:
            await write_alert_value(characteristic.proxy, level.encode())
        except BleakDBusError as e:
            print(f"Failed to set Immediate Alert Level: {e}", file=sys.stderr)
        else:
            print(f"Immediate Alert Level set to {level.label}", file=sys.stderr)

        self.finish(0)
        return True


# ---------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------


async def run(args) -> int:
    state = RunState(
        target_address=args.device,
        alert_level=args.alert_level,
        adapter_filter=args.adapter,
    )
    session = FindMeSession(state)
    client = BluezObjectClient(session.on_object_appeared)

    try:
        try:
            await client.start()
        except (OSError, AuthError, BleakDBusError) as e:
            print(f"Could not connect to BlueZ: {e}", file=sys.stderr)
            return 1

        if not client.service_available:
            print("BlueZ is not running, waiting for org.bluez...", file=sys.stderr)
        print("Waiting for adapter...", file=sys.stderr)
        try:
            return await asyncio.wait_for(session.finished, timeout=args.timeout)
        except asyncio.TimeoutError:
            print(f"Timed out after {args.timeout:g}s: {session.describe_progress()}", file=sys.stderr)
            return 1
    finally:
        session.cancel_pending()
        client.stop()


# ---------------------------------------------------------------------
# CLI setup
# ---------------------------------------------------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Set the Immediate Alert Level of a BLE device")
    p.add_argument(
        "-i",
        "--adapter",
        metavar="hciX",
        default=DEFAULT_ADAPTER,
        help="Specify local adapter interface (default: first found, or env FINDME_ADAPTER)",
    )
    p.add_argument("-b", "--device", metavar="MAC", help="Specify remote Bluetooth address")
    p.add_argument(
        "-a",
        "--alert-level",
        metavar="none|mild|high",
        help="Specify Immediate Alert Level",
    )
    p.add_argument(
        "--timeout",
        default=DEFAULT_TIMEOUT or None,
        help="Give up after this many seconds (default: wait forever, or env FINDME_TIMEOUT)",
    )
    return p


def parse_timeout(value) -> Optional[float]:
    if value is None:
        return None
    try:
        timeout = float(value)
    except ValueError:
        timeout = 0.0
    if not timeout > 0:
        print(f"Error: invalid timeout {value!r}, expected a positive number of seconds", file=sys.stderr)
        sys.exit(1)
    return timeout


def validate_args(args) -> argparse.Namespace:
    """Check required options and convert them; exits with status 1 on bad input."""
    if not args.device:
        print("Error: remote Bluetooth address not specified", file=sys.stderr)
        sys.exit(1)

    if args.alert_level is None:
        print("Error: alert level not specified", file=sys.stderr)
        sys.exit(1)

    try:
        args.alert_level = AlertLevel.parse(args.alert_level)
    except ValueError:
        print("Error: invalid alert level", file=sys.stderr)
        sys.exit(1)

    args.timeout = parse_timeout(args.timeout)
    return args


def main(argv=None):
    parser = build_arg_parser()
    # Bad input never reaches the bus
    args = validate_args(parser.parse_args(argv))
    try:
        status = asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted, exiting.")
        status = 1
    sys.exit(status)


if __name__ == "__main__":
    main()
