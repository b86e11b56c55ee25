"""In-memory GattTransport and sample peripheral layout shared by the tests."""

import asyncio

import pytest

from gatt_session.codec import (
    BATTERY_LEVEL_UUID,
    HEART_RATE_MEASUREMENT_UUID,
    RESULT_CHARACTERISTIC_UUID,
)
from gatt_session.models import Capabilities, CharacteristicDescriptor, ServiceDescriptor
from gatt_session.transport import CccdValue

HEART_RATE_SERVICE = ServiceDescriptor("0000180d-0000-1000-8000-00805f9b34fb", 10, "Heart Rate")
BATTERY_SERVICE = ServiceDescriptor("0000180f-0000-1000-8000-00805f9b34fb", 20, "Battery Service")
CALC_SERVICE = ServiceDescriptor("caecface-e1d9-11e6-bf01-fe55135034f0", 30, "Calculator")

HRM = CharacteristicDescriptor(HEART_RATE_MEASUREMENT_UUID, 11, Capabilities.NOTIFY)
BATTERY = CharacteristicDescriptor(
    BATTERY_LEVEL_UUID, 21, Capabilities.READ | Capabilities.NOTIFY
)
RESULT = CharacteristicDescriptor(
    RESULT_CHARACTERISTIC_UUID, 31, Capabilities.READ | Capabilities.INDICATE | Capabilities.NOTIFY
)
OPERAND = CharacteristicDescriptor(
    "caec2ebc-e1d9-11e6-bf01-fe55135034f1", 33, Capabilities.WRITE
)
PLAIN = CharacteristicDescriptor(
    "12345678-1234-5678-1234-567812345678", 35, Capabilities.READ | Capabilities.WRITE_WITHOUT_RESPONSE
)


class FakeTransport:
    """
    Records every call. Set fail["<op>"] to a PeripheralError to make that
    operation raise; set gate to an asyncio.Event to hold CCCD writes until set.
    """

    def __init__(self, address="AA:BB:CC:DD:EE:FF", on_disconnect=None, connect_timeout=None):
        self.address = address
        self.on_disconnect = on_disconnect
        self.connect_timeout = connect_timeout
        self.connected = False
        self.services = [HEART_RATE_SERVICE, BATTERY_SERVICE, CALC_SERVICE]
        self.characteristics = {
            HEART_RATE_SERVICE.handle: [HRM],
            BATTERY_SERVICE.handle: [BATTERY],
            CALC_SERVICE.handle: [OPERAND, RESULT, PLAIN],
        }
        self.formats = {}
        self.values = {}
        self.fail = {}
        self.calls = []
        self.cccd_writes = []
        self.writes = []
        self.callbacks = {}
        self.gate = None

    def _check(self, op):
        self.calls.append(op)
        err = self.fail.get(op)
        if err is not None:
            raise err

    async def connect(self):
        self._check("connect")
        self.connected = True

    async def disconnect(self):
        self._check("disconnect")
        self.connected = False

    async def get_services(self):
        self._check("services")
        return list(self.services)

    async def get_characteristics(self, service):
        self._check("characteristics")
        return list(self.characteristics.get(service.handle, []))

    async def get_presentation_formats(self, characteristic):
        self._check("formats")
        return list(self.formats.get(characteristic.handle, []))

    async def read(self, characteristic):
        self._check("read")
        return self.values[characteristic.handle]

    async def write(self, characteristic, data, response=True):
        self._check("write")
        self.writes.append((characteristic.uuid, data, response))

    async def write_client_configuration(self, characteristic, value, callback=None):
        if self.gate is not None:
            await self.gate.wait()
        self._check("cccd")
        self.cccd_writes.append((characteristic.uuid, value))
        if value is CccdValue.NONE:
            self.callbacks.pop(characteristic.handle, None)
        else:
            self.callbacks[characteristic.handle] = callback

    def push(self, characteristic, data):
        """Simulate the peripheral pushing a value."""
        self.callbacks[characteristic.handle](bytes(data))

    def drop(self):
        """Simulate link loss."""
        self.connected = False
        if self.on_disconnect is not None:
            self.on_disconnect()


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def factory(transport):
    """Transport factory for ConnectionManager that hands out the fixture transport."""

    def make(address, on_disconnect=None, connect_timeout=None):
        transport.address = address
        transport.on_disconnect = on_disconnect
        transport.connect_timeout = connect_timeout
        return transport

    return make
