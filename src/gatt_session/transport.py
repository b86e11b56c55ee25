"""
Interface between the session layers and a BLE backend.

Every coroutine either returns its result or raises PeripheralError. The bleak
implementation lives in gatt_session.ble_transport; tests use an in-memory one.
"""

from enum import IntEnum
from typing import Callable, Protocol

from gatt_session.models import (
    CharacteristicDescriptor,
    PresentationFormat,
    ServiceDescriptor,
)


class CccdValue(IntEnum):
    """Client Characteristic Configuration Descriptor values (one per write)."""

    NONE = 0x0000
    NOTIFY = 0x0001
    INDICATE = 0x0002


ValueCallback = Callable[[bytes], None]


class GattTransport(Protocol):
    @property
    def address(self) -> str: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def get_services(self) -> list[ServiceDescriptor]: ...

    async def get_characteristics(self, service: ServiceDescriptor) -> list[CharacteristicDescriptor]: ...

    async def get_presentation_formats(self, characteristic: CharacteristicDescriptor) -> list[PresentationFormat]: ...

    async def read(self, characteristic: CharacteristicDescriptor) -> bytes: ...

    async def write(self, characteristic: CharacteristicDescriptor, data: bytes, response: bool = True) -> None: ...

    async def write_client_configuration(
        self,
        characteristic: CharacteristicDescriptor,
        value: CccdValue,
        callback: ValueCallback | None = None,
    ) -> None:
        """Write the CCCD. callback receives every pushed value while enabled."""
        ...


TransportFactory = Callable[..., GattTransport]
