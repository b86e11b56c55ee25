"""
GattTransport backed by bleak.

Services are resolved once per connect (WinRT: use_cached_services=False) and
enumeration re-reads that collection; other backends only re-query the
peripheral's attribute table on reconnect. Reads go to the peripheral each
time. Every operation races the disconnect
callback so a dropped link fails pending calls with UNREACHABLE instead of
leaving them suspended.
"""

import asyncio
import logging
from typing import Callable

from bleak import BleakClient
from bleak.exc import BleakError
from bleak.uuids import normalize_uuid_str

from gatt_session.codec import PRESENTATION_FORMAT_DESCRIPTOR_UUID, parse_presentation_format
from gatt_session.errors import ErrorKind, MalformedPayloadError, PeripheralError, wrap_exception
from gatt_session.models import (
    Capabilities,
    CharacteristicDescriptor,
    PresentationFormat,
    ServiceDescriptor,
)
from gatt_session.transport import CccdValue, ValueCallback

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 20.0


class BleakTransport:
    def __init__(
        self,
        address: str,
        on_disconnect: Callable[[], None] | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self._address = address
        self._on_disconnect = on_disconnect
        self._lost = asyncio.Event()
        self._closing = False
        self._client = BleakClient(
            address,
            disconnected_callback=self._handle_disconnect,
            timeout=connect_timeout,
            winrt={"use_cached_services": False},
        )

    @property
    def address(self) -> str:
        return self._address

    def _handle_disconnect(self, _client: BleakClient) -> None:
        self._lost.set()
        if self._closing:
            return
        logger.warning("Peripheral %s disconnected", self._address)
        if self._on_disconnect is not None:
            self._on_disconnect()

    async def _call(self, awaitable):
        """Await one peripheral exchange; fail with UNREACHABLE if the link drops first."""
        if self._lost.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise PeripheralError(ErrorKind.UNREACHABLE, "not connected")
        op = asyncio.ensure_future(awaitable)
        lost = asyncio.ensure_future(self._lost.wait())
        try:
            done, _ = await asyncio.wait({op, lost}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            lost.cancel()
            if not op.done():
                op.cancel()
        if op not in done:
            raise PeripheralError(ErrorKind.UNREACHABLE, "connection lost")
        try:
            return op.result()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise wrap_exception(e) from e

    async def connect(self) -> None:
        self._lost.clear()
        self._closing = False
        try:
            await self._client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise wrap_exception(e) from e
        logger.info("Connected to %s", self._address)

    async def disconnect(self) -> None:
        self._closing = True
        try:
            await self._client.disconnect()
        except (BleakError, OSError) as e:
            raise wrap_exception(e) from e
        finally:
            self._lost.set()

    def _check_connected(self) -> None:
        if self._lost.is_set():
            raise PeripheralError(ErrorKind.UNREACHABLE, "not connected")

    async def get_services(self) -> list[ServiceDescriptor]:
        self._check_connected()
        try:
            return [
                ServiceDescriptor(normalize_uuid_str(s.uuid), s.handle, s.description)
                for s in self._client.services
            ]
        except BleakError as e:
            raise wrap_exception(e) from e

    async def get_characteristics(self, service: ServiceDescriptor) -> list[CharacteristicDescriptor]:
        self._check_connected()
        try:
            found = self._client.services.get_service(service.handle)
            if found is None:
                raise PeripheralError(
                    ErrorKind.COMMUNICATION_FAILURE, f"service {service.uuid} is no longer present"
                )
            return [
                CharacteristicDescriptor(
                    uuid=normalize_uuid_str(c.uuid),
                    handle=c.handle,
                    capabilities=Capabilities.from_properties(c.properties),
                    descriptor_uuids=tuple(normalize_uuid_str(d.uuid) for d in c.descriptors),
                    description=c.description,
                )
                for c in found.characteristics
            ]
        except BleakError as e:
            raise wrap_exception(e) from e

    async def get_presentation_formats(self, characteristic: CharacteristicDescriptor) -> list[PresentationFormat]:
        self._check_connected()
        try:
            char = self._client.services.get_characteristic(characteristic.handle)
            descriptors = list(char.descriptors) if char is not None else None
        except BleakError as e:
            raise wrap_exception(e) from e
        if descriptors is None:
            raise PeripheralError(
                ErrorKind.COMMUNICATION_FAILURE, f"characteristic {characteristic.uuid} is no longer present"
            )
        formats = []
        for desc in descriptors:
            if normalize_uuid_str(desc.uuid) != PRESENTATION_FORMAT_DESCRIPTOR_UUID:
                continue
            raw = await self._call(self._client.read_gatt_descriptor(desc.handle))
            try:
                formats.append(parse_presentation_format(bytes(raw)))
            except MalformedPayloadError as e:
                logger.warning("Ignoring presentation format on %s: %s", characteristic.uuid, e)
        return formats

    async def read(self, characteristic: CharacteristicDescriptor) -> bytes:
        return bytes(await self._call(self._client.read_gatt_char(characteristic.handle)))

    async def write(self, characteristic: CharacteristicDescriptor, data: bytes, response: bool = True) -> None:
        await self._call(self._client.write_gatt_char(characteristic.handle, data, response=response))

    async def write_client_configuration(
        self,
        characteristic: CharacteristicDescriptor,
        value: CccdValue,
        callback: ValueCallback | None = None,
    ) -> None:
        # bleak owns the CCCD write: start_notify writes NOTIFY/INDICATE, stop_notify writes NONE.
        if value is CccdValue.NONE:
            await self._call(self._client.stop_notify(characteristic.handle))
            return
        if callback is None:
            raise ValueError("callback required to enable notifications")

        def _on_value(_sender, data: bytearray) -> None:
            callback(bytes(data))

        await self._call(
            self._client.start_notify(
                characteristic.handle,
                _on_value,
                force_indicate=value is CccdValue.INDICATE,
            )
        )
