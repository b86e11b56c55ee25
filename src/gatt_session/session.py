"""
Per-characteristic session: read, write, subscribe, and decode.

Pushed values are queued by the subscription observer and decoded one at a time
by the consumer of notifications(); Heart Rate RR samples from pushed values go
into the shared RRSampleBuffer.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable

from gatt_session import codec
from gatt_session.errors import OK, ErrorKind, PeripheralError, Status, failure, status_from
from gatt_session.models import (
    Capabilities,
    CharacteristicDescriptor,
    HeartRate,
    Measurement,
    PresentationFormat,
    RawAttributeValue,
)
from gatt_session.rr_export import RRSampleBuffer
from gatt_session.subscription import SubscriptionStateMachine
from gatt_session.transport import GattTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadResult:
    status: Status
    value: RawAttributeValue | None = None


class CharacteristicSession:
    def __init__(
        self,
        transport: GattTransport,
        characteristic: CharacteristicDescriptor,
        presentation_formats: Iterable[PresentationFormat],
        subscriptions: SubscriptionStateMachine,
        samples: RRSampleBuffer,
        *,
        result_uuid: str = codec.RESULT_CHARACTERISTIC_UUID,
    ):
        self._transport = transport
        self._characteristic = characteristic
        self._formats = tuple(presentation_formats)
        self._subscriptions = subscriptions
        self._samples = samples
        self._result_uuid = result_uuid
        self._queue: asyncio.Queue | None = None

    @property
    def characteristic(self) -> CharacteristicDescriptor:
        return self._characteristic

    @property
    def presentation_formats(self) -> tuple[PresentationFormat, ...]:
        return self._formats

    @property
    def presentation_format(self) -> PresentationFormat | None:
        """The declared format, only when exactly one is declared."""
        if len(self._formats) == 1:
            return self._formats[0]
        return None

    @property
    def can_read(self) -> bool:
        return bool(self._characteristic.capabilities & Capabilities.READ)

    @property
    def can_write(self) -> bool:
        return bool(
            self._characteristic.capabilities & (Capabilities.WRITE | Capabilities.WRITE_WITHOUT_RESPONSE)
        )

    @property
    def can_subscribe(self) -> bool:
        return bool(self._characteristic.capabilities & (Capabilities.NOTIFY | Capabilities.INDICATE))

    @property
    def is_subscribed(self) -> bool:
        return self._subscriptions.is_subscribed_to(self._characteristic)

    async def read(self) -> ReadResult:
        if not self.can_read:
            return ReadResult(failure(ErrorKind.UNSUPPORTED, f"{self._characteristic.uuid} is not readable"))
        try:
            data = await self._transport.read(self._characteristic)
        except PeripheralError as e:
            logger.warning("Read failed: %s", e)
            return ReadResult(status_from(e))
        return ReadResult(OK, RawAttributeValue(bytes(data), self._characteristic.uuid))

    async def write(self, data: bytes) -> Status:
        caps = self._characteristic.capabilities
        if caps & Capabilities.WRITE:
            response = True
        elif caps & Capabilities.WRITE_WITHOUT_RESPONSE:
            response = False
        else:
            return failure(ErrorKind.UNSUPPORTED, f"{self._characteristic.uuid} is not writable")
        try:
            await self._transport.write(self._characteristic, bytes(data), response=response)
        except PeripheralError as e:
            logger.warning("Write failed: %s", e)
            return status_from(e)
        logger.info("Successfully wrote %d bytes to %s", len(data), self._characteristic.uuid)
        return OK

    async def write_text(self, text: str) -> Status:
        if not text:
            return failure(ErrorKind.UNSUPPORTED, "no data to write")
        return await self.write(text.encode("utf-8"))

    async def write_int32(self, value: int) -> Status:
        try:
            data = codec.encode_int32(value)
        except struct.error:
            return failure(ErrorKind.UNSUPPORTED_FORMAT, "data to write has to be an int32")
        return await self.write(data)

    def decode(self, value: RawAttributeValue, observed_at: datetime | None = None) -> Measurement:
        return codec.decode(
            value.data,
            self.presentation_format,
            value.characteristic_uuid,
            self._subscriptions.registered_uuid,
            result_uuid=self._result_uuid,
            observed_at=observed_at,
        )

    async def subscribe(self) -> Status:
        if self.is_subscribed:
            return failure(ErrorKind.ALREADY_ACTIVE, f"{self._characteristic.uuid} is already subscribed")
        queue: asyncio.Queue = asyncio.Queue()

        def observer(value: RawAttributeValue) -> None:
            queue.put_nowait((value, datetime.now()))

        def on_release() -> None:
            queue.put_nowait(None)
            if self._queue is queue:
                self._queue = None

        status = await self._subscriptions.subscribe(self._characteristic, observer, on_release)
        # Only the call that actually subscribed owns the stream.
        if status.ok:
            self._queue = queue
        return status

    async def unsubscribe(self) -> Status:
        if not self.is_subscribed:
            return failure(ErrorKind.ALREADY_INACTIVE, f"{self._characteristic.uuid} is not subscribed")
        return await self._subscriptions.unsubscribe()

    async def notifications(self) -> AsyncIterator[Measurement]:
        """Decode each pushed value once, in arrival order, until the subscription ends."""
        queue = self._queue
        if queue is None:
            return
        while True:
            item = await queue.get()
            if item is None:
                return
            value, received_at = item
            measurement = self.decode(value, received_at)
            if isinstance(measurement, HeartRate):
                self._samples.extend(measurement.rr_samples)
            yield measurement
