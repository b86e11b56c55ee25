"""
Notification/indication subscription life-cycle for one characteristic at a time.

IDLE -> SUBSCRIBING -> SUBSCRIBED -> UNSUBSCRIBING -> IDLE

The state is updated before each descriptor write is awaited, so a second call
arriving while a write is pending sees the transitional state and is rejected.
A failed or cancelled write puts the machine back where it was.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable

from gatt_session.errors import OK, ErrorKind, PeripheralError, Status, failure, status_from
from gatt_session.models import Capabilities, CharacteristicDescriptor, RawAttributeValue
from gatt_session.transport import CccdValue, GattTransport

logger = logging.getLogger(__name__)

Observer = Callable[[RawAttributeValue], None]


class SubscriptionState(Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBING = "unsubscribing"


def configuration_value_for(capabilities: Capabilities) -> CccdValue | None:
    """INDICATE wins over NOTIFY; None when the characteristic supports neither."""
    if capabilities & Capabilities.INDICATE:
        return CccdValue.INDICATE
    if capabilities & Capabilities.NOTIFY:
        return CccdValue.NOTIFY
    return None


class SubscriptionStateMachine:
    def __init__(self, transport: GattTransport):
        self._transport = transport
        self._state = SubscriptionState.IDLE
        self._characteristic: CharacteristicDescriptor | None = None
        self._observer: Observer | None = None
        self._on_release: Callable[[], None] | None = None
        # Bumped by reset(); a write that straddles a reset must not restore old state.
        self._generation = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def characteristic(self) -> CharacteristicDescriptor | None:
        """Characteristic being subscribed, subscribed, or unsubscribed; None when idle."""
        return self._characteristic

    @property
    def registered_uuid(self) -> str | None:
        if self._state is SubscriptionState.SUBSCRIBED and self._characteristic is not None:
            return self._characteristic.uuid
        return None

    def is_subscribed_to(self, characteristic: CharacteristicDescriptor) -> bool:
        return (
            self._state is SubscriptionState.SUBSCRIBED
            and self._characteristic is not None
            and self._characteristic.key == characteristic.key
        )

    def _set(self, state: SubscriptionState) -> None:
        if state is not self._state:
            logger.debug("Subscription %s -> %s", self._state.value, state.value)
        self._state = state

    def _deliver(self, data: bytes) -> None:
        # Called by the transport for every pushed value.
        observer = self._observer
        characteristic = self._characteristic
        if observer is None or characteristic is None:
            return
        observer(RawAttributeValue(data, characteristic.uuid))

    async def subscribe(
        self,
        characteristic: CharacteristicDescriptor,
        observer: Observer,
        on_release: Callable[[], None] | None = None,
    ) -> Status:
        """
        Enable notify or indicate on characteristic and register observer.

        on_release is called once when the observer is dropped again, by
        unsubscribe() or reset().
        """
        if (
            self._state is SubscriptionState.SUBSCRIBED
            and self._characteristic is not None
            and self._characteristic.key != characteristic.key
        ):
            logger.info("Releasing %s before subscribing to %s", self._characteristic.uuid, characteristic.uuid)
            released = await self.unsubscribe()
            if not released.ok:
                return released
        if self._state is not SubscriptionState.IDLE:
            return failure(ErrorKind.ALREADY_ACTIVE, f"subscription is {self._state.value}")

        value = configuration_value_for(characteristic.capabilities)
        if value is None:
            return failure(ErrorKind.UNSUPPORTED, f"{characteristic.uuid} supports neither notify nor indicate")

        generation = self._generation
        self._characteristic = characteristic
        self._set(SubscriptionState.SUBSCRIBING)
        try:
            await self._transport.write_client_configuration(characteristic, value, self._deliver)
        except PeripheralError as e:
            self._restore_idle(generation)
            logger.warning("Error registering for value changes on %s: %s", characteristic.uuid, e)
            return status_from(e)
        except asyncio.CancelledError:
            self._restore_idle(generation)
            raise
        if generation != self._generation:
            return failure(ErrorKind.UNREACHABLE, "connection reset during subscribe")

        self._observer = observer
        self._on_release = on_release
        self._set(SubscriptionState.SUBSCRIBED)
        logger.info("Subscribed to %s (%s)", characteristic.uuid, value.name.lower())
        return OK

    async def unsubscribe(self) -> Status:
        if self._state is SubscriptionState.IDLE:
            return failure(ErrorKind.ALREADY_INACTIVE, "no active subscription")
        if self._state is not SubscriptionState.SUBSCRIBED:
            return failure(ErrorKind.BUSY, f"subscription is {self._state.value}")

        characteristic = self._characteristic
        generation = self._generation
        self._set(SubscriptionState.UNSUBSCRIBING)
        try:
            await self._transport.write_client_configuration(characteristic, CccdValue.NONE)
        except PeripheralError as e:
            self._restore_subscribed(generation)
            logger.warning("Error un-registering for notifications on %s: %s", characteristic.uuid, e)
            return status_from(e)
        except asyncio.CancelledError:
            self._restore_subscribed(generation)
            raise
        if generation != self._generation:
            # reset() already tore everything down.
            return OK

        self._release()
        self._characteristic = None
        self._set(SubscriptionState.IDLE)
        logger.info("Unsubscribed from %s", characteristic.uuid)
        return OK

    def reset(self) -> None:
        """Forget any subscription without writing (the link is gone)."""
        self._generation += 1
        self._release()
        self._characteristic = None
        self._set(SubscriptionState.IDLE)

    def _release(self) -> None:
        on_release = self._on_release
        self._observer = None
        self._on_release = None
        if on_release is not None:
            on_release()

    def _restore_idle(self, generation: int) -> None:
        if generation == self._generation:
            self._characteristic = None
            self._set(SubscriptionState.IDLE)

    def _restore_subscribed(self, generation: int) -> None:
        if generation == self._generation:
            self._set(SubscriptionState.SUBSCRIBED)
