"""
Peripheral connection lifetime.

The manager owns the transport, the single SubscriptionStateMachine and the
RRSampleBuffer for one connected peripheral. Disconnecting and selecting another
characteristic both tear down the active subscription first; if that teardown
fails nothing else changes.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from bleak.uuids import normalize_uuid_str

from gatt_session.ble_transport import DEFAULT_CONNECT_TIMEOUT, BleakTransport
from gatt_session.catalog import DiscoveryResult, ServiceCatalog
from gatt_session.codec import RESULT_CHARACTERISTIC_UUID
from gatt_session.errors import OK, ErrorKind, PeripheralError, Status, failure, status_from
from gatt_session.models import CharacteristicDescriptor, ServiceDescriptor
from gatt_session.rr_export import RRSampleBuffer
from gatt_session.session import CharacteristicSession
from gatt_session.subscription import SubscriptionState, SubscriptionStateMachine
from gatt_session.transport import GattTransport, TransportFactory

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class SelectionResult:
    """
    session is the newly selected session on success. It is also set when only
    the presentation format descriptors could not be read (status then carries
    that failure), and it is the previous session when releasing the old
    subscription failed.
    """

    status: Status
    session: CharacteristicSession | None = None


_NOT_CONNECTED = failure(ErrorKind.UNREACHABLE, "not connected")


class ConnectionManager:
    def __init__(
        self,
        transport_factory: TransportFactory = BleakTransport,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        result_uuid: str = RESULT_CHARACTERISTIC_UUID,
        samples: RRSampleBuffer | None = None,
    ):
        self._transport_factory = transport_factory
        self._connect_timeout = connect_timeout
        self._result_uuid = result_uuid
        self.samples = samples if samples is not None else RRSampleBuffer()
        self._state = ConnectionState.DISCONNECTED
        self._transport: GattTransport | None = None
        self._subscriptions: SubscriptionStateMachine | None = None
        self._catalog: ServiceCatalog | None = None
        self._session: CharacteristicSession | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def address(self) -> str | None:
        return self._transport.address if self._transport is not None else None

    @property
    def subscriptions(self) -> SubscriptionStateMachine | None:
        return self._subscriptions

    @property
    def session(self) -> CharacteristicSession | None:
        return self._session

    async def connect(self, address: str) -> Status:
        if self._transport is not None:
            cleared = await self.disconnect()
            if not cleared.ok:
                logger.error("Unable to reset state, try again: %s", cleared)
                return cleared

        self._state = ConnectionState.CONNECTING
        transport = self._transport_factory(
            address,
            on_disconnect=self._on_connection_lost,
            connect_timeout=self._connect_timeout,
        )
        try:
            await transport.connect()
        except PeripheralError as e:
            self._state = ConnectionState.DISCONNECTED
            logger.warning("Failed to connect to %s: %s", address, e)
            return status_from(e)

        self._transport = transport
        self._subscriptions = SubscriptionStateMachine(transport)
        self._catalog = ServiceCatalog(transport)
        self._state = ConnectionState.CONNECTED
        return OK

    async def disconnect(self) -> Status:
        """Tear down the subscription, then release the connection."""
        if self._transport is None:
            return OK
        if self._subscriptions.state is not SubscriptionState.IDLE:
            released = await self._subscriptions.unsubscribe()
            if not released.ok:
                logger.error("Unable to reset app state: %s", released)
                return released

        transport = self._transport
        self._state = ConnectionState.DISCONNECTING
        try:
            await transport.disconnect()
        except PeripheralError as e:
            logger.warning("Error while disconnecting from %s: %s", transport.address, e)
        finally:
            self._release()
        logger.info("Disconnected from %s", transport.address)
        return OK

    def _release(self) -> None:
        self._transport = None
        self._subscriptions = None
        self._catalog = None
        self._session = None
        self._state = ConnectionState.DISCONNECTED

    def _on_connection_lost(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        logger.warning("Connection to %s lost", self.address)
        self._subscriptions.reset()
        self._release()

    async def discover_services(self) -> DiscoveryResult:
        if self._catalog is None:
            return DiscoveryResult(_NOT_CONNECTED)
        return await self._catalog.discover_services()

    async def discover_characteristics(self, service: ServiceDescriptor) -> DiscoveryResult:
        if self._catalog is None:
            return DiscoveryResult(_NOT_CONNECTED)
        return await self._catalog.discover_characteristics(service)

    async def select_characteristic(self, characteristic: CharacteristicDescriptor) -> SelectionResult:
        """Release any prior subscription, then bind a fresh session to characteristic."""
        if self._transport is None:
            return SelectionResult(_NOT_CONNECTED)
        if self._subscriptions.state is not SubscriptionState.IDLE:
            released = await self._subscriptions.unsubscribe()
            if not released.ok:
                return SelectionResult(released, self._session)

        status = OK
        try:
            formats = await self._transport.get_presentation_formats(characteristic)
        except PeripheralError as e:
            logger.warning("Descriptor read failure on %s: %s", characteristic.uuid, e)
            formats = []
            status = status_from(e)
        if len(formats) > 1:
            logger.info("%s declares %d presentation formats; decoding by identity", characteristic.uuid, len(formats))

        self._session = CharacteristicSession(
            self._transport,
            characteristic,
            formats,
            self._subscriptions,
            self.samples,
            result_uuid=self._result_uuid,
        )
        return SelectionResult(status, self._session)

    async def find_characteristic(self, uuid: str) -> tuple[Status, CharacteristicDescriptor | None]:
        """Walk every service for the first characteristic with this UUID."""
        uuid = normalize_uuid_str(uuid)
        services = await self.discover_services()
        if not services.ok:
            return services.status, None
        for service in services.items:
            found = await self.discover_characteristics(service)
            if not found.ok:
                continue
            for characteristic in found.items:
                if characteristic.uuid == uuid:
                    return OK, characteristic
        return failure(ErrorKind.UNSUPPORTED, f"characteristic {uuid} not found"), None
