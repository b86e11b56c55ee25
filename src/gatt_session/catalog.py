"""Uncached service and characteristic enumeration for a connected peripheral."""

import logging
from dataclasses import dataclass

from gatt_session.errors import OK, PeripheralError, Status, status_from
from gatt_session.models import ServiceDescriptor
from gatt_session.transport import GattTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryResult:
    """items is always empty when status failed; a partial list is never returned."""

    status: Status
    items: tuple = ()

    @property
    def ok(self) -> bool:
        return self.status.ok


class ServiceCatalog:
    def __init__(self, transport: GattTransport):
        self._transport = transport

    @property
    def peripheral_id(self) -> str:
        return self._transport.address

    async def discover_services(self) -> DiscoveryResult:
        try:
            services = await self._transport.get_services()
        except PeripheralError as e:
            logger.warning("Device unreachable: %s", e)
            return DiscoveryResult(status_from(e))
        logger.info("Found %d services", len(services))
        return DiscoveryResult(OK, tuple(services))

    async def discover_characteristics(self, service: ServiceDescriptor) -> DiscoveryResult:
        try:
            characteristics = await self._transport.get_characteristics(service)
        except PeripheralError as e:
            logger.warning("Error accessing service %s: %s", service.uuid, e)
            return DiscoveryResult(status_from(e))
        return DiscoveryResult(OK, tuple(characteristics))
