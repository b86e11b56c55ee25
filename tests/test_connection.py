"""Tests for ConnectionManager, ServiceCatalog and CharacteristicSession over the fake transport."""

import asyncio

from conftest import BATTERY, BATTERY_SERVICE, HEART_RATE_SERVICE, HRM, OPERAND, PLAIN, RESULT, run

from gatt_session.catalog import ServiceCatalog
from gatt_session.codec import FORMAT_UINT32, FORMAT_UTF8, encode_int32
from gatt_session.connection import ConnectionManager, ConnectionState
from gatt_session.errors import ErrorKind, PeripheralError
from gatt_session.models import (
    BatteryPercent,
    CustomInteger,
    HeartRate,
    Integer32,
    Malformed,
    PresentationFormat,
    Utf8Text,
)
from gatt_session.subscription import SubscriptionState
from gatt_session.transport import CccdValue


async def _connected(factory):
    manager = ConnectionManager(factory)
    status = await manager.connect("AA:BB:CC:DD:EE:FF")
    assert status.ok
    return manager


def test_connect_and_discover(factory, transport):
    """Connect, then enumerate services and characteristics from the transport."""

    async def scenario():
        manager = await _connected(factory)
        services = await manager.discover_services()
        chars = await manager.discover_characteristics(HEART_RATE_SERVICE)
        return manager, services, chars

    manager, services, chars = run(scenario())
    assert manager.state is ConnectionState.CONNECTED
    assert manager.address == "AA:BB:CC:DD:EE:FF"
    assert services.ok
    assert [s.uuid for s in services.items] == [s.uuid for s in transport.services]
    assert chars.items == (HRM,)


def test_connect_failure_reports_unreachable(factory, transport):
    """Device off -> UNREACHABLE status and still disconnected."""
    transport.fail["connect"] = PeripheralError(ErrorKind.UNREACHABLE, "Bluetooth radio is not on")
    manager = ConnectionManager(factory)
    status = run(manager.connect("AA:BB:CC:DD:EE:FF"))
    assert status.kind is ErrorKind.UNREACHABLE
    assert manager.state is ConnectionState.DISCONNECTED
    assert not manager.is_connected


def test_discovery_is_not_cached(transport):
    """Each enumeration call goes back to the transport."""
    catalog = ServiceCatalog(transport)

    async def scenario():
        await catalog.discover_services()
        await catalog.discover_services()
        await catalog.discover_characteristics(BATTERY_SERVICE)
        await catalog.discover_characteristics(BATTERY_SERVICE)

    run(scenario())
    assert transport.calls.count("services") == 2
    assert transport.calls.count("characteristics") == 2


def test_discovery_failure_yields_empty_result(transport):
    """A failed enumeration returns no items plus the error, never a partial list."""
    transport.fail["services"] = PeripheralError(ErrorKind.UNREACHABLE, "Unreachable")
    transport.fail["characteristics"] = PeripheralError(ErrorKind.ACCESS_DENIED, "Access denied")
    catalog = ServiceCatalog(transport)

    services = run(catalog.discover_services())
    chars = run(catalog.discover_characteristics(BATTERY_SERVICE))

    assert not services.ok and services.items == ()
    assert services.status.kind is ErrorKind.UNREACHABLE
    assert not chars.ok and chars.items == ()
    assert chars.status.kind is ErrorKind.ACCESS_DENIED


def test_discovery_when_not_connected():
    """Enumeration before connect fails with UNREACHABLE."""
    manager = ConnectionManager()
    result = run(manager.discover_services())
    assert result.status.kind is ErrorKind.UNREACHABLE
    assert result.items == ()


def test_find_characteristic_accepts_short_uuid(factory):
    """Short 16-bit UUIDs are normalized before the walk."""

    async def scenario():
        manager = await _connected(factory)
        return await manager.find_characteristic("2A19")

    status, characteristic = run(scenario())
    assert status.ok
    assert characteristic == BATTERY


def test_find_characteristic_missing(factory):
    """Unknown UUID -> failure and no characteristic."""

    async def scenario():
        manager = await _connected(factory)
        return await manager.find_characteristic("2a6e")

    status, characteristic = run(scenario())
    assert not status.ok
    assert characteristic is None


def test_session_capabilities_follow_bitset(factory):
    """Read/write/subscribe availability comes only from the capability bits."""

    async def scenario():
        manager = await _connected(factory)
        return [(await manager.select_characteristic(c)).session for c in (HRM, BATTERY, OPERAND, PLAIN)]

    hrm, battery, operand, plain = run(scenario())
    assert (hrm.can_read, hrm.can_write, hrm.can_subscribe) == (False, False, True)
    assert (battery.can_read, battery.can_write, battery.can_subscribe) == (True, False, True)
    assert (operand.can_read, operand.can_write, operand.can_subscribe) == (False, True, False)
    assert (plain.can_read, plain.can_write, plain.can_subscribe) == (True, True, False)


def test_presentation_format_only_when_exactly_one(factory, transport):
    """One declared format is used; zero or several fall back to identity decoding."""
    transport.formats[RESULT.handle] = [PresentationFormat(FORMAT_UINT32)]
    transport.formats[PLAIN.handle] = [PresentationFormat(FORMAT_UINT32), PresentationFormat(FORMAT_UTF8)]

    async def scenario():
        manager = await _connected(factory)
        result = (await manager.select_characteristic(RESULT)).session
        plain = (await manager.select_characteristic(PLAIN)).session
        battery = (await manager.select_characteristic(BATTERY)).session
        return result, plain, battery

    result, plain, battery = run(scenario())
    assert result.presentation_format == PresentationFormat(FORMAT_UINT32)
    assert plain.presentation_format is None
    assert len(plain.presentation_formats) == 2
    assert battery.presentation_format is None


def test_descriptor_failure_still_selects(factory, transport):
    """Descriptor read failure is reported but the session is usable."""
    transport.fail["formats"] = PeripheralError(ErrorKind.COMMUNICATION_FAILURE, "Descriptor read failure")

    async def scenario():
        manager = await _connected(factory)
        return await manager.select_characteristic(BATTERY)

    selected = run(scenario())
    assert selected.status.kind is ErrorKind.COMMUNICATION_FAILURE
    assert selected.session is not None
    assert selected.session.presentation_format is None


def test_read_is_uncached_and_decoded(factory, transport):
    """Every read hits the transport; the value decodes by identity."""
    transport.values[BATTERY.handle] = b"\x50"

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(BATTERY)).session
        first = await session.read()
        transport.values[BATTERY.handle] = b"\x4f"
        second = await session.read()
        return session, first, second

    session, first, second = run(scenario())
    assert first.status.ok and second.status.ok
    assert session.decode(first.value) == BatteryPercent(80)
    assert session.decode(second.value) == BatteryPercent(79)
    assert transport.calls.count("read") == 2


def test_read_with_declared_format(factory, transport):
    """A single UINT32 presentation format wins over the Result identity."""
    transport.formats[RESULT.handle] = [PresentationFormat(FORMAT_UINT32)]
    transport.values[RESULT.handle] = b"\xff\xff\xff\xff"

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(RESULT)).session
        result = await session.read()
        return session.decode(result.value)

    assert run(scenario()) == Integer32(0xFFFFFFFF)


def test_read_failure_leaves_session_unchanged(factory, transport):
    """A failed read reports the error and nothing else changes."""
    transport.fail["read"] = PeripheralError(ErrorKind.ACCESS_DENIED, "Read Not Permitted")

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(BATTERY)).session
        return manager, session, await session.read()

    manager, session, result = run(scenario())
    assert result.status.kind is ErrorKind.ACCESS_DENIED
    assert result.value is None
    assert manager.session is session
    assert manager.is_connected


def test_read_not_readable(factory):
    """Reading a characteristic without READ is refused locally."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        return await session.read()

    assert run(scenario()).status.kind is ErrorKind.UNSUPPORTED


def test_writes(factory, transport):
    """Text and int32 writes; write-without-response is used when WRITE is absent."""

    async def scenario():
        manager = await _connected(factory)
        operand = (await manager.select_characteristic(OPERAND)).session
        plain = (await manager.select_characteristic(PLAIN)).session
        return (
            await operand.write_int32(-5),
            await plain.write_text("hi"),
            await plain.write_text(""),
            await operand.write_int32(2**40),
        )

    int_status, text_status, empty_status, range_status = run(scenario())
    assert int_status.ok and text_status.ok
    assert empty_status.kind is ErrorKind.UNSUPPORTED
    assert range_status.kind is ErrorKind.UNSUPPORTED_FORMAT
    assert transport.writes == [
        (OPERAND.uuid, encode_int32(-5), True),
        (PLAIN.uuid, b"hi", False),
    ]


def test_write_not_permitted(factory, transport):
    """Peripheral refusing a write it advertised -> WRITE_NOT_PERMITTED."""
    transport.fail["write"] = PeripheralError(ErrorKind.WRITE_NOT_PERMITTED, "Write Not Permitted")

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(OPERAND)).session
        return await session.write(b"\x01")

    assert run(scenario()).kind is ErrorKind.WRITE_NOT_PERMITTED


def test_stream_decodes_and_collects_rr(factory, transport):
    """Each pushed HRM value is decoded once; its RR samples land in the shared buffer."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        assert (await session.subscribe()).ok
        transport.push(HRM, bytes([0x11, 0x4B, 0x00, 0xE8, 0x03]))
        transport.push(HRM, bytes([0x10, 0x4C, 0x00, 0x04, 0x00, 0x03]))
        transport.push(HRM, bytes([0x10]))
        seen = []
        async for measurement in session.notifications():
            seen.append(measurement)
            if len(seen) == 3:
                assert (await session.unsubscribe()).ok
        return manager, seen

    manager, seen = run(scenario())
    assert isinstance(seen[0], HeartRate) and seen[0].bpm == 75
    assert seen[1].rr_ms == [1000.0, 750.0]
    assert isinstance(seen[2], Malformed)
    assert [s.interval_ms for s in manager.samples.snapshot()] == [976.5625, 1000.0, 750.0]


def test_subscribed_result_decodes_as_custom_integer(factory, transport):
    """Pushed Result values decode as CustomInteger."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(RESULT)).session
        await session.subscribe()
        transport.push(RESULT, encode_int32(12))
        async for measurement in session.notifications():
            await session.unsubscribe()
            return measurement

    assert run(scenario()) == CustomInteger(12)


def test_session_subscribe_twice(factory):
    """Subscribing an already subscribed session is ALREADY_ACTIVE."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        await session.subscribe()
        return await session.subscribe()

    assert run(scenario()).kind is ErrorKind.ALREADY_ACTIVE


def test_concurrent_subscribe_keeps_stream(factory, transport):
    """A second subscribe while the first CCCD write is pending does not orphan the stream."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        transport.gate = asyncio.Event()
        first = asyncio.ensure_future(session.subscribe())
        await asyncio.sleep(0)
        second = await session.subscribe()
        transport.gate.set()
        first_status = await first
        transport.push(HRM, bytes([0x10, 0x48, 0x00, 0x04]))
        seen = []
        async for measurement in session.notifications():
            seen.append(measurement)
            await session.unsubscribe()
        return manager, session, first_status, second, seen

    manager, session, first_status, second, seen = run(scenario())
    assert second.kind is ErrorKind.ALREADY_ACTIVE
    assert first_status.ok
    assert not session.is_subscribed
    assert len(seen) == 1 and seen[0].bpm == 72
    assert len(manager.samples) == 1


def test_selecting_new_characteristic_releases_subscription(factory, transport):
    """Selecting another characteristic writes NONE on the subscribed one first."""

    async def scenario():
        manager = await _connected(factory)
        hrm = (await manager.select_characteristic(HRM)).session
        await hrm.subscribe()
        selected = await manager.select_characteristic(BATTERY)
        return manager, hrm, selected

    manager, hrm, selected = run(scenario())
    assert selected.status.ok
    assert selected.session.characteristic == BATTERY
    assert not hrm.is_subscribed
    assert transport.cccd_writes[-1] == (HRM.uuid, CccdValue.NONE)
    assert manager.subscriptions.state is SubscriptionState.IDLE


def test_selection_blocked_when_release_fails(factory, transport):
    """If the prior subscription cannot be released, the old session stays selected."""

    async def scenario():
        manager = await _connected(factory)
        hrm = (await manager.select_characteristic(HRM)).session
        await hrm.subscribe()
        transport.fail["cccd"] = PeripheralError(ErrorKind.UNREACHABLE)
        selected = await manager.select_characteristic(BATTERY)
        return manager, hrm, selected

    manager, hrm, selected = run(scenario())
    assert selected.status.kind is ErrorKind.UNREACHABLE
    assert selected.session is hrm
    assert manager.session is hrm
    assert hrm.is_subscribed


def test_disconnect_tears_down_subscription_first(factory, transport):
    """disconnect() writes NONE before releasing the connection."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        await session.subscribe()
        return manager, await manager.disconnect()

    manager, status = run(scenario())
    assert status.ok
    assert transport.cccd_writes[-1] == (HRM.uuid, CccdValue.NONE)
    assert transport.calls.index("disconnect") > transport.calls.index("cccd")
    assert manager.state is ConnectionState.DISCONNECTED
    assert not transport.connected


def test_disconnect_refused_when_teardown_fails(factory, transport):
    """A failed unsubscribe keeps the connection open."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        await session.subscribe()
        transport.fail["cccd"] = PeripheralError(ErrorKind.COMMUNICATION_FAILURE)
        return manager, await manager.disconnect()

    manager, status = run(scenario())
    assert status.kind is ErrorKind.COMMUNICATION_FAILURE
    assert manager.is_connected
    assert "disconnect" not in transport.calls
    assert transport.connected


def test_disconnect_without_subscription(factory, transport):
    """Nothing subscribed -> straight to releasing the link."""

    async def scenario():
        manager = await _connected(factory)
        return await manager.disconnect()

    assert run(scenario()).ok
    assert transport.cccd_writes == []
    assert "disconnect" in transport.calls


def test_connection_loss_resets_and_ends_stream(factory, transport):
    """Link loss forces the state machine idle and ends notifications()."""

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(HRM)).session
        subscriptions = manager.subscriptions
        await session.subscribe()
        transport.push(HRM, bytes([0x10, 0x48, 0x00, 0x04]))
        transport.drop()
        seen = [m async for m in session.notifications()]
        return manager, subscriptions, seen

    manager, subscriptions, seen = run(scenario())
    assert len(seen) == 1
    assert subscriptions.state is SubscriptionState.IDLE
    assert manager.state is ConnectionState.DISCONNECTED
    assert len(manager.samples) == 1


def test_text_characteristic_without_format(factory, transport):
    """Unknown identity with readable text decodes as Utf8Text."""
    transport.values[PLAIN.handle] = b"ok"

    async def scenario():
        manager = await _connected(factory)
        session = (await manager.select_characteristic(PLAIN)).session
        return session.decode((await session.read()).value)

    assert run(scenario()) == Utf8Text("ok")
