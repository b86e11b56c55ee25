"""
Decode raw characteristic values into typed measurements.

Fallback chain: a declared presentation format wins, then a known profile
identity (Heart Rate Measurement, Battery Level, custom Result), then best-effort
UTF-8 text. Decoding never raises; failures come back as Malformed/Unsupported.
"""

import struct
from datetime import datetime

from bleak.uuids import normalize_uuid_str

from gatt_session.errors import MalformedPayloadError
from gatt_session.gatt_hrm import parse_hrm
from gatt_session.models import (
    BatteryPercent,
    CustomInteger,
    Empty,
    Integer32,
    Malformed,
    Measurement,
    PresentationFormat,
    RawHex,
    Unsupported,
    Utf8Text,
)

HEART_RATE_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"
PRESENTATION_FORMAT_DESCRIPTOR_UUID = "00002904-0000-1000-8000-00805f9b34fb"
# Result characteristic of the custom calculator service.
RESULT_CHARACTERISTIC_UUID = "caec2ebc-e1d9-11e6-bf01-fe55135034f4"

# Characteristic Presentation Format "format" field values.
FORMAT_UINT32 = 0x08
FORMAT_UTF8 = 0x19

_UINT32 = struct.Struct("<I")
_INT32 = struct.Struct("<i")
_PRESENTATION = struct.Struct("<BbHBH")


def parse_presentation_format(raw: bytes) -> PresentationFormat:
    """Decode a 7-byte Characteristic Presentation Format descriptor value."""
    if len(raw) < _PRESENTATION.size:
        raise MalformedPayloadError(f"presentation format needs 7 bytes, got {len(raw)}")
    fmt, exponent, unit, namespace, description = _PRESENTATION.unpack_from(raw)
    return PresentationFormat(fmt, exponent, unit, namespace, description)


def encode_uint32(value: int) -> bytes:
    return _UINT32.pack(value)


def encode_int32(value: int) -> bytes:
    return _INT32.pack(value)


def _same_uuid(a: str | None, b: str) -> bool:
    return a is not None and normalize_uuid_str(a) == normalize_uuid_str(b)


def _decode_with_format(data: bytes, fmt: PresentationFormat) -> Measurement:
    if fmt.format_type == FORMAT_UINT32 and len(data) >= 4:
        return Integer32(_UINT32.unpack_from(data)[0])
    if fmt.format_type == FORMAT_UTF8:
        try:
            return Utf8Text(data.decode("utf-8"))
        except UnicodeDecodeError:
            return Unsupported("invalid utf-8")
    return RawHex(data.hex())


def _decode_result(data: bytes) -> Measurement:
    if len(data) < 4:
        return Malformed(f"result value needs 4 bytes, got {len(data)}")
    return CustomInteger(_INT32.unpack_from(data)[0])


def decode(
    data: bytes,
    fmt: PresentationFormat | None,
    characteristic_uuid: str,
    registered_uuid: str | None = None,
    *,
    result_uuid: str = RESULT_CHARACTERISTIC_UUID,
    observed_at: datetime | None = None,
) -> Measurement:
    """
    Decode one characteristic value.

    registered_uuid is the UUID of the currently subscribed characteristic, if
    any; a subscribed Result characteristic decodes as CustomInteger.
    """
    data = bytes(data)
    if not data:
        return Empty()
    if fmt is not None:
        return _decode_with_format(data, fmt)

    if _same_uuid(characteristic_uuid, HEART_RATE_MEASUREMENT_UUID):
        try:
            return parse_hrm(data, observed_at)
        except MalformedPayloadError as e:
            return Malformed(str(e))
    if _same_uuid(characteristic_uuid, BATTERY_LEVEL_UUID):
        if data[0] > 100:
            return Malformed(f"battery level out of range: {data[0]}")
        return BatteryPercent(data[0])
    if _same_uuid(characteristic_uuid, result_uuid) or _same_uuid(registered_uuid, result_uuid):
        return _decode_result(data)

    try:
        return Utf8Text(data.decode("utf-8"))
    except UnicodeDecodeError:
        return Unsupported("unknown format")
