"""
Closed error taxonomy for peripheral operations.

Transports raise PeripheralError carrying an ErrorKind; the session layers turn
it into a Status value that callers match on (status.kind), so nothing above the
transport inspects exception types.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from bleak.exc import BleakDeviceNotFoundError


class ErrorKind(Enum):
    UNREACHABLE = "unreachable"
    ACCESS_DENIED = "access_denied"
    WRITE_NOT_PERMITTED = "write_not_permitted"
    INVALID_PROTOCOL_UNIT = "invalid_protocol_unit"
    COMMUNICATION_FAILURE = "communication_failure"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNSUPPORTED_FORMAT = "unsupported_format"
    # Subscription state machine outcomes
    ALREADY_ACTIVE = "already_active"
    ALREADY_INACTIVE = "already_inactive"
    BUSY = "busy"
    UNSUPPORTED = "unsupported"


class PeripheralError(Exception):
    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


class MalformedPayloadError(ValueError):
    """Payload too short or otherwise impossible to decode."""


@dataclass(frozen=True)
class Status:
    kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.kind is None

    def __str__(self) -> str:
        if self.ok:
            return self.message or "ok"
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


OK = Status()


def failure(kind: ErrorKind, message: str = "") -> Status:
    return Status(kind, message)


def status_from(exc: PeripheralError) -> Status:
    return Status(exc.kind, str(exc))


# HRESULTs surfaced by the WinRT backend (OSError.winerror).
E_BLUETOOTH_ATT_WRITE_NOT_PERMITTED = 0x80650003
E_BLUETOOTH_ATT_INVALID_PDU = 0x80650004
E_ACCESSDENIED = 0x80070005
E_DEVICE_NOT_AVAILABLE = 0x800710DF

_HRESULT_KINDS = {
    E_BLUETOOTH_ATT_WRITE_NOT_PERMITTED: ErrorKind.WRITE_NOT_PERMITTED,
    E_BLUETOOTH_ATT_INVALID_PDU: ErrorKind.INVALID_PROTOCOL_UNIT,
    E_ACCESSDENIED: ErrorKind.ACCESS_DENIED,
    E_DEVICE_NOT_AVAILABLE: ErrorKind.UNREACHABLE,
}

# Lowercased fragments of ATT / BlueZ / WinRT error texts. Order matters:
# "write not permitted" must win over the generic "not permitted".
_MESSAGE_KINDS = (
    ("write not permitted", ErrorKind.WRITE_NOT_PERMITTED),
    ("invalid pdu", ErrorKind.INVALID_PROTOCOL_UNIT),
    ("insufficient authentication", ErrorKind.ACCESS_DENIED),
    ("insufficient authorization", ErrorKind.ACCESS_DENIED),
    ("insufficient encryption", ErrorKind.ACCESS_DENIED),
    ("notauthorized", ErrorKind.ACCESS_DENIED),
    ("not authorized", ErrorKind.ACCESS_DENIED),
    ("access denied", ErrorKind.ACCESS_DENIED),
    ("not permitted", ErrorKind.ACCESS_DENIED),
    ("notpermitted", ErrorKind.ACCESS_DENIED),
    ("unreachable", ErrorKind.UNREACHABLE),
    ("not connected", ErrorKind.UNREACHABLE),
)


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map a backend exception onto an ErrorKind (COMMUNICATION_FAILURE if unknown)."""
    if isinstance(exc, PeripheralError):
        return exc.kind
    if isinstance(exc, BleakDeviceNotFoundError):
        return ErrorKind.UNREACHABLE
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.UNREACHABLE
    if isinstance(exc, PermissionError):
        return ErrorKind.ACCESS_DENIED
    winerror = getattr(exc, "winerror", None)
    if isinstance(winerror, int):
        kind = _HRESULT_KINDS.get(winerror & 0xFFFFFFFF)
        if kind is not None:
            return kind
    text = str(exc).lower()
    for fragment, kind in _MESSAGE_KINDS:
        if fragment in text:
            return kind
    return ErrorKind.COMMUNICATION_FAILURE


def wrap_exception(exc: BaseException) -> PeripheralError:
    if isinstance(exc, PeripheralError):
        return exc
    return PeripheralError(classify_exception(exc), str(exc) or type(exc).__name__)
