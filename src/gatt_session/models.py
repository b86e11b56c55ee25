"""
Descriptors, raw values and decoded measurements passed between the session layers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import IntFlag


class Capabilities(IntFlag):
    """Characteristic property bits we act on."""

    NONE = 0
    READ = 0x02
    WRITE_WITHOUT_RESPONSE = 0x04
    WRITE = 0x08
    NOTIFY = 0x10
    INDICATE = 0x20

    @classmethod
    def from_properties(cls, properties) -> "Capabilities":
        """Build from bleak-style property names ("read", "notify", ...)."""
        caps = cls.NONE
        for name in properties:
            caps |= _PROPERTY_NAMES.get(name, cls.NONE)
        return caps


_PROPERTY_NAMES = {
    "read": Capabilities.READ,
    "write-without-response": Capabilities.WRITE_WITHOUT_RESPONSE,
    "write": Capabilities.WRITE,
    "notify": Capabilities.NOTIFY,
    "indicate": Capabilities.INDICATE,
}


@dataclass(frozen=True)
class PresentationFormat:
    format_type: int
    exponent: int = 0
    unit: int = 0
    namespace: int = 0
    description: int = 0


@dataclass(frozen=True)
class ServiceDescriptor:
    uuid: str
    handle: int
    description: str = ""


@dataclass(frozen=True)
class CharacteristicDescriptor:
    uuid: str
    handle: int
    capabilities: Capabilities = Capabilities.NONE
    descriptor_uuids: tuple[str, ...] = ()
    description: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.uuid, self.handle)


@dataclass(frozen=True)
class RawAttributeValue:
    data: bytes
    characteristic_uuid: str


@dataclass(frozen=True)
class RRSample:
    interval_ms: float
    captured_at: datetime


# Decoded measurements. Each variant is a small frozen dataclass; callers branch
# with isinstance().


@dataclass(frozen=True)
class Integer32:
    value: int


@dataclass(frozen=True)
class CustomInteger(Integer32):
    """Integer32 decoded from the custom Result characteristic identity."""


@dataclass(frozen=True)
class Utf8Text:
    text: str


@dataclass(frozen=True)
class HeartRate:
    bpm: int
    rr_samples: tuple[RRSample, ...] = ()
    energy_expended: int | None = None
    contact_detected: bool | None = None

    @property
    def rr_ms(self) -> list[float]:
        return [s.interval_ms for s in self.rr_samples]


@dataclass(frozen=True)
class BatteryPercent:
    percent: int


@dataclass(frozen=True)
class RawHex:
    hex: str


@dataclass(frozen=True)
class Unsupported:
    reason: str


@dataclass(frozen=True)
class Malformed:
    reason: str


@dataclass(frozen=True)
class Empty:
    pass


Measurement = (
    Integer32 | Utf8Text | HeartRate | BatteryPercent | RawHex | Unsupported | Malformed | Empty
)

