"""
Parse GATT Heart Rate Measurement characteristic (0x2A37) payloads.

Flags byte: bit 0 = HR 16-bit, bits 1-2 = sensor contact, bit 3 = Energy Expended
present, bit 4 = RR present.
RR intervals: UINT16 LE, unit 1/1024 s -> rr_ms = value / 1024 * 1000.
"""

from datetime import datetime

from gatt_session.errors import MalformedPayloadError
from gatt_session.models import HeartRate, RRSample

FLAG_HR_16BIT = 0x01
FLAG_CONTACT_STATUS = 0x02
FLAG_CONTACT_SUPPORTED = 0x04
FLAG_ENERGY_PRESENT = 0x08
FLAG_RR_PRESENT = 0x10


def rr_ticks_to_ms(ticks: int) -> float:
    return ticks / 1024.0 * 1000.0


def rr_offset(flags: int) -> int:
    """Byte offset of the first RR interval for the given flags byte."""
    offset = 1 + (2 if flags & FLAG_HR_16BIT else 1)
    if flags & FLAG_ENERGY_PRESENT:
        offset += 2
    return offset


def parse_hrm(data: bytes, observed_at: datetime | None = None) -> HeartRate:
    """
    Parse a Heart Rate Measurement characteristic value.

    Every RR sample is stamped with observed_at (default: now). A truncated
    Energy Expended or RR field is skipped; the heart rate and the samples read
    so far are still returned.

    Raises MalformedPayloadError when the heart rate itself cannot be read.
    """
    if len(data) < 2:
        raise MalformedPayloadError("HRM payload too short")
    if observed_at is None:
        observed_at = datetime.now()

    flags = data[0]

    if flags & FLAG_HR_16BIT:
        if len(data) < 3:
            raise MalformedPayloadError("HRM payload too short for 16-bit HR")
        bpm = int.from_bytes(data[1:3], "little")
    else:
        bpm = data[1]

    contact = None
    if flags & FLAG_CONTACT_SUPPORTED:
        contact = bool(flags & FLAG_CONTACT_STATUS)

    energy = None
    if flags & FLAG_ENERGY_PRESENT:
        ee_at = rr_offset(flags) - 2
        if len(data) >= ee_at + 2:
            energy = int.from_bytes(data[ee_at : ee_at + 2], "little")

    # RR intervals (pairs of UINT16 LE)
    samples: list[RRSample] = []
    if flags & FLAG_RR_PRESENT:
        offset = rr_offset(flags)
        while len(data) >= offset + 2:
            raw = int.from_bytes(data[offset : offset + 2], "little")
            samples.append(RRSample(rr_ticks_to_ms(raw), observed_at))
            offset += 2

    return HeartRate(
        bpm=bpm,
        rr_samples=tuple(samples),
        energy_expended=energy,
        contact_detected=contact,
    )
