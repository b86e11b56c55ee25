"""
Session-owned RR interval accumulation and the CSV-style export.

The notification path appends; the export path snapshots, writes, and only then
discards exactly the samples it wrote, so samples arriving during the write are
kept for the next export.
"""

import logging
import threading
from pathlib import Path
from typing import Iterable

from gatt_session.models import RRSample

logger = logging.getLogger(__name__)

EXPORT_HEADER = "RR intervals [ms], time [hh:mm:ss]"


class RRSampleBuffer:
    def __init__(self):
        self._samples: list[RRSample] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def extend(self, samples: Iterable[RRSample]) -> None:
        with self._lock:
            self._samples.extend(samples)

    def snapshot(self) -> list[RRSample]:
        with self._lock:
            return list(self._samples)

    def discard(self, count: int) -> None:
        """Drop the oldest count samples (the ones a successful export wrote)."""
        with self._lock:
            del self._samples[:count]


def _format_ms(value: float) -> str:
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def format_sample(sample: RRSample) -> str:
    ts = sample.captured_at
    return f"{_format_ms(sample.interval_ms)} , {ts:%H:%M:%S}.{ts.microsecond // 1000:03d}"


def format_export(samples: Iterable[RRSample]) -> str:
    lines = [EXPORT_HEADER, ""]
    lines.extend(format_sample(s) for s in samples)
    return "\n".join(lines) + "\n"


def export_rr_intervals(buffer: RRSampleBuffer, path: str | Path) -> int:
    """
    Write the buffered RR samples to path and clear them from the buffer.

    Returns the number of samples written. If the write fails the buffer is
    left untouched and the OSError propagates.
    """
    samples = buffer.snapshot()
    Path(path).write_text(format_export(samples), encoding="utf-8")
    buffer.discard(len(samples))
    logger.info("Exported %d RR intervals to %s", len(samples), path)
    return len(samples)
