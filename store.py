"""
Netpulse sample store: live status, rolling history and the CSV log.

- StatusSnapshot: what the dashboard shows each tick
- SampleHistory: per-cycle values for the five measured series
- CsvLog: append-only `date,latency,down,up` file, one row per cycle
"""
from __future__ import annotations

import csv
import enum
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Iterable, List

logger = logging.getLogger(__name__)

SENTINEL = -1
CSV_HEADER = ("date", "latency", "down", "up")
AVG_PRECISION = 3


# --------------------
# Status
# --------------------

class CycleState(enum.Enum):
    IDLE = "idle"
    STARTING = "Starting tests"
    RUNNING_LATENCY = "Running latency test..."
    LATENCY_FINISHED = "Finished latency test"
    LATENCY_FAILED = "Error, latency test failed!"
    RUNNING_SPEED = "Running speed test..."
    SPEED_FINISHED = "Finished speed test"
    SPEED_FAILED = "Error, speed test failed!"

    @property
    def label(self) -> str:
        return self.value

    @property
    def is_failure(self) -> bool:
        return self in (CycleState.LATENCY_FAILED, CycleState.SPEED_FAILED)


@dataclass
class Averages:
    latency: float = 0.0
    up: float = 0.0
    down: float = 0.0
    hup: float = 0.0
    hdown: float = 0.0


@dataclass
class StatusSnapshot:
    countdown: int = 0
    state: CycleState = CycleState.IDLE
    tests: int = 0
    uptime: int = 0
    latency: float = 0
    up: float = 0
    down: float = 0
    hup: float = 0
    hdown: float = 0
    avg: Averages = field(default_factory=Averages)


# --------------------
# History
# --------------------

@dataclass
class CycleSample:
    latency: float = SENTINEL
    up: float = SENTINEL
    down: float = SENTINEL
    hup: float = SENTINEL
    hdown: float = SENTINEL


def average(values: Iterable[float]) -> float:
    """Arithmetic mean rounded to AVG_PRECISION places; 0.0 for no values."""
    values = list(values)
    if not values:
        return 0.0
    # fsum is exact, so the result does not depend on input order
    return round(math.fsum(values) / len(values), AVG_PRECISION)


@dataclass
class SampleHistory:
    latency: List[float] = field(default_factory=list)
    up: List[float] = field(default_factory=list)
    down: List[float] = field(default_factory=list)
    hup: List[float] = field(default_factory=list)
    hdown: List[float] = field(default_factory=list)

    def append(self, sample: CycleSample) -> None:
        self.latency.append(sample.latency)
        self.up.append(sample.up)
        self.down.append(sample.down)
        self.hup.append(sample.hup)
        self.hdown.append(sample.hdown)

    def __len__(self) -> int:
        return len(self.latency)

    def averages(self) -> Averages:
        return Averages(
            latency=average(self.latency),
            up=average(self.up),
            down=average(self.down),
            hup=average(self.hup),
            hdown=average(self.hdown),
        )


# --------------------
# CSV log
# --------------------

@dataclass
class LogRecord:
    timestamp_ms: int
    latency: float
    download: float
    upload: float

    def to_row(self) -> List[str]:
        return [str(self.timestamp_ms), fmt_value(self.latency), fmt_value(self.download), fmt_value(self.upload)]


def fmt_value(value: float) -> str:
    # whole numbers (including the sentinel) are written without a trailing ".0"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class CsvLog:
    """Append-only per-cycle log. No transactional guarantees: a crash mid-write can lose the last row."""

    def __init__(self, path: str):
        self.path = path

    def ensure(self) -> bool:
        """Create the file with its header row if missing. Returns True when created."""
        if os.path.exists(self.path):
            return False
        with open(self.path, "w", newline="", encoding="utf-8") as f:
            csv.writer(f, lineterminator="\n").writerow(CSV_HEADER)
        logger.info("Created log file %s", self.path)
        return True

    def append(self, record: LogRecord) -> None:
        self.ensure()
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            csv.writer(f, lineterminator="\n").writerow(record.to_row())

    def clear(self) -> None:
        with_file = os.path.exists(self.path)
        if with_file:
            os.remove(self.path)
        self.ensure()
        logger.info("Log file %s reset (existed=%s)", self.path, with_file)

    def read_text(self) -> str:
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def read_records(self) -> List[LogRecord]:
        records: List[LogRecord] = []
        with open(self.path, "r", newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if header is not None and tuple(header) != CSV_HEADER:
                logger.warning("Unexpected log header in %s: %s", self.path, header)
            for lineno, row in enumerate(reader, start=2):
                try:
                    ts, lat, down, up = row
                    records.append(LogRecord(int(ts), float(lat), float(down), float(up)))
                except ValueError:
                    logger.warning("Skipping malformed log row %d: %r", lineno, row)
        return records
