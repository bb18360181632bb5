from dataclasses import dataclass
from enum import Enum, auto
from typing import Tuple

# Payloads smaller than this are reported in decimal MB/s, larger ones in binary MiB/s.
BINARY_UNIT_THRESHOLD = 1024
DECIMAL_MEGABYTE = 1_000_000
BINARY_MEGABYTE = 1_048_576


class TrialState(Enum):
    IDLE = auto()
    SENDING = auto()
    AWAITING_FINAL_ACK = auto()
    COMPLETED = auto()
    FAILED = auto()


def throughput_unit(payload_size: int) -> Tuple[int, str]:
    """Returns (divisor, unit label) for a payload of `payload_size` bytes."""
    if payload_size < BINARY_UNIT_THRESHOLD:
        return DECIMAL_MEGABYTE, "MB/s"
    return BINARY_MEGABYTE, "MiB/s"


def compute_throughput(payload_size: int, message_count: int, elapsed: float) -> float:
    """Megabytes per second moved by `message_count` payloads in `elapsed` seconds."""
    divisor, _ = throughput_unit(payload_size)
    total_bytes = payload_size * message_count
    if elapsed <= 0:
        return float("inf") if total_bytes else 0.0
    return (total_bytes / elapsed) / divisor


@dataclass(frozen=True)
class TrialResult:
    """Outcome of one completed bandwidth trial. Lives only as long as its report line."""
    payload_size: int
    message_count: int
    elapsed: float

    @property
    def total_bytes(self) -> int:
        return self.payload_size * self.message_count

    @property
    def throughput(self) -> float:
        return compute_throughput(self.payload_size, self.message_count, self.elapsed)

    @property
    def unit(self) -> str:
        return throughput_unit(self.payload_size)[1]

    def __str__(self) -> str:
        return f"bandwidth: {self.throughput:.2f} {self.unit}"
