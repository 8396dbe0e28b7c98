from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Deque, List, Sequence

from .errors import InvalidConfig
from .models import Spike


class SpikeRingBuffer:
    """
    Thread-safe, bounded ring buffer for Spike objects.

    The pipeline pushes detected spikes into the buffer, while visualization
    code can either peek at the most recent spikes or drain the buffer entirely.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise InvalidConfig("capacity must be positive")
        self._capacity = int(capacity)
        self._buffer: Deque[Spike] = deque(maxlen=self._capacity)
        self._lock = Lock()
        self._total = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_pushed(self) -> int:
        """Number of spikes ever pushed, including those since evicted."""
        with self._lock:
            return self._total

    def push(self, spike: Spike) -> None:
        """
        Append a spike to the buffer, dropping the oldest entry if the buffer
        is full.
        """
        with self._lock:
            self._buffer.append(spike)
            self._total += 1

    def extend(self, spikes: Sequence[Spike]) -> None:
        with self._lock:
            self._buffer.extend(spikes)
            self._total += len(spikes)

    def drain(self) -> List[Spike]:
        """
        Remove and return all buffered spikes in detection order.
        """
        with self._lock:
            spikes = list(self._buffer)
            self._buffer.clear()
            return spikes

    def peek_all(self) -> List[Spike]:
        with self._lock:
            return list(self._buffer)

    def timestamps(self) -> List[float]:
        """Spike marker positions for the trace overlay."""
        with self._lock:
            return [spike.timestamp for spike in self._buffer]

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


__all__ = ["SpikeRingBuffer"]
