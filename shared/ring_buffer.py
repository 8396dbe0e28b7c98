from __future__ import annotations

import math
from threading import RLock
from typing import Sequence

import numpy as np

from .errors import InvalidConfig


class WaveformBuffer:
    """
    Fixed-capacity circular history of one channel, backed by a preallocated
    float32 array.

    The buffer always holds the most recent `capacity` samples pushed into it.
    Positions that have never been written read back as zero. Reads return
    copies so a renderer on another thread never observes a half-applied push.
    """

    def __init__(self, sample_rate: int, duration_seconds: float = 60.0) -> None:
        if sample_rate <= 0:
            raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")
        if duration_seconds <= 0:
            raise InvalidConfig(f"duration_seconds must be positive, got {duration_seconds}")
        capacity = int(math.floor(sample_rate * duration_seconds))
        if capacity < 1:
            raise InvalidConfig("sample_rate * duration_seconds must hold at least one sample")

        self._sample_rate = int(sample_rate)
        self._capacity = capacity
        self._data = np.zeros(capacity, dtype=np.float32)
        self._lock = RLock()
        self._write_index = 0
        self._total_written = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def write_index(self) -> int:
        """Next position to be written, always in ``[0, capacity)``."""
        with self._lock:
            return self._write_index

    @property
    def total_written(self) -> int:
        with self._lock:
            return self._total_written

    def push(self, block: Sequence[float] | np.ndarray) -> None:
        """
        Append `block` at the write position, wrapping around the end.

        A block longer than the capacity leaves the buffer in the same state as
        writing its samples one at a time: only the last `capacity` survive.
        """
        arr = np.asarray(block, dtype=np.float32).reshape(-1)
        length = arr.shape[0]
        if length == 0:
            return

        with self._lock:
            start = self._write_index
            if length > self._capacity:
                start = (start + length - self._capacity) % self._capacity
                arr = arr[-self._capacity:]

            count = arr.shape[0]
            end = start + count
            if end <= self._capacity:
                self._data[start:end] = arr
            else:
                first = self._capacity - start
                self._data[start:] = arr[:first]
                self._data[: end - self._capacity] = arr[first:]

            self._write_index = (self._write_index + length) % self._capacity
            self._total_written += length

    def get_range(self, duration: float) -> np.ndarray:
        """
        Return the most recent ``floor(duration * sample_rate)`` samples, oldest first.

        The part of the window older than the buffer's history (never written,
        or beyond the capacity) reads as zero.
        """
        if duration < 0:
            raise InvalidConfig(f"duration must be non-negative, got {duration}")
        num_samples = int(math.floor(duration * self._sample_rate))
        result = np.zeros(num_samples, dtype=np.float32)
        if num_samples == 0:
            return result

        available = min(num_samples, self._capacity)
        with self._lock:
            indices = (self._write_index - available + np.arange(available)) % self._capacity
            result[num_samples - available:] = self._data[indices]
        return result

    def get_latest(self, duration: float) -> np.ndarray:
        return self.get_range(duration)

    def clear(self) -> None:
        with self._lock:
            self._data.fill(0.0)
            self._write_index = 0
            self._total_written = 0

    @staticmethod
    def rms(data: Sequence[float] | np.ndarray) -> float:
        """Root-mean-square of `data`; 0.0 for an empty sequence."""
        arr = np.asarray(data, dtype=np.float64).reshape(-1)
        if arr.size == 0:
            return 0.0
        return float(np.sqrt(np.mean(arr * arr)))


__all__ = ["WaveformBuffer"]
