"""
Reference implementations for property-based testing.

These are deliberately simple, obviously-correct implementations used to
verify the production code via differential testing. They prioritize
correctness and clarity over performance.
"""
from __future__ import annotations

from typing import List, Tuple

import numpy as np


class ReferenceRingBuffer:
    """Sample-at-a-time ring buffer used as ground truth for WaveformBuffer.

    Every sample is written individually at the write index, which then
    advances modulo capacity. Reads walk backwards from the write index.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.buffer = [0.0] * capacity
        self.write_index = 0

    def push(self, data) -> None:
        for value in data:
            self.buffer[self.write_index] = float(np.float32(value))
            self.write_index = (self.write_index + 1) % self.capacity

    def get_last(self, n: int) -> List[float]:
        out = [0.0] * n
        for k in range(min(n, self.capacity)):
            out[n - 1 - k] = self.buffer[(self.write_index - 1 - k) % self.capacity]
        return out


class ReferenceThresholdDetector:
    """Index-by-index threshold detector with refractory gating and peak refinement."""

    def __init__(self, threshold: float, refractory: float = 0.001):
        self.threshold = threshold
        self.refractory = refractory
        self.last_spike_time = 0.0

    def detect(self, data, sample_rate: float, timestamp: float) -> List[Tuple[float, float, int]]:
        """Return (timestamp, amplitude, peak_index) tuples."""
        data = [float(v) for v in np.asarray(data, dtype=np.float32)]
        dt = 1.0 / sample_rate
        found = []
        for i in range(1, len(data) - 1):
            current_time = timestamp + i * dt
            if current_time - self.last_spike_time < self.refractory:
                continue
            if data[i - 1] < self.threshold and data[i] >= self.threshold:
                peak_index = i
                peak_value = data[i]
                for j in range(i + 1, min(i + 20, len(data))):
                    if data[j] > peak_value:
                        peak_value = data[j]
                        peak_index = j
                    elif data[j] < peak_value * 0.8:
                        break
                found.append((timestamp + peak_index * dt, peak_value, peak_index))
                self.last_spike_time = current_time
        return found
