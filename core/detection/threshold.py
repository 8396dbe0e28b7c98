from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import Deque, List, Sequence

import numpy as np

from analysis.metrics import filter_spikes, firing_rate, inter_spike_intervals
from shared.errors import InvalidConfig
from shared.models import Spike

logger = logging.getLogger(__name__)

REFRACTORY_PERIOD_S = 0.001
PEAK_SEARCH_SAMPLES = 20
PEAK_DROP_RATIO = 0.8
WAVEFORM_PRE_SAMPLES = 20
WAVEFORM_POST_SAMPLES = 40
WAVEFORM_LENGTH = WAVEFORM_PRE_SAMPLES + WAVEFORM_POST_SAMPLES


class SpikeDetector:
    """
    Streaming detector for upward threshold crossings.

    Each crossing is refined to a nearby peak, reported as a Spike, and the
    60-sample waveform around the peak is folded into a bounded running
    average. State (last spike time and the average window) persists across
    calls to :meth:`detect`, so one instance follows one stream of blocks.
    """

    def __init__(self, threshold: float = 0.5, average_count: int = 25) -> None:
        if average_count < 0:
            raise InvalidConfig("average_count must be non-negative")
        self._threshold: float = float(threshold)
        self._refractory: float = REFRACTORY_PERIOD_S
        self._last_spike_time: float = 0.0
        self._max_average_count: int = int(average_count)
        self._average_window: Deque[np.ndarray] = deque(maxlen=self._max_average_count)
        self._lock = Lock()

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def refractory_period(self) -> float:
        return self._refractory

    @property
    def average_count(self) -> int:
        return self._max_average_count

    @property
    def average_size(self) -> int:
        """Number of waveforms currently contributing to the average."""
        with self._lock:
            return len(self._average_window)

    @property
    def last_spike_time(self) -> float:
        return self._last_spike_time

    def set_threshold(self, threshold: float) -> None:
        self._threshold = float(threshold)

    def set_average_count(self, count: int) -> None:
        if count < 0:
            raise InvalidConfig(f"average count must be non-negative, got {count}")
        with self._lock:
            self._max_average_count = int(count)
            # deque(maxlen=...) keeps the newest entries
            self._average_window = deque(self._average_window, maxlen=self._max_average_count)

    def configure(self, **params) -> None:
        if "threshold" in params:
            self.set_threshold(params["threshold"])
        if "average_count" in params:
            self.set_average_count(params["average_count"])

    def reset(self) -> None:
        """Forget the last spike time and the averaged waveforms."""
        with self._lock:
            self._last_spike_time = 0.0
            self._average_window.clear()

    def detect(
        self,
        data: Sequence[float] | np.ndarray,
        sample_rate: float,
        timestamp: float,
        channel_id: str,
    ) -> List[Spike]:
        if sample_rate <= 0:
            raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")

        samples = np.asarray(data, dtype=np.float32).reshape(-1)
        n = samples.shape[0]
        if n < 3:
            return []

        dt = 1.0 / float(sample_rate)
        threshold = self._threshold

        # Only indices 1..n-2 are scanned; the refractory test only matters
        # where a crossing is present, so scan the crossings directly.
        wide = samples.astype(np.float64)
        crossing = (wide[:-2] < threshold) & (wide[1:-1] >= threshold)
        candidates = np.flatnonzero(crossing) + 1

        spikes: List[Spike] = []
        for idx in candidates:
            i = int(idx)
            current_time = timestamp + i * dt
            if current_time - self._last_spike_time < self._refractory:
                continue

            peak_index = i
            peak_value = float(samples[i])
            for j in range(i + 1, min(i + PEAK_SEARCH_SAMPLES, n)):
                value = float(samples[j])
                if value > peak_value:
                    peak_index = j
                    peak_value = value
                elif value < peak_value * PEAK_DROP_RATIO:
                    break

            spikes.append(
                Spike(
                    timestamp=timestamp + peak_index * dt,
                    amplitude=peak_value,
                    channel=channel_id,
                )
            )
            self._last_spike_time = current_time

            start = max(0, peak_index - WAVEFORM_PRE_SAMPLES)
            end = min(n, peak_index + WAVEFORM_POST_SAMPLES)
            waveform = np.zeros(WAVEFORM_LENGTH, dtype=np.float32)
            waveform[: end - start] = samples[start:end]
            self._add_to_average(waveform)

        if spikes:
            logger.debug("Detected %d spike(s) on %s", len(spikes), channel_id)
        return spikes

    def _add_to_average(self, waveform: np.ndarray) -> None:
        with self._lock:
            self._average_window.append(waveform)

    def get_average_spike(self) -> np.ndarray:
        with self._lock:
            if not self._average_window:
                return np.zeros(WAVEFORM_LENGTH, dtype=np.float32)
            stacked = np.stack(list(self._average_window))
        return np.mean(stacked, axis=0, dtype=np.float64).astype(np.float32)

    @staticmethod
    def filter_spikes(spikes: Sequence[Spike], min_voltage: float, max_voltage: float) -> List[Spike]:
        return filter_spikes(spikes, min_voltage, max_voltage)

    @staticmethod
    def calculate_isi(spikes: Sequence[Spike]) -> List[float]:
        return inter_spike_intervals(spikes)

    @staticmethod
    def calculate_firing_rate(spikes: Sequence[Spike], window_size: float = 1.0) -> List[float]:
        return firing_rate(spikes, window_size)


__all__ = ["SpikeDetector", "WAVEFORM_LENGTH", "REFRACTORY_PERIOD_S"]
