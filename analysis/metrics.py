"""Spike-train statistics computed on lists of detected spikes.

This module provides the pure functions used by the detector and the offline
analysis view:
- filter_spikes: amplitude window selection (inclusive bounds)
- inter_spike_intervals: consecutive timestamp differences
- firing_rate: binned spike counts converted to Hz
"""
import math
from typing import List, Sequence

from shared.errors import InvalidConfig
from shared.models import Spike


def filter_spikes(spikes: Sequence[Spike], min_voltage: float, max_voltage: float) -> List[Spike]:
    return [spike for spike in spikes if min_voltage <= spike.amplitude <= max_voltage]


def inter_spike_intervals(spikes: Sequence[Spike]) -> List[float]:
    return [spikes[i].timestamp - spikes[i - 1].timestamp for i in range(1, len(spikes))]


def firing_rate(spikes: Sequence[Spike], window_size: float = 1.0) -> List[float]:
    """Bin spikes into fixed windows anchored at the first spike and return Hz per bin.

    The number of bins is ``ceil((last - first) / window_size)``. A spike whose
    bin index falls past the last bin is not counted, so a spike landing
    exactly on the final edge is dropped.
    """
    if window_size <= 0:
        raise InvalidConfig(f"window_size must be positive, got {window_size}")
    if not spikes:
        return []

    start = spikes[0].timestamp
    duration = spikes[-1].timestamp - start
    n_windows = int(math.ceil(duration / window_size))
    counts = [0] * n_windows
    for spike in spikes:
        index = int(math.floor((spike.timestamp - start) / window_size))
        if 0 <= index < n_windows:
            counts[index] += 1
    return [count / window_size for count in counts]


__all__ = ["filter_spikes", "inter_spike_intervals", "firing_rate"]
