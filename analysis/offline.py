"""Offline spike analysis of recorded WAV files."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from core.detection import SpikeDetector
from recording.session import format_spikes
from recording.wav_codec import WavDocument, read_wav_file
from shared.errors import InvalidConfig
from shared.models import Spike

from .metrics import filter_spikes, firing_rate, inter_spike_intervals

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_THRESHOLD = 0.1
DEFAULT_MIN_VOLTAGE = -0.5
DEFAULT_MAX_VOLTAGE = 0.5


def file_channel_ids(count: int) -> List[str]:
    return [f"file_ch{i + 1}" for i in range(count)]


def spikes_filename(wav_name: str) -> str:
    """``BYB_Recording_x.wav`` -> ``BYB_Recording_x-spikes.txt``."""
    return wav_name.replace(".wav", "-spikes.txt")


@dataclass
class SpikeAnalysis:
    """Spikes found in one file, plus the subset inside the amplitude window."""

    spikes: List[Spike]
    sample_rate: int
    duration: float
    min_voltage: float = DEFAULT_MIN_VOLTAGE
    max_voltage: float = DEFAULT_MAX_VOLTAGE
    filtered_spikes: List[Spike] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.update_filter(self.min_voltage, self.max_voltage)

    def update_filter(self, min_voltage: float, max_voltage: float) -> List[Spike]:
        if min_voltage > max_voltage:
            raise InvalidConfig(f"min_voltage {min_voltage} exceeds max_voltage {max_voltage}")
        self.min_voltage = float(min_voltage)
        self.max_voltage = float(max_voltage)
        self.filtered_spikes = filter_spikes(self.spikes, self.min_voltage, self.max_voltage)
        return self.filtered_spikes

    def by_channel(self) -> Dict[str, List[Spike]]:
        grouped: Dict[str, List[Spike]] = {}
        for spike in self.filtered_spikes:
            grouped.setdefault(spike.channel, []).append(spike)
        return grouped

    def inter_spike_intervals(self) -> List[float]:
        return inter_spike_intervals(self.filtered_spikes)

    def firing_rate(self, window_size: float = 1.0) -> List[float]:
        return firing_rate(self.filtered_spikes, window_size)

    def export_text(self) -> str:
        return format_spikes(self.filtered_spikes)

    def save(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.export_text())
        logger.info("Saved %d spike(s) to %s", len(self.filtered_spikes), target)
        return target


def analyze_document(
    document: WavDocument,
    threshold: float = DEFAULT_ANALYSIS_THRESHOLD,
    channel_ids: Optional[Sequence[str]] = None,
    *,
    min_voltage: float = DEFAULT_MIN_VOLTAGE,
    max_voltage: float = DEFAULT_MAX_VOLTAGE,
) -> SpikeAnalysis:
    """
    Detect spikes in every channel of a loaded file.

    Each channel gets its own detector, fed the whole channel as one block
    starting at time 0, so timestamps are seconds from the start of the file
    and no state leaks from the live detector.
    """
    if channel_ids is None:
        channel_ids = file_channel_ids(document.number_of_channels)
    if len(channel_ids) != document.number_of_channels:
        raise InvalidConfig(
            f"{len(channel_ids)} channel id(s) given for {document.number_of_channels} channel(s)"
        )

    spikes: List[Spike] = []
    for channel_id, samples in zip(channel_ids, document.data):
        detector = SpikeDetector(threshold=threshold)
        spikes.extend(detector.detect(samples, document.sample_rate, 0.0, channel_id))

    logger.info(
        "Analysed %d channel(s), %.2f s: %d spike(s) above %.3f",
        document.number_of_channels,
        document.duration,
        len(spikes),
        threshold,
    )
    return SpikeAnalysis(
        spikes=spikes,
        sample_rate=document.sample_rate,
        duration=document.duration,
        min_voltage=min_voltage,
        max_voltage=max_voltage,
    )


def load_and_analyze(
    path: Union[str, Path],
    threshold: float = DEFAULT_ANALYSIS_THRESHOLD,
    *,
    min_voltage: float = DEFAULT_MIN_VOLTAGE,
    max_voltage: float = DEFAULT_MAX_VOLTAGE,
) -> SpikeAnalysis:
    document = read_wav_file(path)
    return analyze_document(document, threshold, min_voltage=min_voltage, max_voltage=max_voltage)


__all__ = [
    "SpikeAnalysis",
    "analyze_document",
    "file_channel_ids",
    "load_and_analyze",
    "spikes_filename",
]
