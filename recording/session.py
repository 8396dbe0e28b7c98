"""Recording sessions: timing, numbered event markers and the files written on stop.

A session does not hold sample data itself; the pipeline feeds the active
WavEncoder and hands the exported bytes to :meth:`RecordingSession.stop`.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from shared.models import EventMarker, Spike

from .wav_codec import save_wav

logger = logging.getLogger(__name__)

RECORDING_PREFIX = "BYB_Recording_"
EVENT_KEYS = frozenset("0123456789")


def recording_filename(now: Optional[datetime] = None) -> str:
    """Timestamped WAV name, e.g. ``BYB_Recording_2024-03-01T12-30-05.wav`` (UTC)."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{RECORDING_PREFIX}{stamp}.wav"


def events_filename(wav_name: str) -> str:
    return wav_name.replace(".wav", "-events.txt")


def format_events(markers: Sequence[EventMarker]) -> str:
    return "\n".join(f"{marker.timestamp!r}\t{marker.key}" for marker in markers)


def parse_events(text: str) -> List[EventMarker]:
    markers: List[EventMarker] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) != 2:
            raise ValueError(f"line {line_no}: expected 'timestamp<TAB>key', got {line!r}")
        markers.append(EventMarker(timestamp=float(parts[0]), key=parts[1].strip()))
    return markers


def format_spikes(spikes: Sequence[Spike]) -> str:
    return "\n".join(f"{s.timestamp!r}\t{s.amplitude!r}\t{s.channel}" for s in spikes)


def parse_spikes(text: str) -> List[Spike]:
    spikes: List[Spike] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) != 3:
            raise ValueError(f"line {line_no}: expected 'timestamp<TAB>amplitude<TAB>channel', got {line!r}")
        spikes.append(Spike(timestamp=float(parts[0]), amplitude=float(parts[1]), channel=parts[2].strip()))
    return spikes


@dataclass(frozen=True)
class RecordingResult:
    wav_path: Path
    events_path: Optional[Path]
    duration: float
    markers: Tuple[EventMarker, ...]


class RecordingSession:
    """Tracks one recording from start to stop and writes its files."""

    def __init__(self) -> None:
        self._start_time: Optional[float] = None
        self._markers: List[EventMarker] = []

    @property
    def is_recording(self) -> bool:
        return self._start_time is not None

    @property
    def markers(self) -> Tuple[EventMarker, ...]:
        return tuple(self._markers)

    def start(self, now: Optional[float] = None) -> None:
        if self.is_recording:
            raise RuntimeError("Recording already in progress")
        self._start_time = time.time() if now is None else float(now)
        self._markers = []
        logger.info("Recording started")

    def duration(self, now: Optional[float] = None) -> float:
        if self._start_time is None:
            return 0.0
        current = time.time() if now is None else float(now)
        return current - self._start_time

    def mark_event(self, key: str, now: Optional[float] = None) -> Optional[EventMarker]:
        """Drop a marker for a digit key; other keys, or keys while idle, are ignored."""
        if not self.is_recording or key not in EVENT_KEYS:
            return None
        marker = EventMarker(timestamp=self.duration(now), key=key)
        self._markers.append(marker)
        logger.debug("Event marker %s at %.3f s", marker.key, marker.timestamp)
        return marker

    def stop(
        self,
        payload: bytes,
        directory: Union[str, Path],
        *,
        now: Optional[float] = None,
        when: Optional[datetime] = None,
    ) -> RecordingResult:
        """Write the WAV image (and the events side file when markers exist)."""
        if not self.is_recording:
            raise RuntimeError("No recording in progress")
        duration = self.duration(now)
        out_dir = Path(directory)
        wav_name = recording_filename(when)
        wav_path = save_wav(out_dir / wav_name, payload)

        events_path: Optional[Path] = None
        if self._markers:
            events_path = out_dir / events_filename(wav_name)
            events_path.write_text(format_events(self._markers))

        result = RecordingResult(
            wav_path=wav_path,
            events_path=events_path,
            duration=duration,
            markers=tuple(self._markers),
        )
        self._start_time = None
        self._markers = []
        logger.info("Recording saved as %s (%.2f s)", wav_path.name, duration)
        return result


__all__ = [
    "RecordingResult",
    "RecordingSession",
    "events_filename",
    "format_events",
    "format_spikes",
    "parse_events",
    "parse_spikes",
    "recording_filename",
]
