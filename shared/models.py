from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np


def _freeze_array(array: np.ndarray, *, ndim: int | None = None) -> np.ndarray:
    """Return a read-only, C-contiguous float32 copy of `array`, validating dimensions."""
    arr = np.array(array, dtype=np.float32, copy=True, order="C")
    if ndim is not None and arr.ndim != ndim:
        raise ValueError(f"array must be {ndim}D, got {arr.ndim}D")
    arr.setflags(write=False)
    return arr


def _copy_mapping(mapping: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if mapping is None:
        return None
    if not isinstance(mapping, Mapping):
        raise TypeError("meta must be a mapping type")
    return dict(mapping)


# ----------------------------
# Device / Channel metadata
# ----------------------------

@dataclass(frozen=True)
class DeviceInfo:
    """A discoverable input device."""

    id: str
    name: str
    vendor: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChannelInfo:
    """A single input channel. `id` is the opaque identity carried through detection."""

    id: str
    name: str
    units: str = "V"


@dataclass(frozen=True)
class ActualConfig:
    """Configuration achieved after a driver configures the device."""

    sample_rate: int
    channels: List[ChannelInfo]
    chunk_size: int
    dtype: str = "float32"

    @property
    def channel_ids(self) -> Tuple[str, ...]:
        return tuple(ch.id for ch in self.channels)


# ----------------------------
# Streaming data models
# ----------------------------

@dataclass(frozen=True)
class Chunk:
    """One delivery from a sample source: a block of frames for every active channel."""

    samples: np.ndarray
    start_time: float
    dt: float
    seq: int
    channel_ids: Tuple[str, ...]
    meta: Optional[Mapping[str, Any]] = field(default=None)

    def __post_init__(self) -> None:
        if self.dt <= 0:
            raise ValueError("dt must be positive")
        if self.seq < 0:
            raise ValueError("seq must be non-negative")
        if not self.channel_ids:
            raise ValueError("channel_ids must not be empty")

        samples = _freeze_array(self.samples, ndim=2)
        if samples.shape[0] != len(self.channel_ids):
            raise ValueError("samples shape mismatch: axis 0 must match len(channel_ids)")

        object.__setattr__(self, "samples", samples)
        object.__setattr__(self, "channel_ids", tuple(str(cid) for cid in self.channel_ids))
        object.__setattr__(self, "meta", _copy_mapping(self.meta))

    @property
    def n_channels(self) -> int:
        return self.samples.shape[0]

    @property
    def n_samples(self) -> int:
        return self.samples.shape[1]

    @property
    def sample_rate(self) -> float:
        return 1.0 / self.dt

    @property
    def duration(self) -> float:
        return self.n_samples * self.dt

    def blocks(self) -> List[np.ndarray]:
        """Per-channel views, in channel order."""
        return [self.samples[idx] for idx in range(self.n_channels)]


@dataclass(frozen=True)
class Spike:
    """A detected threshold crossing, refined to its local peak.

    Attributes:
        timestamp: Peak time in seconds, in the timebase of the block it came from.
        amplitude: Sample value at the refined peak.
        channel: Identity of the channel the spike was detected on.
    """

    timestamp: float
    amplitude: float
    channel: str


@dataclass(frozen=True)
class EventMarker:
    """A numbered marker dropped by the user while recording."""

    timestamp: float
    key: str


def _restore_end_of_stream() -> "_EndOfStreamSentinel":
    return EndOfStream


class _EndOfStreamSentinel:
    __slots__ = ()

    def __repr__(self) -> str:
        return "EndOfStream"

    def __reduce__(self):
        return (_restore_end_of_stream, ())


EndOfStream = _EndOfStreamSentinel()


__all__ = [
    "DeviceInfo",
    "ChannelInfo",
    "ActualConfig",
    "Chunk",
    "Spike",
    "EventMarker",
    "EndOfStream",
]
