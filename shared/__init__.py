"""
Shared data structures available to the acquisition, analysis and recording layers.
"""

from .errors import InvalidConfig, MalformedContainer, SourceUnavailable, SpikeScopeError
from .event_buffer import SpikeRingBuffer
from .models import Chunk, EndOfStream, EventMarker, Spike
from .ring_buffer import WaveformBuffer

__all__ = [
    "Chunk",
    "EndOfStream",
    "EventMarker",
    "InvalidConfig",
    "MalformedContainer",
    "SourceUnavailable",
    "Spike",
    "SpikeRingBuffer",
    "SpikeScopeError",
    "WaveformBuffer",
]
