"""Core application utilities."""

from .detection import SpikeDetector
from .pipeline import PipelineCoordinator, PipelineStats
from shared.models import ActualConfig, ChannelInfo, Chunk, DeviceInfo, EndOfStream, Spike

__all__ = [
    "ActualConfig",
    "ChannelInfo",
    "Chunk",
    "DeviceInfo",
    "EndOfStream",
    "PipelineCoordinator",
    "PipelineStats",
    "Spike",
    "SpikeDetector",
]
