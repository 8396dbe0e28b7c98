from .threshold import REFRACTORY_PERIOD_S, WAVEFORM_LENGTH, SpikeDetector

__all__ = [
    "SpikeDetector",
    "REFRACTORY_PERIOD_S",
    "WAVEFORM_LENGTH",
]
