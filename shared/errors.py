"""Exception types raised by the acquisition, detection and recording layers."""

from __future__ import annotations


class SpikeScopeError(Exception):
    """Base class for all errors raised by SpikeScope."""


class InvalidConfig(SpikeScopeError, ValueError):
    """A sample rate, duration, count or window size is out of range."""


class MalformedContainer(SpikeScopeError, ValueError):
    """WAV bytes are truncated, inconsistent, or use an unsupported format."""


class SourceUnavailable(SpikeScopeError, RuntimeError):
    """A live sample source could not be opened or stopped delivering data."""


__all__ = ["SpikeScopeError", "InvalidConfig", "MalformedContainer", "SourceUnavailable"]
