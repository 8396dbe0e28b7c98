from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, fields, replace
from typing import Callable, Dict, Optional

from .errors import InvalidConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppSettings:
    sample_rate: int = 44100
    block_size: int = 4096
    channel_count: int = 2
    buffer_seconds: float = 60.0
    threshold_level: float = 0.5
    average_count: int = 25
    analysis_threshold: float = 0.1
    analysis_min_voltage: float = -0.5
    analysis_max_voltage: float = 0.5
    serial_baud_rate: int = 230400
    serial_channel_count: int = 1
    mute_speakers: bool = True
    recordings_dir: Optional[str] = None


def validate_settings(settings: AppSettings) -> None:
    if settings.sample_rate <= 0:
        raise InvalidConfig("sample_rate must be positive")
    if settings.block_size <= 0:
        raise InvalidConfig("block_size must be positive")
    if settings.channel_count <= 0:
        raise InvalidConfig("channel_count must be positive")
    if settings.buffer_seconds <= 0:
        raise InvalidConfig("buffer_seconds must be positive")
    if settings.average_count < 0:
        raise InvalidConfig("average_count must be non-negative")
    if settings.analysis_min_voltage > settings.analysis_max_voltage:
        raise InvalidConfig("analysis_min_voltage must not exceed analysis_max_voltage")
    if settings.serial_baud_rate <= 0:
        raise InvalidConfig("serial_baud_rate must be positive")
    if settings.serial_channel_count <= 0:
        raise InvalidConfig("serial_channel_count must be positive")


class AppSettingsStore:
    """Thread-safe in-memory settings store. Nothing is written to disk."""

    def __init__(self, initial: Optional[AppSettings] = None) -> None:
        settings = initial if initial is not None else AppSettings()
        validate_settings(settings)
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[AppSettings], None]] = {}
        self._next_token = 0
        self._settings = settings

    def get(self) -> AppSettings:
        with self._lock:
            return self._settings

    def update(self, **kwargs) -> AppSettings:
        known = {f.name for f in fields(AppSettings)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise InvalidConfig(f"Unknown settings: {unknown}")
        with self._lock:
            new_settings = replace(self._settings, **kwargs)
            validate_settings(new_settings)
            self._settings = new_settings
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(new_settings)
            except Exception as exc:
                logger.debug("App settings subscriber callback failed: %s", exc)
                continue
        return new_settings

    def subscribe(self, callback: Callable[[AppSettings], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._settings
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe


__all__ = ["AppSettings", "AppSettingsStore", "validate_settings"]
