# daq/soundcard_source.py
from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional, Sequence

import numpy as np

from shared.errors import SourceUnavailable
from shared.models import ActualConfig, ChannelInfo, DeviceInfo

from .base_source import BaseSource

logger = logging.getLogger(__name__)

try:
    import miniaudio
except ImportError as e:  # pragma: no cover
    miniaudio = None
    _IMPORT_ERROR = e

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_BLOCK_SIZE = 4096


class FrameAccumulator:
    """
    Collects interleaved capture callbacks of arbitrary length and hands back
    fixed-size (frames, channels) blocks.
    """

    def __init__(self, block_size: int, channels: int) -> None:
        self.block_size = block_size
        self.channels = channels
        self._pending: List[np.ndarray] = []
        self._filled = 0

    @property
    def filled(self) -> int:
        return self._filled

    def write(self, data: np.ndarray) -> None:
        if data.shape[0] == 0:
            return
        self._pending.append(np.array(data, dtype=np.float32, copy=True))
        self._filled += data.shape[0]

    def pop_blocks(self) -> List[np.ndarray]:
        if self._filled < self.block_size:
            return []
        merged = np.concatenate(self._pending, axis=0)
        n_blocks = merged.shape[0] // self.block_size
        cut = n_blocks * self.block_size
        blocks = [merged[i : i + self.block_size] for i in range(0, cut, self.block_size)]
        rest = merged[cut:]
        self._pending = [rest] if rest.shape[0] else []
        self._filled = rest.shape[0]
        return blocks

    def clear(self) -> None:
        self._pending = []
        self._filled = 0


class SoundCardSource(BaseSource):
    """
    Microphone / line-in capture using `miniaudio`.

    Notes
    -----
    • Capture callbacks deliver interleaved float32 frames; they are regrouped
      into fixed 4096-frame blocks (about 93 ms at 44.1 kHz) before emission.
    • Channel identifiers are simple strings: "In 1", "In 2", ...
    """

    @classmethod
    def device_class_name(cls) -> str:
        return "Sound Card"

    @classmethod
    def list_available_devices(cls) -> List[DeviceInfo]:
        if miniaudio is None:
            raise SourceUnavailable(f"`miniaudio` is not available: {_IMPORT_ERROR!r}")
        devices = [
            DeviceInfo(id="default", name="System Default", details={"channels": 2, "real_id": None})
        ]
        try:
            captures = miniaudio.Devices().get_captures()
        except Exception as exc:
            logger.warning("Failed to get capture devices: %s", exc)
            return devices
        for idx, dev in enumerate(captures):
            max_channels = 0
            for fmt in dev.get("formats") or []:
                max_channels = max(max_channels, fmt.get("channels", 0))
            devices.append(
                DeviceInfo(
                    id=str(idx),
                    name=dev["name"],
                    details={"channels": max_channels or 2, "real_id": dev["id"]},
                )
            )
        return devices

    def __init__(self, queue_maxsize: int = 64, channel_count: int = 2) -> None:
        super().__init__(queue_maxsize=queue_maxsize)
        self._n_in = int(channel_count)
        self._miniaudio_device_id: Any = None
        self._buf_lock = threading.Lock()
        self._accumulator: Optional[FrameAccumulator] = None
        self._device: Any = None

    def list_available_channels(self, device_id: str) -> List[ChannelInfo]:
        return [ChannelInfo(id=f"In {i + 1}", name=f"In {i + 1}") for i in range(self._n_in)]

    def _open_impl(self, device_id: str) -> None:
        if miniaudio is None:
            raise SourceUnavailable(f"`miniaudio` unavailable: {_IMPORT_ERROR!r}")
        if device_id == "default":
            self._miniaudio_device_id = None
            return
        for dev in self.list_available_devices():
            if dev.id == device_id:
                self._miniaudio_device_id = dev.details.get("real_id")
                return
        raise SourceUnavailable(f"Invalid device ID: {device_id}")

    def _close_impl(self) -> None:
        self._miniaudio_device_id = None

    def _configure_impl(self, sample_rate: int, channels: Sequence[str], chunk_size: int, **options) -> ActualConfig:
        self._accumulator = FrameAccumulator(chunk_size, self._n_in)
        selected = self.get_active_channels()
        return ActualConfig(sample_rate=sample_rate, channels=selected, chunk_size=chunk_size)

    def _column_indices(self) -> List[int]:
        all_ids = [ch.id for ch in self._available_channels]
        return [all_ids.index(ch.id) for ch in self.get_active_channels()]

    def _handle_capture(self, data_bytes: bytes) -> None:
        data = np.frombuffer(data_bytes, dtype=np.float32)
        frames = len(data) // self._n_in
        if frames <= 0:
            return
        data = data[: frames * self._n_in].reshape((frames, self._n_in))
        with self._buf_lock:
            if self._accumulator is None:
                return
            self._accumulator.write(data)
            blocks = self._accumulator.pop_blocks()
        columns = self._column_indices()
        for block in blocks:
            self.emit_array(block[:, columns])

    def _start_impl(self) -> None:
        if self._device is not None:
            return

        def capture_generator():
            while True:
                data_bytes = yield
                self._handle_capture(data_bytes)

        try:
            self._device = miniaudio.CaptureDevice(
                device_id=self._miniaudio_device_id,
                nchannels=self._n_in,
                sample_rate=self.config.sample_rate,
                input_format=miniaudio.SampleFormat.FLOAT32,
                buffersize_msec=100,
            )
            gen = capture_generator()
            next(gen)
            self._device.start(gen)
        except Exception as exc:
            self._device = None
            raise SourceUnavailable(f"Error starting miniaudio capture: {exc}") from exc

    def _stop_impl(self) -> None:
        if self._device is not None:
            try:
                self._device.stop()
                self._device.close()
            except Exception as exc:
                logger.warning("Error closing capture device: %s", exc)
        self._device = None
        with self._buf_lock:
            if self._accumulator is not None:
                self._accumulator.clear()


__all__ = ["SoundCardSource", "FrameAccumulator", "DEFAULT_SAMPLE_RATE", "DEFAULT_BLOCK_SIZE"]
