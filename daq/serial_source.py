from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional, Sequence

import numpy as np

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    serial = None

from shared.errors import InvalidConfig, SourceUnavailable
from shared.models import ActualConfig, ChannelInfo, DeviceInfo

from .base_source import BaseSource

_LOGGER = logging.getLogger(__name__)

DEFAULT_BAUD_RATE = 230400
SERIAL_BLOCK_SIZE = 256
# Arduino-style bridges stream 10 kHz in total, shared between channels.
BASE_SAMPLE_RATE = 10000
# 10-bit ADC readings are centred on 512.
ADC_HALF_SCALE = 512.0


def serial_sample_rate(channels: int) -> int:
    return BASE_SAMPLE_RATE // max(1, int(channels))


class CsvSampleParser:
    """
    Incremental parser for the text protocol spoken by serial bioamplifier
    bridges: one line per frame, comma-separated ADC readings, one per channel.

    Text may arrive split at arbitrary points; an incomplete trailing line is
    kept until the next feed. Lines with the wrong number of values, or with
    values that do not parse as numbers, are skipped. Each reading is mapped
    to ``value / 512 - 1`` and a (frames, channels) block is produced every
    `block_size` frames.
    """

    def __init__(self, channels: int, block_size: int = SERIAL_BLOCK_SIZE) -> None:
        if channels <= 0:
            raise InvalidConfig("channels must be positive")
        if block_size <= 0:
            raise InvalidConfig("block_size must be positive")
        self.channels = int(channels)
        self.block_size = int(block_size)
        self._partial = ""
        self._frames = np.zeros((self.block_size, self.channels), dtype=np.float32)
        self._index = 0
        self.rejected_lines = 0

    @property
    def pending_frames(self) -> int:
        return self._index

    def _parse_line(self, line: str) -> Optional[List[float]]:
        parts = line.split(",")
        if len(parts) != self.channels:
            return None
        try:
            values = [float(p.strip()) for p in parts]
        except ValueError:
            return None
        if any(v != v for v in values):
            return None
        return values

    def feed(self, text: str) -> List[np.ndarray]:
        """Consume decoded text and return any completed blocks."""
        blocks: List[np.ndarray] = []
        data = self._partial + text
        lines = data.split("\n")
        self._partial = lines.pop()
        for line in lines:
            if not line.strip():
                continue
            values = self._parse_line(line)
            if values is None:
                self.rejected_lines += 1
                continue
            self._frames[self._index] = [v / ADC_HALF_SCALE - 1.0 for v in values]
            self._index += 1
            if self._index >= self.block_size:
                blocks.append(self._frames.copy())
                self._index = 0
        return blocks

    def reset(self) -> None:
        self._partial = ""
        self._index = 0
        self.rejected_lines = 0


class SerialSource(BaseSource):
    """
    Driver for serial bioamplifier bridges (Arduino SpikerShield style) that
    stream comma-separated readings over USB CDC.

    The sample rate is fixed by the firmware at ``floor(10000 / channels)``;
    blocks of 256 frames are emitted as they complete.
    """

    @classmethod
    def device_class_name(cls) -> str:
        return "Serial"

    def __init__(self, queue_maxsize: int = 64, channel_count: int = 1, baud_rate: int = DEFAULT_BAUD_RATE) -> None:
        super().__init__(queue_maxsize=queue_maxsize)
        if channel_count <= 0:
            raise InvalidConfig("channel_count must be positive")
        self._channel_count = int(channel_count)
        self._baud_rate = int(baud_rate)
        self._ser = None
        self._parser = CsvSampleParser(self._channel_count)
        self._producer_thread: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()

    @classmethod
    def list_available_devices(cls) -> List[DeviceInfo]:
        if serial is None:
            raise SourceUnavailable("pyserial is not installed; serial devices cannot be enumerated.")
        devices: List[DeviceInfo] = []
        try:
            for p in serial.tools.list_ports.comports():
                devices.append(
                    DeviceInfo(
                        id=p.device,
                        name=f"{p.description or 'Serial device'} ({p.device})",
                        details={"vid": p.vid, "pid": p.pid, "hwid": p.hwid},
                    )
                )
        except Exception as e:
            _LOGGER.error("Failed to scan serial ports: %s", e)
        return devices

    def list_available_channels(self, device_id: str) -> List[ChannelInfo]:
        return [
            ChannelInfo(id=f"serial_ch{i + 1}", name=f"Serial channel {i + 1}")
            for i in range(self._channel_count)
        ]

    def _open_impl(self, device_id: str) -> None:
        if serial is None:
            raise SourceUnavailable("pyserial module is not installed.")
        try:
            self._ser = serial.Serial(port=device_id, baudrate=self._baud_rate, timeout=0.5, write_timeout=0.5)
            self._ser.reset_input_buffer()
        except Exception as e:
            raise SourceUnavailable(f"Failed to open serial port {device_id}: {e}") from e

    def _close_impl(self) -> None:
        if self._ser is not None:
            try:
                self._ser.close()
            except Exception as exc:
                _LOGGER.debug("Failed to close serial port: %s", exc)
            self._ser = None

    def _configure_impl(self, sample_rate: int, channels: Sequence[str], chunk_size: int, **options) -> ActualConfig:
        native_rate = serial_sample_rate(self._channel_count)
        if sample_rate != native_rate:
            _LOGGER.info("Requested %d Hz; serial bridge streams at %d Hz", sample_rate, native_rate)
        self._parser = CsvSampleParser(self._channel_count, SERIAL_BLOCK_SIZE)
        return ActualConfig(
            sample_rate=native_rate,
            channels=self.get_active_channels(),
            chunk_size=SERIAL_BLOCK_SIZE,
        )

    def _start_impl(self) -> None:
        if self._ser is None:
            raise SourceUnavailable("Serial port not open")
        self._parser.reset()
        self._producer_thread = threading.Thread(target=self._run_loop, name="SerialReader", daemon=True)
        self._producer_thread.start()

    def _stop_impl(self) -> None:
        if self._producer_thread and self._producer_thread.is_alive():
            self._producer_thread.join(timeout=1.0)
        self._producer_thread = None

    def send_command(self, command: str) -> None:
        if self._ser is None:
            return
        with self._write_lock:
            self._ser.write((command + "\n").encode("ascii"))

    def feed_text(self, text: str) -> int:
        """Parse text from the port and emit completed blocks. Returns the number emitted."""
        blocks = self._parser.feed(text)
        columns = self._column_indices()
        for block in blocks:
            self.emit_array(block[:, columns])
        return len(blocks)

    def _column_indices(self) -> List[int]:
        all_ids = [ch.id for ch in self._available_channels]
        return [all_ids.index(ch.id) for ch in self.get_active_channels()]

    def _run_loop(self) -> None:
        ser = self._ser
        if ser is None or self.config is None:
            return
        while not self.stop_event.is_set():
            try:
                waiting = ser.in_waiting
                if not waiting:
                    time.sleep(0.001)
                    continue
                raw = ser.read(waiting)
            except Exception as e:
                _LOGGER.error("Serial read error: %s", e)
                break
            self.feed_text(raw.decode("ascii", errors="ignore"))


__all__ = [
    "CsvSampleParser",
    "SerialSource",
    "DEFAULT_BAUD_RATE",
    "SERIAL_BLOCK_SIZE",
    "serial_sample_rate",
]
