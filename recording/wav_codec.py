"""16-bit PCM WAV encoding and decoding.

The encoder accumulates per-channel blocks in memory while recording and
produces the complete file image on export. The decoder parses the fixed
44-byte header written by the encoder (and by most other PCM writers).
"""
from __future__ import annotations

import logging
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np

from shared.errors import InvalidConfig, MalformedContainer

logger = logging.getLogger(__name__)

HEADER_SIZE = 44
PCM_FORMAT = 1
BITS_PER_SAMPLE = 16
BYTES_PER_SAMPLE = BITS_PER_SAMPLE // 8

# RIFF header, "fmt " chunk and "data" chunk header, all little-endian.
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavDocument:
    """Decoded WAV contents: one read-only float32 array per channel."""

    sample_rate: int
    number_of_channels: int
    data: Tuple[np.ndarray, ...]

    @property
    def n_frames(self) -> int:
        return int(self.data[0].shape[0]) if self.data else 0

    @property
    def duration(self) -> float:
        return self.n_frames / self.sample_rate


def build_header(sample_rate: int, number_of_channels: int, data_size: int) -> bytes:
    return _HEADER.pack(
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        PCM_FORMAT,
        number_of_channels,
        sample_rate,
        sample_rate * BYTES_PER_SAMPLE * number_of_channels,
        number_of_channels * BYTES_PER_SAMPLE,
        BITS_PER_SAMPLE,
        b"data",
        data_size,
    )


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale negatives by 32768, everything else by 32767.

    Scaled values are truncated toward zero.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2")


def pcm16_to_float(samples: np.ndarray) -> np.ndarray:
    """Convert int16 samples to float with a single 32768 divisor."""
    return (np.asarray(samples, dtype=np.float64) / 32768.0).astype(np.float32)


def interleave(channels: Sequence[np.ndarray]) -> np.ndarray:
    """Frame-interleave equal-length channels: ``out[i*C + c] = channels[c][i]``."""
    if len(channels) == 1:
        return np.asarray(channels[0], dtype=np.float32)
    lengths = {int(np.asarray(ch).shape[0]) for ch in channels}
    if len(lengths) != 1:
        raise InvalidConfig(f"channels have different lengths: {sorted(lengths)}")
    stacked = np.vstack([np.asarray(ch, dtype=np.float32) for ch in channels])
    return np.ascontiguousarray(stacked.T).reshape(-1)


def encode_wav(channels: Sequence[Sequence[float] | np.ndarray], sample_rate: int) -> bytes:
    """Encode per-channel float samples into a complete WAV byte image."""
    if not channels:
        raise InvalidConfig("at least one channel is required")
    if sample_rate <= 0:
        raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")
    arrays = [np.asarray(ch, dtype=np.float32).reshape(-1) for ch in channels]
    pcm = float_to_pcm16(interleave(arrays))
    payload = pcm.tobytes()
    return build_header(int(sample_rate), len(arrays), len(payload)) + payload


def load_wav(raw: Union[bytes, bytearray, memoryview]) -> WavDocument:
    """Parse a 16-bit PCM WAV byte image into per-channel float arrays."""
    buf = bytes(raw)
    if len(buf) < HEADER_SIZE:
        raise MalformedContainer(f"buffer holds {len(buf)} bytes, header needs {HEADER_SIZE}")

    (
        riff,
        _chunk_size,
        wave_tag,
        fmt_tag,
        _fmt_size,
        audio_format,
        number_of_channels,
        sample_rate,
        _byte_rate,
        _block_align,
        bits_per_sample,
        data_tag,
        data_length,
    ) = _HEADER.unpack_from(buf, 0)

    if riff != b"RIFF" or wave_tag != b"WAVE":
        raise MalformedContainer("missing RIFF/WAVE signature")
    if fmt_tag != b"fmt " or data_tag != b"data":
        raise MalformedContainer("expected a 16-byte 'fmt ' chunk followed by 'data'")
    if audio_format != PCM_FORMAT:
        raise MalformedContainer(f"unsupported audio format {audio_format}; only PCM (1) is supported")
    if bits_per_sample != BITS_PER_SAMPLE:
        raise MalformedContainer(f"unsupported bit depth {bits_per_sample}; only 16-bit is supported")
    if number_of_channels == 0:
        raise MalformedContainer("header declares zero channels")
    if sample_rate == 0:
        raise MalformedContainer("header declares a zero sample rate")

    frame_size = number_of_channels * BYTES_PER_SAMPLE
    if data_length % frame_size:
        raise MalformedContainer(
            f"data length {data_length} is not a whole number of {frame_size}-byte frames"
        )
    if HEADER_SIZE + data_length > len(buf):
        raise MalformedContainer(
            f"header declares {data_length} data bytes but only {len(buf) - HEADER_SIZE} are present"
        )

    if data_length:
        pcm = np.frombuffer(buf, dtype="<i2", count=data_length // BYTES_PER_SAMPLE, offset=HEADER_SIZE)
    else:
        pcm = np.zeros(0, dtype="<i2")
    frames = pcm.reshape(-1, number_of_channels)
    channels: List[np.ndarray] = []
    for c in range(number_of_channels):
        channel = pcm16_to_float(frames[:, c])
        channel.setflags(write=False)
        channels.append(channel)

    return WavDocument(
        sample_rate=int(sample_rate),
        number_of_channels=int(number_of_channels),
        data=tuple(channels),
    )


class WavEncoder:
    """
    Collects recorded blocks and exports them as a 16-bit PCM WAV image.

    Blocks are copied on :meth:`record` and kept per delivery; merging and
    interleaving only happen on :meth:`export_wav`. All methods may be called
    from different threads.
    """

    def __init__(self, sample_rate: int, number_of_channels: int) -> None:
        if sample_rate <= 0:
            raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")
        if number_of_channels <= 0:
            raise InvalidConfig(f"number_of_channels must be positive, got {number_of_channels}")
        self._sample_rate = int(sample_rate)
        self._channels = int(number_of_channels)
        self._lock = threading.Lock()
        self._recorded: List[List[np.ndarray]] = []
        self._frames: int = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def number_of_channels(self) -> int:
        return self._channels

    @property
    def pending_frames(self) -> int:
        with self._lock:
            return self._frames

    @property
    def duration_seconds(self) -> float:
        return self.pending_frames / self._sample_rate

    def record(self, channel_blocks: Sequence[Sequence[float] | np.ndarray]) -> None:
        if len(channel_blocks) < self._channels:
            raise InvalidConfig(
                f"expected {self._channels} channel blocks, got {len(channel_blocks)}"
            )
        blocks = [
            np.array(block, dtype=np.float32, copy=True).reshape(-1)
            for block in channel_blocks[: self._channels]
        ]
        lengths = {int(block.shape[0]) for block in blocks}
        if len(lengths) != 1:
            raise InvalidConfig(f"channel blocks have different lengths: {[b.shape[0] for b in blocks]}")
        with self._lock:
            self._recorded.append(blocks)
            self._frames += lengths.pop()

    def clear(self) -> None:
        with self._lock:
            self._recorded = []
            self._frames = 0

    def _merge(self) -> List[np.ndarray]:
        merged: List[np.ndarray] = []
        for channel in range(self._channels):
            parts = [blocks[channel] for blocks in self._recorded]
            if parts:
                merged.append(np.concatenate(parts))
            else:
                merged.append(np.zeros(0, dtype=np.float32))
        return merged

    def export_wav(self) -> bytes:
        with self._lock:
            merged = self._merge()
            frames = self._frames
        payload = encode_wav(merged, self._sample_rate)
        logger.debug(
            "Exported WAV: %d frames, %d channel(s), %d bytes",
            frames,
            self._channels,
            len(payload),
        )
        return payload

    @staticmethod
    def load_wav(raw: Union[bytes, bytearray, memoryview]) -> WavDocument:
        return load_wav(raw)


def save_wav(path: Union[str, Path], payload: bytes) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    logger.info("Wrote %s (%d bytes)", target, len(payload))
    return target


def read_wav_file(path: Union[str, Path]) -> WavDocument:
    source = Path(path)
    document = load_wav(source.read_bytes())
    logger.info(
        "Loaded %s (%d channel(s), %d Hz, %d frames)",
        source.name,
        document.number_of_channels,
        document.sample_rate,
        document.n_frames,
    )
    return document


__all__ = [
    "WavDocument",
    "WavEncoder",
    "build_header",
    "encode_wav",
    "float_to_pcm16",
    "interleave",
    "load_wav",
    "pcm16_to_float",
    "read_wav_file",
    "save_wav",
]
