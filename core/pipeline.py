from __future__ import annotations

import logging
import queue
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.detection import SpikeDetector
from recording.wav_codec import WavEncoder
from shared.errors import InvalidConfig
from shared.event_buffer import SpikeRingBuffer
from shared.models import Chunk, EndOfStream, Spike
from shared.ring_buffer import WaveformBuffer

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    received: int = 0
    processed: int = 0
    recorded: int = 0
    spikes: int = 0
    skipped: Counter = field(default_factory=Counter)

    def snapshot(self) -> Dict[str, object]:
        return {
            "received": self.received,
            "processed": self.processed,
            "recorded": self.recorded,
            "spikes": self.spikes,
            "skipped": dict(self.skipped),
        }


class PipelineCoordinator:
    """
    Routes each delivery from a sample source through the per-channel buffers,
    the active recorder and the live spike detector.

    For every delivery the order is fixed: push every channel's block into its
    WaveformBuffer, hand the whole multi-channel block to the recorder once,
    then run detection per channel. Data is recorded exactly as received.

    Deliveries arrive either by direct calls to :meth:`process_chunk` or via
    :meth:`start`, which consumes Chunks from the source queue on a worker
    thread until EndOfStream or :meth:`stop`.
    """

    def __init__(
        self,
        sample_rate: int,
        channel_ids: Sequence[str],
        *,
        buffer_seconds: float = 60.0,
        detector: Optional[SpikeDetector] = None,
        spike_capacity: int = 1000,
        poll_timeout: float = 0.05,
    ) -> None:
        if sample_rate <= 0:
            raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")
        if not channel_ids:
            raise InvalidConfig("at least one channel is required")
        self._sample_rate = int(sample_rate)
        self._channel_ids: tuple[str, ...] = tuple(str(cid) for cid in channel_ids)
        if len(set(self._channel_ids)) != len(self._channel_ids):
            raise InvalidConfig(f"channel ids must be unique: {self._channel_ids}")
        self._buffers: Dict[str, WaveformBuffer] = {
            cid: WaveformBuffer(self._sample_rate, buffer_seconds) for cid in self._channel_ids
        }
        self.detector = detector if detector is not None else SpikeDetector()
        self.spike_buffer = SpikeRingBuffer(spike_capacity)

        self._encoder: Optional[WavEncoder] = None
        self._detection_enabled = False
        self._state_lock = threading.Lock()
        # held across encoder lookup and record so a detached encoder is never written
        self._record_lock = threading.Lock()
        self._stats = PipelineStats()
        self._stats_lock = threading.Lock()

        self._poll_timeout = poll_timeout
        self._source_queue: Optional["queue.Queue[Chunk | object]"] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Properties ----------------------------------------------------------------

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def channel_ids(self) -> tuple[str, ...]:
        return self._channel_ids

    @property
    def is_recording(self) -> bool:
        with self._state_lock:
            return self._encoder is not None

    @property
    def detection_enabled(self) -> bool:
        with self._state_lock:
            return self._detection_enabled

    def buffer(self, channel_id: str) -> WaveformBuffer:
        try:
            return self._buffers[channel_id]
        except KeyError:
            raise KeyError(f"Unknown channel id {channel_id!r}") from None

    # Mode control --------------------------------------------------------------

    def start_recording(self, encoder: Optional[WavEncoder] = None) -> WavEncoder:
        if encoder is None:
            encoder = WavEncoder(self._sample_rate, len(self._channel_ids))
        elif encoder.number_of_channels > len(self._channel_ids):
            raise InvalidConfig(
                f"encoder expects {encoder.number_of_channels} channels, pipeline has {len(self._channel_ids)}"
            )
        with self._state_lock:
            if self._encoder is not None:
                raise RuntimeError("Recording already in progress")
            self._encoder = encoder
        logger.info("Pipeline recording started (%d channel(s))", encoder.number_of_channels)
        return encoder

    def stop_recording(self) -> bytes:
        """Detach the recorder and return its WAV image; pending blocks are discarded."""
        with self._record_lock, self._state_lock:
            encoder = self._encoder
            self._encoder = None
        if encoder is None:
            raise RuntimeError("No recording in progress")
        payload = encoder.export_wav()
        encoder.clear()
        logger.info("Pipeline recording stopped (%d bytes)", len(payload))
        return payload

    def set_detection_enabled(self, enabled: bool) -> None:
        """Start or stop calling the detector; its state is kept either way."""
        with self._state_lock:
            self._detection_enabled = bool(enabled)

    # Processing ----------------------------------------------------------------

    def process_chunk(self, chunk: Chunk) -> List[Spike]:
        if int(round(chunk.sample_rate)) != self._sample_rate:
            logger.warning(
                "Chunk %d sample rate %.1f differs from pipeline rate %d",
                chunk.seq,
                chunk.sample_rate,
                self._sample_rate,
            )
        return self.process_blocks(dict(zip(chunk.channel_ids, chunk.blocks())), chunk.start_time)

    def process_blocks(self, blocks: Dict[str, np.ndarray], timestamp: float) -> List[Spike]:
        """Run one delivery: push, then record, then detect."""
        with self._stats_lock:
            self._stats.received += 1

        known: Dict[str, np.ndarray] = {}
        for cid, block in blocks.items():
            if cid not in self._buffers:
                logger.warning("Skipping block for unknown channel %r", cid)
                with self._stats_lock:
                    self._stats.skipped["unknown_channel"] += 1
                continue
            known[cid] = np.asarray(block, dtype=np.float32).reshape(-1)

        for cid, block in known.items():
            self._buffers[cid].push(block)

        with self._record_lock:
            with self._state_lock:
                encoder = self._encoder
                detect = self._detection_enabled
            if encoder is not None:
                self._record(encoder, known)

        spikes: List[Spike] = []
        if detect:
            for cid, block in known.items():
                spikes.extend(self.detector.detect(block, self._sample_rate, timestamp, cid))
            if spikes:
                self.spike_buffer.extend(spikes)

        with self._stats_lock:
            self._stats.processed += 1
            self._stats.spikes += len(spikes)
        return spikes

    def _record(self, encoder: WavEncoder, known: Dict[str, np.ndarray]) -> None:
        ordered = [known.get(cid) for cid in self._channel_ids[: encoder.number_of_channels]]
        if any(block is None for block in ordered):
            logger.warning("Delivery is missing recorded channels; not recorded")
            with self._stats_lock:
                self._stats.skipped["incomplete_recording"] += 1
            return
        encoder.record(ordered)
        with self._stats_lock:
            self._stats.recorded += 1

    # Renderer-facing reads -----------------------------------------------------

    def get_window(self, channel_id: str, duration: float) -> np.ndarray:
        return self.buffer(channel_id).get_latest(duration)

    def spikes(self) -> List[Spike]:
        return self.spike_buffer.peek_all()

    def drain_spikes(self) -> List[Spike]:
        return self.spike_buffer.drain()

    def average_spike(self) -> np.ndarray:
        return self.detector.get_average_spike()

    def clear_buffers(self) -> None:
        for buf in self._buffers.values():
            buf.clear()
        self.spike_buffer.clear()

    def stats(self) -> Dict[str, object]:
        with self._stats_lock:
            return self._stats.snapshot()

    # Worker thread -------------------------------------------------------------

    def start(self, source_queue: "queue.Queue[Chunk | object]") -> None:
        if self._thread and self._thread.is_alive():
            return
        self._source_queue = source_queue
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="PipelineThread", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        source_queue = self._source_queue
        if source_queue is None:
            return
        while not self._stop_event.is_set():
            try:
                item = source_queue.get(timeout=self._poll_timeout)
            except queue.Empty:
                continue

            if item is EndOfStream:
                logger.debug("Pipeline received EndOfStream")
                break
            if not isinstance(item, Chunk):
                logger.warning("Pipeline received non-Chunk: %s", type(item))
                continue
            try:
                self.process_chunk(item)
            except Exception as exc:
                logger.warning("Pipeline skipped bad chunk %d: %s", item.seq, exc)
                with self._stats_lock:
                    self._stats.skipped["error"] += 1


__all__ = ["PipelineCoordinator", "PipelineStats"]
