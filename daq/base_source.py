from __future__ import annotations

"""
Base class for streaming sample sources.

Goals:
- Simple, stable contract for consumers (Chunks over a queue).
- Clean lifecycle: open → configure → start/stop → close.
- Consistent timestamps and sequencing across all drivers.
- Centralized queue/backpressure/drop-oldest behavior.

Subclasses implement the *_impl() methods to integrate real hardware
(or simulators) while relying on the shared utilities here.
"""

import logging
import queue
import threading
import time as _time
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Literal, Optional, Sequence

import numpy as np

from shared.errors import InvalidConfig
from shared.models import ActualConfig, ChannelInfo, Chunk, DeviceInfo, EndOfStream

logger = logging.getLogger(__name__)

State = Literal["closed", "open", "running"]


class BaseSource(ABC):
    """
    Abstract base for all live sample sources.

    Typical flow:
        devs = Driver.list_available_devices()
        source = Driver()
        source.open(devs[0].id)
        source.configure(sample_rate=44_100, chunk_size=4096)
        source.start()
        # Consume source.data_queue (Chunk objects) on the pipeline thread
        source.stop()
        source.close()
    """

    @classmethod
    @abstractmethod
    def device_class_name(cls) -> str:
        """Return the human-friendly category name for this driver type."""
        raise NotImplementedError

    def __init__(self, queue_maxsize: int = 64) -> None:
        self.data_queue: "queue.Queue[Chunk | object]" = queue.Queue(maxsize=queue_maxsize)
        self._stop_event = threading.Event()
        self._state_lock = threading.RLock()

        self._state: State = "closed"
        self._device_id: Optional[str] = None
        self._available_channels: List[ChannelInfo] = []
        self._active_channel_ids: List[str] = []
        self.config: Optional[ActualConfig] = None

        # Run-level counters (reset at each start)
        self._next_seq: int = 0
        self._drops: int = 0

    # ------------------------
    # Device enumeration APIs
    # ------------------------

    @classmethod
    @abstractmethod
    def list_available_devices(cls) -> List[DeviceInfo]:
        """Return all devices visible to the driver."""
        raise NotImplementedError

    @abstractmethod
    def list_available_channels(self, device_id: str) -> List[ChannelInfo]:
        """Return all input channels for the device, in hardware order."""
        raise NotImplementedError

    # ----------
    # Lifecycle
    # ----------

    def open(self, device_id: str) -> None:
        with self._state_lock:
            self._assert_state(expected=("closed",))
            self._open_impl(device_id)
            self._device_id = device_id
            self._available_channels = self.list_available_channels(device_id)
            self._active_channel_ids = [ch.id for ch in self._available_channels]
            self._state = "open"
            logger.info("%s opened device %s", type(self).__name__, device_id)

    @abstractmethod
    def _open_impl(self, device_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        with self._state_lock:
            if self._state == "running":
                self._stop_impl_safe()
            if self._state != "closed":
                self._close_impl()
            self._device_id = None
            self._available_channels = []
            self._active_channel_ids = []
            self.config = None
            self._state = "closed"

    @abstractmethod
    def _close_impl(self) -> None:
        raise NotImplementedError

    def configure(
        self,
        sample_rate: int,
        channels: Optional[Sequence[str]] = None,
        chunk_size: int = 4096,
        **options: Any,
    ) -> ActualConfig:
        """
        Apply input configuration. May be called multiple times while open.
        Returns the actual configuration achieved by the driver.
        """
        with self._state_lock:
            self._assert_state(expected=("open",))
            if sample_rate <= 0:
                raise InvalidConfig(f"sample_rate must be positive, got {sample_rate}")
            if not isinstance(chunk_size, int) or chunk_size <= 0:
                raise InvalidConfig("chunk_size must be a positive integer")
            if channels is None or len(channels) == 0:
                channels = [ch.id for ch in self._available_channels]
            self.set_active_channels(channels)

            actual = self._configure_impl(
                sample_rate=sample_rate,
                channels=list(self._active_channel_ids),
                chunk_size=chunk_size,
                **options,
            )
            self.config = actual
            return actual

    @abstractmethod
    def _configure_impl(
        self,
        sample_rate: int,
        channels: Sequence[str],
        chunk_size: int,
        **options: Any,
    ) -> ActualConfig:
        """Driver-specific configuration. Should not start streaming."""
        raise NotImplementedError

    def start(self) -> None:
        with self._state_lock:
            self._assert_state(expected=("open",))
            if self.config is None:
                raise RuntimeError("configure() must be called before start().")
            self._reset_counters()
            self._stop_event.clear()
            self._start_impl()
            self._state = "running"
            logger.info(
                "%s started: %d Hz, %d channel(s), %d-frame blocks",
                type(self).__name__,
                self.config.sample_rate,
                len(self.config.channels),
                self.config.chunk_size,
            )

    @abstractmethod
    def _start_impl(self) -> None:
        """Driver-specific start. Emit data by calling self.emit_array(...)."""
        raise NotImplementedError

    def stop(self) -> None:
        """Stop streaming; the device remains open and can be restarted."""
        with self._state_lock:
            if self._state == "running":
                self._stop_impl_safe()
                self._state = "open"
                logger.info("%s stopped (%d chunk(s), %d dropped)", type(self).__name__, self._next_seq, self._drops)

    def _stop_impl_safe(self) -> None:
        self._stop_event.set()
        try:
            self._stop_impl()
        finally:
            self._safe_put(EndOfStream)

    @abstractmethod
    def _stop_impl(self) -> None:
        raise NotImplementedError

    # -----------------
    # Channel selection
    # -----------------

    def set_active_channels(self, channel_ids: Sequence[str]) -> None:
        with self._state_lock:
            available_ids = {c.id for c in self._available_channels}
            missing = [cid for cid in channel_ids if cid not in available_ids]
            if missing:
                raise InvalidConfig(f"Unknown channel ids: {missing}")
            uniq: List[str] = []
            for cid in channel_ids:
                if cid not in uniq:
                    uniq.append(cid)
            self._active_channel_ids = uniq

    def get_active_channels(self) -> List[ChannelInfo]:
        with self._state_lock:
            id_to_info = {ch.id: ch for ch in self._available_channels}
            return [id_to_info[cid] for cid in self._active_channel_ids if cid in id_to_info]

    # --------------
    # Emit utilities
    # --------------

    def emit_array(
        self,
        data: np.ndarray,
        *,
        wall_time: Optional[float] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Chunk:
        """
        Build and enqueue a Chunk from a (frames, channels) array.

        `wall_time` stamps the first frame; it defaults to ``time.time()`` so
        spike timestamps from live detection are wall-clock seconds.
        """
        if self.config is None:
            raise RuntimeError("emit_array() called before configure().")

        data = np.asarray(data, dtype=np.float32)
        if data.ndim != 2:
            raise ValueError("data must be 2D array shaped (frames, channels).")
        frames, chans = data.shape
        channel_ids = tuple(self._active_channel_ids)
        if chans != len(channel_ids):
            raise ValueError(f"data has {chans} channels, expected {len(channel_ids)}.")
        if frames == 0:
            raise ValueError("data must contain at least one frame")

        stamp = _time.time() if wall_time is None else wall_time
        with self._state_lock:
            seq = self._next_seq
            self._next_seq += 1

        chunk = Chunk(
            samples=data.T,
            start_time=stamp,
            dt=1.0 / float(self.config.sample_rate),
            seq=seq,
            channel_ids=channel_ids,
            meta=meta,
        )
        self._safe_put(chunk)
        return chunk

    # --------------
    # Introspection
    # --------------

    @property
    def state(self) -> State:
        with self._state_lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state == "running"

    @property
    def stop_event(self) -> threading.Event:
        """Subclasses may check this in their producer loops for cooperative stop."""
        return self._stop_event

    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "queue_size": self.data_queue.qsize(),
            "queue_maxsize": self.data_queue.maxsize,
            "drops": self._drops,
            "next_seq": self._next_seq,
            "sample_rate": None if self.config is None else self.config.sample_rate,
            "active_channels": [ch.id for ch in self.get_active_channels()],
        }

    # -------------
    # Base helpers
    # -------------

    def _reset_counters(self) -> None:
        with self._state_lock:
            self._next_seq = 0
            self._drops = 0
            try:
                while True:
                    self.data_queue.get_nowait()
            except queue.Empty:
                pass

    def _safe_put(self, item: object) -> None:
        """
        Central backpressure policy: drop-oldest, then try once more.
        """
        try:
            self.data_queue.put_nowait(item)
        except queue.Full:
            try:
                _ = self.data_queue.get_nowait()
                self._drops += 1
                logger.warning("%s queue full; dropped oldest chunk", type(self).__name__)
            except queue.Empty:
                pass
            try:
                self.data_queue.put_nowait(item)
            except queue.Full:
                pass

    def _assert_state(self, expected: Iterable[State]) -> None:
        expected = tuple(expected)
        if self._state not in expected:
            raise RuntimeError(f"Invalid state: {self._state}; expected one of {expected}.")


__all__ = ["BaseSource", "State"]
