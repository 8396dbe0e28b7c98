# daq/simulated_source.py
from __future__ import annotations

import logging
import threading
import time
from typing import List, Optional, Sequence

import numpy as np

from shared.models import ActualConfig, ChannelInfo, DeviceInfo

from .base_source import BaseSource

logger = logging.getLogger(__name__)


def spike_template(sample_rate: int, width_s: float = 0.0015) -> np.ndarray:
    """Positive-going biphasic spike shape with a peak of 1.0."""
    length = max(8, int(width_s * sample_rate))
    t = np.linspace(-1.0, 1.0, length)
    template = (1.0 - t**2) * np.exp(-(t**2) / 0.5)
    template -= template[0]
    peak = np.max(np.abs(template))
    if peak > 1e-12:
        template /= peak
    return template.astype(np.float32)


class SimulatedSpikeSource(BaseSource):
    """
    Virtual bioamplifier: Gaussian noise with positive spikes fired by a
    Poisson process on every channel.

    Spikes can straddle block boundaries; the tail of a spike that does not
    fit is carried into the next block. Blocks are paced in real time unless
    ``realtime=False`` is passed to :meth:`configure`.
    """

    @classmethod
    def device_class_name(cls) -> str:
        return "Simulated"

    def __init__(
        self,
        queue_maxsize: int = 64,
        channel_count: int = 1,
        *,
        rate_hz: float = 20.0,
        spike_amplitude: float = 0.8,
        noise_level: float = 0.02,
        seed: Optional[int] = None,
    ) -> None:
        super().__init__(queue_maxsize=queue_maxsize)
        self._n_channels = int(channel_count)
        self.rate_hz = float(rate_hz)
        self.spike_amplitude = float(spike_amplitude)
        self.noise_level = float(noise_level)
        self._rng = np.random.default_rng(seed)
        self._template = np.zeros(1, dtype=np.float32)
        self._carry: Optional[np.ndarray] = None
        self._realtime = True
        self._worker: Optional[threading.Thread] = None

    # ---- Discovery ------------------------------------------------------------
    @classmethod
    def list_available_devices(cls) -> List[DeviceInfo]:
        return [DeviceInfo(id="sim0", name="Simulated spiking source (virtual)")]

    def list_available_channels(self, device_id: str) -> List[ChannelInfo]:
        return [ChannelInfo(id=f"sim_ch{i + 1}", name=f"Simulated {i + 1}") for i in range(self._n_channels)]

    # ---- BaseSource overrides -------------------------------------------------

    def _open_impl(self, device_id: str) -> None:
        pass

    def _close_impl(self) -> None:
        pass

    def _configure_impl(self, sample_rate: int, channels: Sequence[str], chunk_size: int, **options) -> ActualConfig:
        self._realtime = bool(options.get("realtime", True))
        self._template = spike_template(sample_rate)
        self._carry = None
        return ActualConfig(sample_rate=sample_rate, channels=self.get_active_channels(), chunk_size=chunk_size)

    def generate_block(self) -> np.ndarray:
        """Synthesize the next (frames, channels) block."""
        if self.config is None:
            raise RuntimeError("configure() must be called before generate_block().")
        frames = self.config.chunk_size
        n_ch = len(self.config.channels)
        templ = self._template * self.spike_amplitude
        span = frames + templ.shape[0]

        data = np.zeros((span, n_ch), dtype=np.float32)
        if self._carry is not None and self._carry.shape[1] == n_ch:
            data[: self._carry.shape[0]] += self._carry

        p_spike = self.rate_hz / float(self.config.sample_rate)
        for col in range(n_ch):
            onsets = np.flatnonzero(self._rng.random(frames) < p_spike)
            for off in onsets:
                data[off : off + templ.shape[0], col] += templ

        self._carry = data[frames:].copy()
        block = data[:frames]
        if self.noise_level > 0:
            block += self._rng.normal(0.0, self.noise_level, size=block.shape).astype(np.float32)
        return block

    def _start_impl(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._loop, name="SimulatedSource", daemon=True)
        self._worker.start()

    def _loop(self) -> None:
        assert self.config is not None
        block_duration = self.config.chunk_size / float(self.config.sample_rate)
        next_deadline = time.perf_counter() + block_duration
        while not self.stop_event.is_set():
            self.emit_array(self.generate_block())
            if not self._realtime:
                continue
            sleep_for = next_deadline - time.perf_counter()
            if sleep_for > 0:
                self.stop_event.wait(sleep_for)
            else:
                # Fell behind; resynchronise instead of bursting.
                next_deadline = time.perf_counter()
            next_deadline += block_duration

    def _stop_impl(self) -> None:
        if self._worker and self._worker.is_alive() and self._worker is not threading.current_thread():
            self._worker.join(timeout=1.0)
        self._worker = None


__all__ = ["SimulatedSpikeSource", "spike_template"]
