from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from analysis.offline import SpikeAnalysis, analyze_document, file_channel_ids
from daq.base_source import BaseSource
from recording.session import RecordingResult, RecordingSession
from recording.wav_codec import WavDocument, read_wav_file
from shared.app_settings import AppSettings, AppSettingsStore
from shared.models import EventMarker
from shared.ring_buffer import WaveformBuffer

from .detection import SpikeDetector
from .pipeline import PipelineCoordinator


class SpikeScopeRuntime:
    """
    Headless orchestrator for acquisition, recording, live detection and
    offline analysis.

    The runtime owns one settings store, at most one attached source with its
    PipelineCoordinator, a RecordingSession, and the last file loaded for
    browsing. Threshold and average-count changes in the settings store are
    pushed to the live detector as they happen.
    """

    def __init__(
        self,
        *,
        app_settings_store: Optional[AppSettingsStore] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.app_settings_store = app_settings_store if app_settings_store is not None else AppSettingsStore()
        self.logger = logger or logging.getLogger(__name__)
        self.source: Optional[BaseSource] = None
        self.pipeline: Optional[PipelineCoordinator] = None
        self.session = RecordingSession()
        self.loaded_document: Optional[WavDocument] = None
        self.file_buffers: Dict[str, WaveformBuffer] = {}
        self._acquisition_start_time: Optional[float] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def settings(self) -> AppSettings:
        return self.app_settings_store.get()

    @property
    def is_recording(self) -> bool:
        return self.session.is_recording

    @property
    def threshold_mode(self) -> bool:
        return self.pipeline is not None and self.pipeline.detection_enabled

    # Source wiring -------------------------------------------------------------

    def attach_source(self, source: BaseSource, device_id: Optional[str] = None) -> PipelineCoordinator:
        """Open and configure `source` from the current settings and build a pipeline for it."""
        if self.source is not None:
            self.detach_source()
        settings = self.settings
        if source.state == "closed":
            if device_id is None:
                device_id = source.list_available_devices()[0].id
            source.open(device_id)
        actual = source.configure(sample_rate=settings.sample_rate, chunk_size=settings.block_size)

        detector = SpikeDetector(threshold=settings.threshold_level, average_count=settings.average_count)
        self.pipeline = PipelineCoordinator(
            actual.sample_rate,
            actual.channel_ids,
            buffer_seconds=settings.buffer_seconds,
            detector=detector,
        )
        self.source = source
        self._unsubscribe = self.app_settings_store.subscribe(self._apply_settings, replay=False)
        self.logger.info(
            "Attached %s: %d Hz, channels %s",
            type(source).__name__,
            actual.sample_rate,
            ", ".join(actual.channel_ids),
        )
        return self.pipeline

    def detach_source(self) -> None:
        self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.source is not None:
            self.source.close()
        self.source = None
        self.pipeline = None

    def _apply_settings(self, settings: AppSettings) -> None:
        pipeline = self.pipeline
        if pipeline is None:
            return
        pipeline.detector.set_threshold(settings.threshold_level)
        if pipeline.detector.average_count != settings.average_count:
            pipeline.detector.set_average_count(settings.average_count)

    # Acquisition ---------------------------------------------------------------

    def start(self) -> None:
        """Start streaming from the attached source into the pipeline."""
        if self.source is None or self.pipeline is None:
            raise RuntimeError("No source attached")
        if self.source.running:
            return
        # the source drains stale chunks and EndOfStream from its queue on start
        self.source.start()
        self.pipeline.start(self.source.data_queue)
        self._acquisition_start_time = time.monotonic()

    def stop(self) -> None:
        """Stop streaming. The source stays open; an active recording is saved first."""
        if self.session.is_recording:
            self.stop_recording()
        if self.source is not None and self.source.running:
            self.source.stop()
        if self.pipeline is not None:
            self.pipeline.stop()
        self._acquisition_start_time = None

    # Recording -----------------------------------------------------------------

    def start_recording(self) -> None:
        if self.pipeline is None:
            raise RuntimeError("No source attached")
        self.pipeline.start_recording()
        self.session.start()

    def stop_recording(self, directory: Union[str, Path, None] = None) -> RecordingResult:
        if self.pipeline is None:
            raise RuntimeError("No source attached")
        payload = self.pipeline.stop_recording()
        if directory is None:
            directory = self.settings.recordings_dir or Path.cwd()
        return self.session.stop(payload, directory)

    def toggle_recording(self, directory: Union[str, Path, None] = None) -> Optional[RecordingResult]:
        """Start recording when idle; otherwise stop and return what was saved."""
        if self.session.is_recording:
            return self.stop_recording(directory)
        self.start_recording()
        return None

    def mark_event(self, key: str) -> Optional[EventMarker]:
        return self.session.mark_event(key)

    # Threshold mode ------------------------------------------------------------

    def set_threshold_mode(self, enabled: bool) -> None:
        """Enter or leave live spike detection, applying threshold settings on entry."""
        if self.pipeline is None:
            raise RuntimeError("No source attached")
        if enabled:
            self._apply_settings(self.settings)
        self.pipeline.set_detection_enabled(enabled)
        self.logger.info("Threshold mode %s", "on" if enabled else "off")

    def set_threshold(self, level: float) -> None:
        self.app_settings_store.update(threshold_level=float(level))

    # File browsing -------------------------------------------------------------

    def load_file(self, path: Union[str, Path]) -> WavDocument:
        """Load a recording for browsing; live acquisition is stopped first."""
        self.stop()
        document = read_wav_file(path)
        seconds = max(self.settings.buffer_seconds, (document.n_frames + 0.5) / document.sample_rate)
        buffers: Dict[str, WaveformBuffer] = {}
        for channel_id, samples in zip(file_channel_ids(document.number_of_channels), document.data):
            buffer = WaveformBuffer(document.sample_rate, seconds)
            buffer.push(samples)
            buffers[channel_id] = buffer
        self.loaded_document = document
        self.file_buffers = buffers
        return document

    def analyze_loaded(self, threshold: Optional[float] = None) -> SpikeAnalysis:
        if self.loaded_document is None:
            raise RuntimeError("No file loaded")
        settings = self.settings
        return analyze_document(
            self.loaded_document,
            settings.analysis_threshold if threshold is None else threshold,
            min_voltage=settings.analysis_min_voltage,
            max_voltage=settings.analysis_max_voltage,
        )

    # Health --------------------------------------------------------------------

    def health_snapshot(self) -> dict[str, object]:
        uptime: Optional[float] = None
        if self._acquisition_start_time is not None:
            uptime = time.monotonic() - self._acquisition_start_time
        return {
            "uptime": uptime,
            "recording": self.session.is_recording,
            "recording_duration": self.session.duration(),
            "threshold_mode": self.threshold_mode,
            "source": self.source.stats() if self.source is not None else {},
            "pipeline": self.pipeline.stats() if self.pipeline is not None else {},
        }


__all__ = ["SpikeScopeRuntime"]
