"""Command line entry point: record from a live source or analyse a WAV file."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from analysis.offline import load_and_analyze, spikes_filename
from core.runtime import SpikeScopeRuntime
from daq.base_source import BaseSource
from daq.serial_source import SerialSource, serial_sample_rate
from daq.simulated_source import SimulatedSpikeSource
from daq.soundcard_source import SoundCardSource
from shared.app_settings import AppSettingsStore
from shared.errors import SpikeScopeError

logger = logging.getLogger("spikescope")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spikescope", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="detect spikes in a recorded WAV file")
    analyze.add_argument("file", type=Path)
    analyze.add_argument("--threshold", type=float, default=0.1)
    analyze.add_argument("--min", dest="min_voltage", type=float, default=-0.5)
    analyze.add_argument("--max", dest="max_voltage", type=float, default=0.5)
    analyze.add_argument("--save", action="store_true", help="write <name>-spikes.txt next to the file")

    record = sub.add_parser("record", help="record a live source to a timestamped WAV file")
    record.add_argument("--seconds", type=float, default=5.0)
    record.add_argument("--source", choices=("simulated", "soundcard", "serial"), default="simulated")
    record.add_argument("--port", help="serial port (serial source only)")
    record.add_argument("--channels", type=int, default=1)
    record.add_argument("--out", type=Path, default=Path.cwd())
    record.add_argument("--threshold", type=float, help="enable live detection at this level")
    return parser


def _run_analyze(args: argparse.Namespace) -> int:
    analysis = load_and_analyze(
        args.file,
        args.threshold,
        min_voltage=args.min_voltage,
        max_voltage=args.max_voltage,
    )
    print(f"{args.file.name}: {len(analysis.spikes)} spike(s), {len(analysis.filtered_spikes)} in window")
    for channel_id, spikes in sorted(analysis.by_channel().items()):
        print(f"  {channel_id}: {len(spikes)}")
    if args.save:
        analysis.save(args.file.with_name(spikes_filename(args.file.name)))
    return 0


def _make_source(args: argparse.Namespace, store: AppSettingsStore) -> tuple[BaseSource, Optional[str]]:
    if args.source == "serial":
        if not args.port:
            raise SystemExit("--port is required for the serial source")
        store.update(
            serial_channel_count=args.channels,
            channel_count=args.channels,
            sample_rate=serial_sample_rate(args.channels),
        )
        return SerialSource(channel_count=args.channels, baud_rate=store.get().serial_baud_rate), args.port
    if args.source == "soundcard":
        store.update(channel_count=args.channels)
        return SoundCardSource(channel_count=args.channels), "default"
    store.update(channel_count=args.channels)
    return SimulatedSpikeSource(channel_count=args.channels), "sim0"


def _run_record(args: argparse.Namespace) -> int:
    store = AppSettingsStore()
    store.update(recordings_dir=str(args.out))
    source, device_id = _make_source(args, store)
    runtime = SpikeScopeRuntime(app_settings_store=store)
    runtime.attach_source(source, device_id)
    if args.threshold is not None:
        runtime.set_threshold(args.threshold)
        runtime.set_threshold_mode(True)

    runtime.start()
    runtime.start_recording()
    try:
        time.sleep(max(0.0, args.seconds))
    except KeyboardInterrupt:
        logger.info("Interrupted; saving recording")
    result = runtime.stop_recording()
    spikes = runtime.pipeline.spikes() if runtime.pipeline is not None else []
    runtime.detach_source()

    print(f"Saved {result.wav_path} ({result.duration:.2f} s)")
    if args.threshold is not None:
        print(f"Detected {len(spikes)} spike(s) above {args.threshold}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.command == "analyze":
            return _run_analyze(args)
        return _run_record(args)
    except (SpikeScopeError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
