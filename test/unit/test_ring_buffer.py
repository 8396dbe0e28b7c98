"""
Unit tests for WaveformBuffer correctness.

These tests verify the core invariants of the per-channel history:
1. Reads return the most recent samples, oldest first, across wraparound
2. Never-written positions read as zero
3. Blocks longer than the capacity behave like sample-by-sample writes
4. Concurrent pushes and reads never tear

Sample rate 4 Hz is used throughout so that durations like 0.75 s map to
exact sample counts.
"""
from __future__ import annotations

import threading

import numpy as np
import pytest

from shared.errors import InvalidConfig
from shared.ring_buffer import WaveformBuffer
from test.fixtures.reference_models import ReferenceRingBuffer


class TestConstruction:
    def test_capacity_is_floor_of_rate_times_duration(self):
        assert WaveformBuffer(1000, 0.5).capacity == 500
        assert WaveformBuffer(10, 0.25).capacity == 2

    @pytest.mark.parametrize(
        "sample_rate, duration",
        [(0, 1.0), (-10, 1.0), (100, 0.0), (100, -1.0), (10, 0.05)],
    )
    def test_invalid_construction_raises(self, sample_rate, duration):
        with pytest.raises(InvalidConfig):
            WaveformBuffer(sample_rate, duration)

    def test_new_buffer_reads_zeros(self):
        buf = WaveformBuffer(4, 1.25)
        np.testing.assert_array_equal(buf.get_range(1.25), np.zeros(5, dtype=np.float32))
        assert buf.write_index == 0


class TestPushAndRead:
    def test_partial_fill_is_zero_padded_at_the_front(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0, 2.0, 3.0])
        np.testing.assert_array_equal(buf.get_range(1.25), [0.0, 0.0, 1.0, 2.0, 3.0])
        np.testing.assert_array_equal(buf.get_range(0.5), [2.0, 3.0])
        assert buf.write_index == 3

    def test_wraparound_keeps_most_recent(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0, 2.0, 3.0, 4.0])
        buf.push([5.0, 6.0, 7.0])
        np.testing.assert_array_equal(buf.get_range(1.25), [3.0, 4.0, 5.0, 6.0, 7.0])
        assert buf.write_index == 2
        assert buf.total_written == 7

    def test_block_longer_than_capacity(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([100.0])
        block = np.arange(12, dtype=np.float32)
        buf.push(block)

        ref = ReferenceRingBuffer(5)
        ref.push([100.0])
        ref.push(block)

        np.testing.assert_array_equal(buf.get_range(1.25), [7.0, 8.0, 9.0, 10.0, 11.0])
        assert buf.write_index == ref.write_index == (1 + 12) % 5

    def test_block_equal_to_capacity_leaves_index_unchanged(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0, 2.0])
        buf.push([10.0, 11.0, 12.0, 13.0, 14.0])
        assert buf.write_index == 2
        np.testing.assert_array_equal(buf.get_range(1.25), [10.0, 11.0, 12.0, 13.0, 14.0])

    def test_empty_push_is_noop(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0])
        buf.push([])
        assert buf.write_index == 1
        assert buf.total_written == 1

    def test_request_longer_than_capacity_is_zero_padded(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push(np.arange(1, 8, dtype=np.float32))
        out = buf.get_range(2.0)
        np.testing.assert_array_equal(out, [0.0, 0.0, 0.0, 3.0, 4.0, 5.0, 6.0, 7.0])

    def test_zero_duration_returns_empty(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0, 2.0])
        assert buf.get_range(0.0).shape == (0,)

    def test_negative_duration_raises(self):
        buf = WaveformBuffer(4, 1.25)
        with pytest.raises(InvalidConfig):
            buf.get_range(-0.25)

    def test_reads_are_float32_copies(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push(np.array([1.5, 2.5], dtype=np.float64))
        out = buf.get_latest(0.5)
        assert out.dtype == np.float32
        out[:] = 99.0
        np.testing.assert_array_equal(buf.get_latest(0.5), [1.5, 2.5])

    def test_clear_resets_state(self):
        buf = WaveformBuffer(4, 1.25)
        buf.push([1.0, 2.0, 3.0])
        buf.clear()
        assert buf.write_index == 0
        assert buf.total_written == 0
        np.testing.assert_array_equal(buf.get_range(1.25), np.zeros(5))


class TestRms:
    def test_known_values(self):
        assert WaveformBuffer.rms([3.0, 4.0]) == pytest.approx(np.sqrt(12.5))
        assert WaveformBuffer.rms(np.ones(10, dtype=np.float32)) == pytest.approx(1.0)

    def test_empty_is_zero(self):
        assert WaveformBuffer.rms([]) == 0.0


class TestConcurrency:
    def test_reader_never_sees_torn_block(self):
        """Every block pushed is a constant run; any window read must be a prefix/suffix of runs."""
        buf = WaveformBuffer(1000, 1.0)
        block = 100
        errors = []
        stop = threading.Event()

        def writer():
            for value in range(1, 200):
                buf.push(np.full(block, float(value), dtype=np.float32))
            stop.set()

        def reader():
            while not stop.is_set():
                window = buf.get_range(0.1)
                # A 100-sample window after whole-block pushes is a single value.
                if np.unique(window).size > 1:
                    errors.append(window.copy())

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert not errors
