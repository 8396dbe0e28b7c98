"""
Unit tests for the serial CSV protocol parser and the serial driver helpers
that do not need a port.
"""
from __future__ import annotations

import numpy as np
import pytest

from daq.serial_source import (
    DEFAULT_BAUD_RATE,
    SERIAL_BLOCK_SIZE,
    CsvSampleParser,
    SerialSource,
    serial_sample_rate,
)
from shared.errors import InvalidConfig
from test.fixtures.signal_generators import make_csv_stream


class TestCsvSampleParser:
    def test_full_block_of_midscale(self):
        parser = CsvSampleParser(1)
        blocks = parser.feed("512\n" * SERIAL_BLOCK_SIZE)
        assert len(blocks) == 1
        assert blocks[0].shape == (256, 1)
        assert blocks[0].dtype == np.float32
        assert not blocks[0].any()

    def test_normalisation(self):
        parser = CsvSampleParser(1, block_size=3)
        (block,) = parser.feed("0\n256\n1024\n")
        np.testing.assert_allclose(block[:, 0], [-1.0, -0.5, 1.0])

    def test_lines_split_across_reads(self):
        parser = CsvSampleParser(1, block_size=3)
        assert parser.feed("51") == []
        assert parser.feed("2\n0\n10") == []
        assert parser.pending_frames == 2
        (block,) = parser.feed("24\n")
        np.testing.assert_allclose(block[:, 0], [0.0, -1.0, 1.0])

    def test_multichannel_frames(self):
        parser = CsvSampleParser(2, block_size=2)
        (block,) = parser.feed(make_csv_stream(np.array([[512, 256], [768, 0]])))
        np.testing.assert_allclose(block, [[0.0, -0.5], [0.5, -1.0]])

    def test_malformed_lines_skipped(self):
        parser = CsvSampleParser(2, block_size=2)
        blocks = parser.feed("1,2,3\nabc,1\n512\n512,256\n\n256,512\n")
        assert parser.rejected_lines == 3
        assert len(blocks) == 1
        np.testing.assert_allclose(blocks[0], [[0.0, -0.5], [-0.5, 0.0]])

    def test_carriage_returns_tolerated(self):
        parser = CsvSampleParser(1, block_size=2)
        (block,) = parser.feed("512\r\n1024\r\n")
        np.testing.assert_allclose(block[:, 0], [0.0, 1.0])

    def test_blocks_are_independent_copies(self):
        parser = CsvSampleParser(1, block_size=1)
        first, second = parser.feed("0\n1024\n")
        assert first[0, 0] == -1.0
        assert second[0, 0] == 1.0

    def test_reset(self):
        parser = CsvSampleParser(1, block_size=4)
        parser.feed("1\n2\n3")
        parser.reset()
        assert parser.pending_frames == 0
        assert parser.feed("\n") == []

    @pytest.mark.parametrize("channels, block", [(0, 10), (1, 0)])
    def test_invalid_construction(self, channels, block):
        with pytest.raises(InvalidConfig):
            CsvSampleParser(channels, block)


class _FakePort:
    def __init__(self):
        self.written = []

    def write(self, data):
        self.written.append(data)


class TestSerialSource:
    def test_sample_rate_shared_between_channels(self):
        assert serial_sample_rate(1) == 10000
        assert serial_sample_rate(2) == 5000
        assert serial_sample_rate(3) == 3333

    def test_channel_ids(self):
        src = SerialSource(channel_count=3)
        ids = [ch.id for ch in src.list_available_channels("COM1")]
        assert ids == ["serial_ch1", "serial_ch2", "serial_ch3"]

    def test_default_baud(self):
        assert DEFAULT_BAUD_RATE == 230400

    def test_send_command_appends_newline(self):
        src = SerialSource()
        port = _FakePort()
        src._ser = port
        src.send_command("c:2;")
        assert port.written == [b"c:2;\n"]

    def test_send_command_without_port_is_noop(self):
        SerialSource().send_command("c:1;")

    def test_invalid_channel_count(self):
        with pytest.raises(InvalidConfig):
            SerialSource(channel_count=0)
