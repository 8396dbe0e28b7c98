"""
Unit tests for the 16-bit PCM WAV codec.

Covers the byte layout of the header, quantisation (32767 for non-negative
samples, 32768 for negative ones, truncated toward zero), interleaving,
decoding, rejection of malformed images, and the recording encoder.
"""
from __future__ import annotations

import struct

import numpy as np
import pytest

from recording.wav_codec import (
    HEADER_SIZE,
    WavEncoder,
    build_header,
    encode_wav,
    float_to_pcm16,
    interleave,
    load_wav,
    read_wav_file,
    save_wav,
)
from shared.errors import InvalidConfig, MalformedContainer


def _pcm(payload: bytes) -> np.ndarray:
    return np.frombuffer(payload[HEADER_SIZE:], dtype="<i2")


class TestHeader:
    def test_header_fields(self):
        payload = encode_wav([np.zeros(10), np.zeros(10)], 44100)
        assert len(payload) == HEADER_SIZE + 10 * 2 * 2
        assert payload[0:4] == b"RIFF"
        assert struct.unpack_from("<I", payload, 4)[0] == 36 + 40
        assert payload[8:12] == b"WAVE"
        assert payload[12:16] == b"fmt "
        assert struct.unpack_from("<IHHIIHH", payload, 16) == (16, 1, 2, 44100, 44100 * 4, 4, 16)
        assert payload[36:40] == b"data"
        assert struct.unpack_from("<I", payload, 40)[0] == 40

    def test_build_header_length(self):
        assert len(build_header(8000, 1, 0)) == HEADER_SIZE


class TestQuantisation:
    def test_asymmetric_scaling(self):
        pcm = float_to_pcm16(np.array([0.0, 1.0, -1.0, 0.5, -0.5], dtype=np.float32))
        np.testing.assert_array_equal(pcm, [0, 32767, -32768, 16383, -16384])

    def test_clamped_before_scaling(self):
        pcm = float_to_pcm16(np.array([1.5, -2.0], dtype=np.float32))
        np.testing.assert_array_equal(pcm, [32767, -32768])

    def test_truncates_toward_zero(self):
        # 0.3 * 32767 = 9830.1, -0.3 * 32768 = -9830.4
        pcm = float_to_pcm16(np.array([0.3, -0.3]))
        np.testing.assert_array_equal(pcm, [9830, -9830])

    def test_encoded_samples_are_little_endian(self):
        payload = encode_wav([[1.0]], 8000)
        assert payload[HEADER_SIZE:] == b"\xff\x7f"


class TestInterleave:
    def test_frame_order(self):
        out = interleave([np.array([1.0, 2.0]), np.array([3.0, 4.0])])
        np.testing.assert_array_equal(out, [1.0, 3.0, 2.0, 4.0])

    def test_single_channel_is_identity(self):
        np.testing.assert_array_equal(interleave([np.array([0.1, 0.2, 0.3])]), np.float32([0.1, 0.2, 0.3]))

    def test_unequal_lengths_raise(self):
        with pytest.raises(InvalidConfig):
            interleave([np.zeros(3), np.zeros(4)])

    def test_encoded_interleaving(self):
        payload = encode_wav([[0.5, 0.25], [-0.5, -0.25]], 1000)
        np.testing.assert_array_equal(_pcm(payload), [16383, -16384, 8191, -8192])


class TestDecode:
    def test_decode_divides_by_32768(self):
        doc = load_wav(encode_wav([[0.0, 1.0, -1.0]], 22050))
        assert doc.sample_rate == 22050
        assert doc.number_of_channels == 1
        np.testing.assert_allclose(doc.data[0], [0.0, 32767 / 32768, -1.0])

    def test_deinterleaves_channels(self):
        doc = load_wav(encode_wav([[0.5, 0.25], [-0.5, -0.25]], 1000))
        assert doc.number_of_channels == 2
        assert doc.n_frames == 2
        np.testing.assert_allclose(doc.data[0], [16383 / 32768, 8191 / 32768])
        np.testing.assert_allclose(doc.data[1], [-0.5, -0.25])

    def test_round_trip_within_one_step(self):
        rng = np.random.default_rng(7)
        channels = [rng.uniform(-1, 1, 500).astype(np.float32) for _ in range(3)]
        doc = load_wav(encode_wav(channels, 10000))
        for original, decoded in zip(channels, doc.data):
            np.testing.assert_allclose(decoded, original, atol=2.0 / 32768)

    def test_decoded_arrays_are_read_only(self):
        doc = load_wav(encode_wav([[0.1, 0.2]], 1000))
        with pytest.raises(ValueError):
            doc.data[0][0] = 1.0

    def test_empty_data_chunk(self):
        doc = load_wav(encode_wav([[]], 1000))
        assert doc.n_frames == 0
        assert doc.duration == 0.0

    def test_duration(self):
        doc = load_wav(encode_wav([np.zeros(500)], 1000))
        assert doc.duration == pytest.approx(0.5)


def _patched(offset: int, fmt: str, value) -> bytes:
    raw = bytearray(encode_wav([[0.1, 0.2, 0.3, 0.4]], 1000))
    struct.pack_into(fmt, raw, offset, value)
    return bytes(raw)


class TestMalformed:
    @pytest.mark.parametrize(
        "raw",
        [
            b"",
            b"RIFF" + b"\x00" * 30,
            _patched(0, "<4s", b"RIFX"),
            _patched(8, "<4s", b"AVI "),
            _patched(12, "<4s", b"junk"),
            _patched(36, "<4s", b"LIST"),
            _patched(20, "<H", 3),
            _patched(34, "<H", 8),
            _patched(22, "<H", 0),
            _patched(24, "<I", 0),
            _patched(40, "<I", 3),
            _patched(40, "<I", 1000),
        ],
        ids=[
            "empty",
            "short",
            "riff-tag",
            "wave-tag",
            "fmt-tag",
            "data-tag",
            "float-format",
            "8-bit",
            "zero-channels",
            "zero-rate",
            "partial-frame",
            "data-overrun",
        ],
    )
    def test_rejected(self, raw):
        with pytest.raises(MalformedContainer):
            load_wav(raw)

    def test_malformed_is_a_value_error(self):
        with pytest.raises(ValueError):
            load_wav(b"nope")


class TestWavEncoder:
    def test_invalid_construction(self):
        with pytest.raises(InvalidConfig):
            WavEncoder(0, 1)
        with pytest.raises(InvalidConfig):
            WavEncoder(1000, 0)

    def test_blocks_merged_in_arrival_order(self):
        enc = WavEncoder(1000, 2)
        enc.record([np.array([0.1, 0.2]), np.array([0.5, 0.6])])
        enc.record([np.array([0.3]), np.array([0.7])])
        assert enc.pending_frames == 3
        assert enc.duration_seconds == pytest.approx(0.003)

        doc = WavEncoder.load_wav(enc.export_wav())
        np.testing.assert_allclose(doc.data[0], [0.1, 0.2, 0.3], atol=1 / 32768)
        np.testing.assert_allclose(doc.data[1], [0.5, 0.6, 0.7], atol=1 / 32768)

    def test_record_copies_input(self):
        enc = WavEncoder(1000, 1)
        block = np.array([0.5, 0.5], dtype=np.float32)
        enc.record([block])
        block[:] = -1.0
        np.testing.assert_array_equal(_pcm(enc.export_wav()), [16383, 16383])

    def test_extra_blocks_are_ignored(self):
        enc = WavEncoder(1000, 1)
        enc.record([np.array([0.5]), np.array([-0.5])])
        np.testing.assert_array_equal(_pcm(enc.export_wav()), [16383])

    def test_too_few_blocks_raise(self):
        enc = WavEncoder(1000, 2)
        with pytest.raises(InvalidConfig):
            enc.record([np.zeros(4)])
        assert enc.pending_frames == 0

    def test_clear_and_empty_export(self):
        enc = WavEncoder(1000, 2)
        enc.record([np.zeros(4), np.zeros(4)])
        enc.clear()
        payload = enc.export_wav()
        assert len(payload) == HEADER_SIZE
        assert load_wav(payload).number_of_channels == 2

    def test_uneven_blocks_rejected_and_earlier_blocks_kept(self):
        enc = WavEncoder(1000, 2)
        enc.record([np.full(10, 0.5), np.full(10, -0.5)])
        with pytest.raises(InvalidConfig):
            enc.record([np.zeros(4), np.zeros(3)])
        assert enc.pending_frames == 10

        doc = load_wav(enc.export_wav())
        assert doc.n_frames == 10
        np.testing.assert_allclose(doc.data[1], -0.5)


class TestFiles:
    def test_save_and_read(self, tmp_path):
        target = tmp_path / "nested" / "take.wav"
        written = save_wav(target, encode_wav([[0.25, -0.25]], 8000))
        assert written == target
        doc = read_wav_file(target)
        assert doc.sample_rate == 8000
        np.testing.assert_allclose(doc.data[0], [8191 / 32768, -0.25])
