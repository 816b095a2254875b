"""Tests for audio preparation and the Whisper encoder wrapper."""

import logging

import numpy as np
import pytest

from livetalk.errors import InputError
from livetalk.lipsync import (
    WhisperEncoder,
    chunk_whisper_features,
    log_mel_spectrogram,
    resample_audio,
    stereo_to_mono,
)
from livetalk.lipsync.whisper import MODEL_SPEC
from livetalk.runtime import ExecutionProvider

from helpers import WHISPER_LAYERS, MockSessionFactory, make_config, sine_audio, whisper_session


def whisper_features(seq_len=1500):
    return whisper_session(seq_len).run(None, {})[0]


class TestChannels:
    def test_mono_passthrough(self):
        audio = sine_audio(0.1)
        np.testing.assert_array_equal(stereo_to_mono(audio), audio)

    def test_frames_by_channels(self):
        stereo = np.stack([np.ones(100), np.zeros(100)], axis=1)
        mono = stereo_to_mono(stereo)
        assert mono.shape == (100,)
        assert mono.dtype == np.float32
        np.testing.assert_allclose(mono, 0.5)

    def test_interleaved(self):
        interleaved = np.tile([1.0, 0.0], 50)
        np.testing.assert_allclose(stereo_to_mono(interleaved, channels=2), 0.5)

    def test_interleaved_must_divide(self):
        with pytest.raises(InputError):
            stereo_to_mono(np.zeros(101), channels=2)

    def test_resample_length(self):
        out = resample_audio(sine_audio(1.0, 44100), 44100)
        assert abs(len(out) - 16000) <= 1
        assert out.dtype == np.float32

    def test_resample_rejects_non_positive_rate(self):
        for rate in (0, -16000):
            with pytest.raises(InputError):
                resample_audio(sine_audio(0.1), rate)

    def test_resample_same_rate_is_noop(self):
        audio = sine_audio(0.5)
        assert resample_audio(audio, 16000) is audio


class TestLogMel:
    def test_shape_and_range(self):
        mel = log_mel_spectrogram(sine_audio(1.0))
        assert mel.shape == (80, 3000)
        assert mel.dtype == np.float32
        assert mel.max() == pytest.approx(1.0)
        assert mel.min() >= 0.0

    def test_zero_padded_after_audio(self):
        mel = log_mel_spectrogram(sine_audio(1.0))
        # 16000 samples, hop 160, centred frames
        assert mel[:, 101:].max() == 0.0
        assert mel[:, :101].max() > 0.0

    def test_trimmed_to_target(self, caplog):
        with caplog.at_level(logging.WARNING, logger="livetalk"):
            assert log_mel_spectrogram(sine_audio(0.5), n_frames=20).shape == (80, 20)
        assert "exceeds the encoder window" in caplog.text

    def test_fitting_audio_does_not_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="livetalk"):
            log_mel_spectrogram(sine_audio(1.0))
        assert "exceeds" not in caplog.text

    def test_empty(self):
        with pytest.raises(InputError):
            log_mel_spectrogram(np.zeros(0, np.float32))


class TestChunking:
    def test_one_chunk_per_video_frame(self):
        features = chunk_whisper_features(whisper_features(), 16000)
        assert len(features) == 25
        assert features.duration == pytest.approx(1.0)
        assert features.chunks[0].shape == (10 * WHISPER_LAYERS, 384)

    def test_window_alignment(self):
        chunks = chunk_whisper_features(whisper_features(), 16000).chunks
        layers = WHISPER_LAYERS
        # Frame 0 starts in the left padding: 4 zero steps, then steps 0..5
        assert chunks[0][:4 * layers].max() == 0
        assert chunks[0][5 * layers, 0] == 1
        assert chunks[0][9 * layers, 0] == 5
        # Frame 3 starts at padded index 6 -> feature step 2
        assert chunks[3][0, 0] == 2
        assert chunks[3][layers, 0] == 3

    def test_right_padding_is_zero(self):
        chunks = chunk_whisper_features(whisper_features(), 16000).chunks
        # Steps past the 50 real ones are padding
        assert chunks[24][-4 * WHISPER_LAYERS:].max() == 0

    def test_overrunning_windows_are_dropped(self):
        features = chunk_whisper_features(whisper_features(seq_len=10), 16000)
        assert len(features) == 9

    def test_accepts_three_dim_features(self):
        assert len(chunk_whisper_features(whisper_features()[0], 8000)) == 12

    def test_rejects_bad_rank(self):
        with pytest.raises(InputError):
            chunk_whisper_features(np.zeros((10, 384)), 16000)


class TestWhisperEncoder:
    def make_encoder(self, tmp_path):
        factory = MockSessionFactory({"whisper_encoder": whisper_session})
        return WhisperEncoder(make_config(tmp_path), session_factory=factory), factory

    def test_runs_on_cpu(self):
        assert MODEL_SPEC.provider is ExecutionProvider.CPU
        assert MODEL_SPEC.sub_path == "MuseTalk"

    def test_extract(self, tmp_path):
        encoder, factory = self.make_encoder(tmp_path)
        encoder.start_session()
        features = encoder.extract(sine_audio(2.0))
        encoder.end_session()
        assert len(features) == 50
        (call,) = factory.sessions["whisper_encoder"].calls
        assert call["input_features"].shape == (1, 80, 3000)

    def test_extract_resamples_stereo(self, tmp_path):
        encoder, _ = self.make_encoder(tmp_path)
        audio = sine_audio(1.0, 44100)
        stereo = np.stack([audio, audio], axis=1)
        encoder.start_session()
        features = encoder.extract(stereo, 44100)
        assert len(features) == 25

    def test_extract_empty(self, tmp_path):
        encoder, _ = self.make_encoder(tmp_path)
        encoder.start_session()
        with pytest.raises(InputError):
            encoder.extract(np.zeros(0, np.float32))
