"""Whisper audio encoder producing lip-sync audio features."""

from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from livetalk.config import LiveTalkConfig
from livetalk.errors import InputError
from livetalk.face.analysis import MUSETALK_DIR
from livetalk.lipsync.audio import (
    SAMPLE_RATE,
    AudioFeatures,
    chunk_whisper_features,
    log_mel_spectrogram,
    resample_audio,
    stereo_to_mono,
)
from livetalk.runtime import ExecutionProvider, Model, ModelSpec, SessionFactory

logger = logging.getLogger(__name__)

WHISPER_ENCODER = "whisper_encoder"
OUTPUT_NAME = "audio_features_all_layers"

MODEL_SPEC = ModelSpec(WHISPER_ENCODER, MUSETALK_DIR, provider=ExecutionProvider.CPU)


class WhisperEncoder:
    """Turns raw audio into per-video-frame feature chunks.

    Args:
        config: Shared configuration.
        session_factory: Passed to the :class:`Model`; mainly for tests.
        model: Pre-built encoder model.
    """

    def __init__(
        self,
        config: Optional[LiveTalkConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        model: Optional[Model] = None,
    ) -> None:
        self.config = config or LiveTalkConfig()
        self.model = model or Model(MODEL_SPEC, self.config, session_factory=session_factory)

    def start_session(self) -> None:
        self.model.start_session()

    def end_session(self) -> None:
        self.model.end_session()

    def close(self) -> None:
        self.model.close()

    def encode(self, mel: np.ndarray) -> np.ndarray:
        """(1, seq, layers, 384) features of an (80, 3000) log-mel spectrogram."""
        outputs = self.model.run_disposable([mel[np.newaxis].astype(np.float32)])
        features = outputs.get(OUTPUT_NAME)
        if features is None:
            features = next(iter(outputs.values()))
        return features

    def extract(
        self, samples, sample_rate: int = SAMPLE_RATE, channels: Optional[int] = None
    ) -> AudioFeatures:
        """Audio features of a clip, one chunk per output video frame.

        Raises:
            InputError: If *samples* is empty.
        """
        audio = stereo_to_mono(samples, channels)
        if audio.size == 0:
            raise InputError("Audio samples are empty")
        start = time.perf_counter()
        audio = resample_audio(audio, sample_rate, SAMPLE_RATE)
        mel = log_mel_spectrogram(audio)
        features = self.encode(mel)
        result = chunk_whisper_features(features, len(audio))
        logger.info(
            "Extracted %d audio chunks from %.2fs of audio in %.1fms",
            result.chunk_count, result.duration, (time.perf_counter() - start) * 1000,
        )
        return result


__all__ = ["WhisperEncoder", "MODEL_SPEC"]
