"""Audio preparation for the Whisper encoder and per-frame feature chunks.

    samples --mono--> --resample 16 kHz--> log-mel (80 x 3000)
    whisper features (1, seq, layers, 384) --chunk--> one (10 * layers, 384)
    window per video frame
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

import librosa
import numpy as np

from livetalk.errors import InputError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
N_MELS = 80
N_FFT = 512
HOP_LENGTH = 160
TARGET_FRAMES = 3000
TOP_DB = 80.0

VIDEO_FPS = 25
AUDIO_FPS = 50
AUDIO_PADDING_LEFT = 2
AUDIO_PADDING_RIGHT = 2
FEATURE_DIM = 384


@dataclass
class AudioFeatures:
    """Whisper feature windows, one per output video frame."""

    chunks: List[np.ndarray] = field(default_factory=list)
    sample_rate: int = SAMPLE_RATE
    duration: float = 0.0

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)


def stereo_to_mono(samples, channels: Optional[int] = None) -> np.ndarray:
    """Average channels into a float32 mono signal.

    Accepts ``(frames, channels)`` arrays as read by soundfile, or a flat
    interleaved buffer when ``channels`` is given.

    Raises:
        InputError: If an interleaved buffer does not divide into channels.
    """
    audio = np.asarray(samples, dtype=np.float32)
    if audio.ndim == 1 and channels and channels > 1:
        if audio.size % channels:
            raise InputError(
                f"Interleaved buffer of {audio.size} samples is not divisible by {channels} channels"
            )
        audio = audio.reshape(-1, channels)
    if audio.ndim == 2:
        return librosa.to_mono(audio.T).astype(np.float32)
    return audio


def resample_audio(samples, orig_sr: int, target_sr: int = SAMPLE_RATE) -> np.ndarray:
    if orig_sr <= 0 or target_sr <= 0:
        raise InputError(f"Sample rates must be positive, got {orig_sr} -> {target_sr}")
    audio = np.asarray(samples, dtype=np.float32)
    if orig_sr == target_sr:
        return audio
    return librosa.resample(audio, orig_sr=orig_sr, target_sr=target_sr).astype(np.float32)


def log_mel_spectrogram(samples, n_frames: int = TARGET_FRAMES) -> np.ndarray:
    """Normalised (80, n_frames) log-mel spectrogram of 16 kHz audio.

    Power mel spectrogram (HTK filterbank, centred Hann STFT), ``power_to_db``
    against the maximum with an 80 dB floor, then ``(db + 80) / 80``.
    Zero padded or trimmed to ``n_frames``.
    """
    audio = np.asarray(samples, dtype=np.float32)
    if audio.size == 0:
        raise InputError("Audio samples are empty")
    mel = librosa.feature.melspectrogram(
        y=audio,
        sr=SAMPLE_RATE,
        n_fft=N_FFT,
        hop_length=HOP_LENGTH,
        n_mels=N_MELS,
        htk=True,
        power=2.0,
    )
    db = librosa.power_to_db(mel, ref=np.max, top_db=TOP_DB)
    norm = np.clip((db + TOP_DB) / TOP_DB, -1.0, 1.0).astype(np.float32)

    if norm.shape[1] > n_frames:
        logger.warning(
            "Audio of %.1fs exceeds the encoder window of %.1fs, the rest is dropped",
            audio.size / SAMPLE_RATE, n_frames * HOP_LENGTH / SAMPLE_RATE,
        )
    out = np.zeros((N_MELS, n_frames), dtype=np.float32)
    used = min(n_frames, norm.shape[1])
    out[:, :used] = norm[:, :used]
    return out


def chunk_whisper_features(features: np.ndarray, audio_length: int) -> AudioFeatures:
    """Slice multi-layer Whisper features into per-video-frame windows.

    Args:
        features: (1, seq, layers, 384) encoder output.
        audio_length: Number of 16 kHz samples the features came from.

    Each frame ``i`` reads 10 consecutive audio steps starting at
    ``floor(i * 2)`` from the features zero padded by 4 steps on the left
    and 12 on the right. Frames whose window would overrun are dropped.
    """
    feats = np.asarray(features, dtype=np.float32)
    if feats.ndim == 3:
        feats = feats[np.newaxis]
    if feats.ndim != 4:
        raise InputError(f"Expected (1, seq, layers, dim) features, got {feats.shape}")
    _, seq_len, layers, dim = feats.shape

    multiplier = AUDIO_FPS / VIDEO_FPS
    num_frames = int(math.floor(audio_length / SAMPLE_RATE * VIDEO_FPS))
    actual = min(int(math.floor(audio_length / SAMPLE_RATE * AUDIO_FPS)), seq_len)

    pad = int(math.ceil(multiplier))
    left = pad * AUDIO_PADDING_LEFT
    right = pad * 3 * AUDIO_PADDING_RIGHT
    padded = np.zeros((left + actual + right, layers, dim), dtype=np.float32)
    padded[left:left + actual] = feats[0, :actual]

    window = 2 * (AUDIO_PADDING_LEFT + AUDIO_PADDING_RIGHT + 1)
    chunks = []
    for i in range(num_frames):
        idx = int(math.floor(i * multiplier))
        if idx + window > padded.shape[0]:
            continue
        # (window, layers, dim) -> (window * layers, dim), time-major
        chunks.append(padded[idx:idx + window].reshape(window * layers, dim).copy())

    return AudioFeatures(
        chunks=chunks,
        sample_rate=SAMPLE_RATE,
        duration=audio_length / SAMPLE_RATE,
    )


__all__ = [
    "SAMPLE_RATE",
    "TARGET_FRAMES",
    "AudioFeatures",
    "stereo_to_mono",
    "resample_audio",
    "log_mel_spectrogram",
    "chunk_whisper_features",
]
