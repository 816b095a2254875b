"""Audio driven lip sync over avatar frames."""

from livetalk.lipsync.audio import (
    AudioFeatures,
    chunk_whisper_features,
    log_mel_spectrogram,
    resample_audio,
    stereo_to_mono,
)
from livetalk.lipsync.whisper import WhisperEncoder
from livetalk.lipsync.musetalk import AvatarData, AvatarFrame, MuseTalkPipeline, cycle_index

__all__ = [
    "AudioFeatures",
    "chunk_whisper_features",
    "log_mel_spectrogram",
    "resample_audio",
    "stereo_to_mono",
    "WhisperEncoder",
    "AvatarData",
    "AvatarFrame",
    "MuseTalkPipeline",
    "cycle_index",
]
