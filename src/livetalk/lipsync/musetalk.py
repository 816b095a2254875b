"""MuseTalk lip sync.

Avatar frames are analysed once into :class:`AvatarData` (face box, 256x256
face crop, blend masks and VAE latents). Generation then walks the audio
chunks, cycling the avatar frames forward and backward:

    audio chunk -> positional encoding --+
                                         +-> UNet -> VAE decoder -> blend
    avatar latent (masked ++ reference) -+
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from livetalk.compositing import SegmentationData, blend_face_with_original, precompute_segmentation
from livetalk.config import LiveTalkConfig
from livetalk.errors import DetectionFailure, GeometryError, InputError
from livetalk.face.analysis import MUSETALK_DIR, FaceAnalysis
from livetalk.face.types import ParsingMode
from livetalk.frame import frame_to_tensor, tensor_to_frame, validate_frame
from livetalk.geometry import SamplingMode, resize_frame
from livetalk.lipsync.audio import AudioFeatures
from livetalk.lipsync.whisper import WhisperEncoder
from livetalk.runtime import ExecutionProvider, Model, ModelSpec, Precision, SessionFactory

if TYPE_CHECKING:
    from livetalk.pipeline.stream import OutputStream

logger = logging.getLogger(__name__)

UNET = "unet"
VAE_ENCODER = "vae_encoder"
VAE_DECODER = "vae_decoder"
POSITIONAL_ENCODING = "positional_encoding"

MODEL_SPECS = {
    UNET: ModelSpec(UNET, MUSETALK_DIR, precision=Precision.FP16, model_class="musetalk"),
    VAE_ENCODER: ModelSpec(VAE_ENCODER, MUSETALK_DIR, precision=Precision.FP16, model_class="musetalk"),
    VAE_DECODER: ModelSpec(VAE_DECODER, MUSETALK_DIR, precision=Precision.FP16, model_class="musetalk"),
    POSITIONAL_ENCODING: ModelSpec(POSITIONAL_ENCODING, MUSETALK_DIR, provider=ExecutionProvider.CPU),
}

FACE_SIZE = 256
LATENT_SHAPE = (1, 8, 32, 32)
AUDIO_STEPS = 50
AUDIO_DIM = 384
LATENT_OUTPUT = "latents"


@dataclass
class AvatarFrame:
    """One avatar frame ready for lip sync."""

    index: int
    bbox: Tuple[float, float, float, float]
    face: np.ndarray
    original: np.ndarray
    segmentation: SegmentationData
    latent: np.ndarray

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]


@dataclass
class AvatarData:
    """Processed avatar frames, in input order, skipping frames without a face."""

    frames: List[AvatarFrame] = field(default_factory=list)
    bbox_ranges: Tuple[float, float] = (0.0, 0.0)

    @property
    def latents(self) -> List[np.ndarray]:
        return [f.latent for f in self.frames]

    def __len__(self) -> int:
        return len(self.frames)

    def frame_at(self, i: int) -> AvatarFrame:
        """Avatar frame of output frame *i*, cycling forward then backward."""
        return self.frames[cycle_index(i, len(self.frames))]


def cycle_index(i: int, n: int) -> int:
    """Index into ``frames + reversed(frames)`` for output frame *i*.

    Raises:
        InputError: If there are no frames.
    """
    if n <= 0:
        raise InputError("Cannot cycle over an empty avatar")
    idx = i % (2 * n)
    if idx >= n:
        idx = 2 * n - 1 - idx
    return idx


class MuseTalkPipeline:
    """Audio driven mouth generation over avatar frames.

    Args:
        face_analysis: Shared face analysis service.
        config: Shared configuration.
        session_factory: Passed to every :class:`Model`; mainly for tests.
        models: Pre-built models by name, overriding the defaults.
        whisper: Pre-built audio encoder.
    """

    def __init__(
        self,
        face_analysis: FaceAnalysis,
        config: Optional[LiveTalkConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        models: Optional[Dict[str, Model]] = None,
        whisper: Optional[WhisperEncoder] = None,
    ) -> None:
        self.config = config or face_analysis.config
        self.face_analysis = face_analysis
        models = dict(models or {})
        for name, spec in MODEL_SPECS.items():
            if name not in models:
                models[name] = Model(spec, self.config, session_factory=session_factory)
        self._models = models
        self.whisper = whisper or WhisperEncoder(self.config, session_factory=session_factory)
        self.parsing_mode = ParsingMode.from_string(self.config.parsing_mode)

    # ── Sessions ──

    def _own_models(self) -> List[Model]:
        return [self._models[name] for name in MODEL_SPECS]

    def start_session(self) -> None:
        for model in self._own_models():
            model.start_session()
        self.whisper.start_session()

    def end_session(self) -> None:
        for model in self._own_models():
            model.end_session()
        self.whisper.end_session()

    @contextmanager
    def session(self) -> Iterator["MuseTalkPipeline"]:
        self.start_session()
        try:
            yield self
        finally:
            self.end_session()

    def close(self) -> None:
        for model in self._own_models():
            model.close()
        self.whisper.close()

    # ── Avatar ──

    def process_avatar(self, frames: Sequence[np.ndarray]) -> AvatarData:
        """Analyse avatar frames for lip sync.

        Frames without a face, or whose face box cannot be cropped, are
        skipped with a warning.

        Raises:
            InputError: If *frames* is empty or holds an invalid frame.
            DetectionFailure: If no frame has a usable face.
        """
        if len(frames) == 0:
            raise InputError("No avatar frames given")
        for i, frame in enumerate(frames):
            validate_frame(frame, f"avatar frame {i}")

        start = time.perf_counter()
        avatar = AvatarData()
        with self.face_analysis.analysis_session():
            bboxes, ranges = self.face_analysis.get_landmark_and_bbox(frames, self.config.bbox_shift)
        avatar.bbox_ranges = ranges

        with self.face_analysis.parsing_session(), self._models[VAE_ENCODER].session():
            for i, (frame, bbox) in enumerate(zip(frames, bboxes)):
                if bbox is None:
                    logger.warning("No face detected in avatar frame %d, skipping", i)
                    continue
                try:
                    face = self.face_analysis.crop_face_region(
                        frame, bbox, self.config.version, self.config.extra_margin
                    )
                    segmentation = precompute_segmentation(
                        frame, bbox, self.face_analysis,
                        self.config.version, self.config.extra_margin, self.parsing_mode,
                    )
                except GeometryError as exc:
                    logger.warning("Skipping avatar frame %d: %s", i, exc)
                    continue
                avatar.frames.append(AvatarFrame(
                    index=i,
                    bbox=tuple(float(v) for v in bbox),
                    face=face,
                    original=frame,
                    segmentation=segmentation,
                    latent=self.encode_latents(face),
                ))

        if not avatar.frames:
            raise DetectionFailure(f"No faces detected in any of the {len(frames)} avatar frames")
        logger.info(
            "Processed %d/%d avatar frames in %.1fms",
            len(avatar), len(frames), (time.perf_counter() - start) * 1000,
        )
        return avatar

    def _encode(self, face: np.ndarray, mask_lower_half: bool) -> np.ndarray:
        tensor = frame_to_tensor(face, 2.0 / 255.0, -1.0, mask_lower_half=mask_lower_half)
        outputs = self._models[VAE_ENCODER].run_disposable([tensor])
        latents = outputs.get(LATENT_OUTPUT)
        if latents is None:
            latents = next(iter(outputs.values()))
        return np.asarray(latents, dtype=np.float32)

    def encode_latents(self, face: np.ndarray) -> np.ndarray:
        """(1, 8, 32, 32) UNet latent: masked latents then reference latents."""
        if face.shape[:2] != (FACE_SIZE, FACE_SIZE):
            face = resize_frame(face, FACE_SIZE, FACE_SIZE, SamplingMode.BILINEAR)
        masked = self._encode(face, mask_lower_half=True)
        reference = self._encode(face, mask_lower_half=False)
        if masked.shape != reference.shape:
            raise InputError(
                f"Masked and reference latents differ in shape: {masked.shape} vs {reference.shape}"
            )
        latent = np.concatenate([masked, reference], axis=1)
        if latent.shape != LATENT_SHAPE:
            raise InputError(f"Unexpected latent shape {latent.shape}, expected {LATENT_SHAPE}")
        return latent

    # ── Generation ──

    @staticmethod
    def prepare_audio_batch(chunks: Sequence[np.ndarray], i: int) -> np.ndarray:
        """(1, 50, 384) batch of chunk *i*, zero padded or truncated."""
        batch = np.zeros((1, AUDIO_STEPS, AUDIO_DIM), dtype=np.float32)
        if 0 <= i < len(chunks):
            flat = np.asarray(chunks[i], dtype=np.float32).reshape(-1)
            n = min(flat.size, batch.size)
            batch.reshape(-1)[:n] = flat[:n]
        return batch

    def add_positional_encoding(self, audio_batch: np.ndarray) -> np.ndarray:
        outputs = self._models[POSITIONAL_ENCODING].run([audio_batch])
        return next(iter(outputs.values()))

    def predict_latents(self, latent: np.ndarray, audio: np.ndarray) -> np.ndarray:
        outputs = self._models[UNET].run([latent, audio])
        return next(iter(outputs.values()))

    def decode_frame(self, latents: np.ndarray, i: int, avatar: AvatarData) -> np.ndarray:
        """Decode UNet output *i* and blend it into its avatar frame."""
        outputs = self._models[VAE_DECODER].run([latents])
        face = tensor_to_frame(next(iter(outputs.values())), -1.0, 1.0)

        entry = avatar.frame_at(i)
        x1, y1, x2, y2 = entry.bbox
        width = int(round(x2 - x1))
        height = int(round(y2 - y1))
        if self.config.version == "v15":
            height = min(height + self.config.extra_margin, entry.original.shape[0] - int(round(y1)))
        face = resize_frame(face, width, height)
        return blend_face_with_original(
            entry.original, face, entry.bbox, entry.segmentation,
            ParsingMode.JAW, self.config.extra_margin,
        )

    def generate_frame(self, features: AudioFeatures, i: int, avatar: AvatarData) -> np.ndarray:
        latent = avatar.frame_at(i).latent
        audio = self.add_positional_encoding(self.prepare_audio_batch(features.chunks, i))
        return self.decode_frame(self.predict_latents(latent, audio), i, avatar)

    def generate(
        self,
        audio_samples,
        sample_rate: int,
        avatar: AvatarData,
        stream: "OutputStream",
        channels: Optional[int] = None,
    ) -> int:
        """Lip-synced avatar frames for an audio clip, in order, into *stream*.

        The stream is always finished; an error is recorded on it with
        :meth:`OutputStream.fail` and re-raised.

        Returns:
            Number of frames produced, one per audio chunk.
        """
        try:
            if not avatar.frames:
                raise InputError("Avatar has no processed frames")
            with self.session():
                features = self.whisper.extract(audio_samples, sample_rate, channels)
                stream.total_expected_frames = features.chunk_count
                logger.info("Generating %d lip-sync frames", features.chunk_count)
                for i in range(features.chunk_count):
                    start = time.perf_counter()
                    stream.put(self.generate_frame(features, i, avatar))
                    logger.debug(
                        "Lip-sync frame %d in %.1fms", i, (time.perf_counter() - start) * 1000
                    )
        except Exception as e:
            stream.fail(e)
            raise
        stream.finish()
        logger.info("Lip sync finished: %d frames", features.chunk_count)
        return features.chunk_count


__all__ = [
    "AvatarFrame",
    "AvatarData",
    "cycle_index",
    "MuseTalkPipeline",
    "MODEL_SPECS",
]
