"""LivePortrait motion transfer.

A source portrait is analysed once (crop, appearance features, canonical
keypoints, paste-back mask). Every driving frame then yields a head pose and
expression that are applied *relative to the first driving frame* onto the
source keypoints, refined by the stitching model and rendered by the
warping network.

    source  -> crop 512 -> 256 -> appearance features f_s, motion x_s
    driving -> 256 -> motion x_d -> R, exp, scale, t relative to x_d0
            -> kp_d -> stitching -> warping(f_s, kp_d, kp_s) -> paste back
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Optional

import numpy as np

from livetalk.config import LiveTalkConfig
from livetalk.errors import DetectionFailure
from livetalk.face.analysis import LIVEPORTRAIT_DIR, FaceAnalysis
from livetalk.frame import frame_to_tensor, tensor_to_frame, validate_frame
from livetalk.geometry import (
    SamplingMode,
    crop_frame,
    paste_back,
    prepare_paste_back,
    resize_frame,
    rotation_matrix,
)
from livetalk.motion.mask import resolve_mask_template
from livetalk.motion.transfer import (
    apply_motion,
    apply_stitching,
    compose_driving_motion,
    motion_from_outputs,
    stitching_features,
    transform_keypoints,
)
from livetalk.motion.types import MotionInfo, PredictionState, SourceState
from livetalk.runtime import Model, ModelSpec, Precision, SessionFactory

if TYPE_CHECKING:
    from livetalk.pipeline.stream import OutputStream

logger = logging.getLogger(__name__)

APPEARANCE_EXTRACTOR = "appearance_feature_extractor"
MOTION_EXTRACTOR = "motion_extractor"
STITCHING = "stitching"
WARPING = "warping_spade"

MODEL_SPECS = {
    APPEARANCE_EXTRACTOR: ModelSpec(APPEARANCE_EXTRACTOR, LIVEPORTRAIT_DIR, model_class="liveportrait"),
    MOTION_EXTRACTOR: ModelSpec(MOTION_EXTRACTOR, LIVEPORTRAIT_DIR, model_class="liveportrait"),
    STITCHING: ModelSpec(STITCHING, LIVEPORTRAIT_DIR, model_class="liveportrait"),
    WARPING: ModelSpec(WARPING, LIVEPORTRAIT_DIR, precision=Precision.FP16, model_class="liveportrait"),
}

MAX_SOURCE_DIM = 1280
SOURCE_CROP_SIZE = 512
SOURCE_CROP_SCALE = 2.3
SOURCE_CROP_VY_RATIO = -0.125
MOTION_INPUT_SIZE = 256


class LivePortraitPipeline:
    """Animates a source portrait with the motion of driving frames.

    Args:
        face_analysis: Shared face analysis service.
        config: Shared configuration.
        session_factory: Passed to every :class:`Model`; mainly for tests.
        models: Pre-built models by name, overriding the defaults.
        mask_template: Crop-space paste-back mask. Resolved from the config
            when omitted.
    """

    def __init__(
        self,
        face_analysis: FaceAnalysis,
        config: Optional[LiveTalkConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        models: Optional[Dict[str, Model]] = None,
        mask_template: Optional[np.ndarray] = None,
    ) -> None:
        self.config = config or face_analysis.config
        self.face_analysis = face_analysis
        models = dict(models or {})
        for name, spec in MODEL_SPECS.items():
            if name not in models:
                models[name] = Model(spec, self.config, session_factory=session_factory)
        self._models = models
        if mask_template is None:
            mask_template = resolve_mask_template(
                self.config.mask_template_path, self.config.models_path
            )
        self.mask_template = mask_template

    # ── Sessions ──

    def _own_models(self) -> List[Model]:
        return [self._models[name] for name in MODEL_SPECS]

    def start_session(self) -> None:
        self.face_analysis.start_session()
        for model in self._own_models():
            model.start_session()

    def end_session(self) -> None:
        for model in self._own_models():
            model.end_session()
        self.face_analysis.end_session()

    @contextmanager
    def session(self) -> Iterator["LivePortraitPipeline"]:
        self.start_session()
        try:
            yield self
        finally:
            self.end_session()

    def close(self) -> None:
        for model in self._own_models():
            model.close()

    # ── Source ──

    @staticmethod
    def preprocess_source(frame: np.ndarray) -> np.ndarray:
        """Limit the long side to 1280 and crop to even dimensions."""
        height, width = frame.shape[:2]
        if max(height, width) > MAX_SOURCE_DIM:
            if height > width:
                new_h = MAX_SOURCE_DIM
                new_w = int(round(width * MAX_SOURCE_DIM / height))
            else:
                new_w = MAX_SOURCE_DIM
                new_h = int(round(height * MAX_SOURCE_DIM / width))
            frame = resize_frame(frame, new_w, new_h)
            height, width = new_h, new_w

        even_h = height - height % 2
        even_w = width - width % 2
        if even_h == 0 or even_w == 0:
            return frame
        if (even_h, even_w) != (height, width):
            frame = crop_frame(frame, 0, 0, even_w, even_h)
        return frame

    def process_source(self, frame: np.ndarray) -> SourceState:
        """Analyse the source portrait once.

        Raises:
            DetectionFailure: If the source has no face.
        """
        validate_frame(frame, "source frame")
        image = self.preprocess_source(frame)

        faces = self.face_analysis.detect(image)
        if not faces:
            raise DetectionFailure("No face detected in the source image")
        if len(faces) > 1:
            logger.warning("More than one face detected in the source image, using the largest")

        crop_info = self.face_analysis.get_crop_info(
            image, faces[0].landmarks106,
            SOURCE_CROP_SIZE, SOURCE_CROP_SCALE, SOURCE_CROP_VY_RATIO,
        )
        crop_info.image_crop_256 = resize_frame(
            crop_info.image_crop, MOTION_INPUT_SIZE, MOTION_INPUT_SIZE, SamplingMode.BILINEAR
        )

        motion = self.extract_motion(crop_info.image_crop_256)
        features = self.extract_features(crop_info.image_crop_256)
        keypoints = transform_keypoints(motion)

        height, width = image.shape[:2]
        paste_mask = prepare_paste_back(self.mask_template, crop_info.transform, width, height)
        logger.info("Source processed (%dx%d, %d keypoints)", width, height, motion.num_keypoints)
        return SourceState(
            frame=image,
            crop_info=crop_info,
            motion=motion,
            rotation=motion.rotation,
            features=features,
            keypoints=keypoints,
            paste_mask=paste_mask,
        )

    def extract_motion(self, frame256: np.ndarray) -> MotionInfo:
        """Pose, expression and keypoints of a 256x256 face image."""
        tensor = frame_to_tensor(frame256, 1.0 / 255.0)
        outputs = self._models[MOTION_EXTRACTOR].run([tensor])
        motion = motion_from_outputs(list(outputs.values()))
        motion.rotation = rotation_matrix(motion.pitch, motion.yaw, motion.roll)
        return motion

    def extract_features(self, frame256: np.ndarray) -> np.ndarray:
        """Appearance feature volume, owned by the caller."""
        tensor = frame_to_tensor(frame256, 1.0 / 255.0)
        outputs = self._models[APPEARANCE_EXTRACTOR].run_disposable([tensor])
        return next(iter(outputs.values()))

    # ── Driving ──

    def predict(
        self, source: SourceState, state: PredictionState, frame: np.ndarray
    ) -> np.ndarray:
        """Render the source crop in the pose/expression of *frame*.

        The first call tracks the face by full detection and snapshots the
        driving motion; later calls refine the previous landmarks.

        Raises:
            DetectionFailure: If the first driving frame has no face.
        """
        validate_frame(frame, "driving frame")
        frame0 = state.frame0
        if frame0:
            faces = self.face_analysis.detect(frame)
            if not faces:
                raise DetectionFailure("No face detected in the frame", state.frames_processed)
            if len(faces) > 1:
                logger.warning("More than one face detected in the driving frame, using the largest")
            landmarks = self.face_analysis.refine_landmarks(frame, faces[0].landmarks106)
        else:
            landmarks = self.face_analysis.refine_landmarks(frame, state.landmarks)
        state.landmarks = landmarks

        frame256 = resize_frame(frame, MOTION_INPUT_SIZE, MOTION_INPUT_SIZE)
        driving = self.extract_motion(frame256)
        if frame0:
            state.initial_motion = driving

        r_new, exp_new, scale_new, t_new = compose_driving_motion(
            source.motion, driving, state.initial_motion
        )
        kp_driving = apply_motion(source.motion.keypoints, r_new, exp_new, scale_new, t_new)
        kp_driving = self.stitch(source.keypoints, kp_driving)
        crop = self.warp(source.features, source.keypoints, kp_driving)
        state.frames_processed += 1
        return crop

    def stitch(self, kp_source: np.ndarray, kp_driving: np.ndarray) -> np.ndarray:
        outputs = self._models[STITCHING].run([stitching_features(kp_source, kp_driving)])
        return apply_stitching(kp_driving, next(iter(outputs.values())))

    def warp(
        self, features: np.ndarray, kp_source: np.ndarray, kp_driving: np.ndarray
    ) -> np.ndarray:
        """Render a crop from features and keypoints. Output range is [0, 1]."""
        outputs = self._models[WARPING].run([
            features,
            kp_driving.reshape(1, -1, 3),
            kp_source.reshape(1, -1, 3),
        ])
        return tensor_to_frame(next(iter(outputs.values())), 0.0, 1.0)

    def process_driving_frame(
        self, source: SourceState, state: PredictionState, frame: np.ndarray
    ) -> np.ndarray:
        """Animated full-size source frame for one driving frame."""
        crop = self.predict(source, state, frame)
        return paste_back(crop, source.crop_info.transform, source.frame, source.paste_mask)

    def generate(
        self,
        source_frame: np.ndarray,
        driving_frames: Iterable[np.ndarray],
        stream: "OutputStream",
    ) -> int:
        """Animate every driving frame into *stream*, in order.

        The stream is always finished; an error is recorded on it with
        :meth:`OutputStream.fail` and re-raised.

        Returns:
            Number of frames produced.
        """
        if hasattr(driving_frames, "__len__"):
            stream.total_expected_frames = len(driving_frames)

        produced = 0
        try:
            with self.session():
                source = self.process_source(source_frame)
                state = PredictionState()
                for frame in driving_frames:
                    start = time.perf_counter()
                    stream.put(self.process_driving_frame(source, state, frame))
                    produced += 1
                    logger.debug(
                        "Animated frame %d in %.1fms",
                        produced, (time.perf_counter() - start) * 1000,
                    )
        except Exception as e:
            stream.fail(e)
            raise
        stream.finish()
        logger.info("Portrait animation finished: %d frames", produced)
        return produced


__all__ = ["LivePortraitPipeline", "MODEL_SPECS"]
