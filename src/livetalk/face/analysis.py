"""Face analysis service: detection, landmarks, refinement and parsing.

One instance owns the four face models and is shared by the portrait
animation and lip-sync pipelines. It is created explicitly and passed to
whoever needs it.

Example:
    >>> analysis = FaceAnalysis(config)
    >>> with analysis.analysis_session():
    ...     faces = analysis.detect(frame)
    >>> faces[0].landmarks106.shape
    (106, 2)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from livetalk.config import LiveTalkConfig
from livetalk.errors import GeometryError
from livetalk.face import detector, parsing
from livetalk.face.landmarks import (
    BBox,
    LANDMARK_INPUT_SIZE,
    REFINER_INPUT_SIZE,
    REFINER_SCALE,
    REFINER_VY_RATIO,
    avatar_bbox,
    decode_landmarks_106,
    decode_refined_landmarks,
    get_crop_info,
    landmark_alignment,
    landmark_ranges,
)
from livetalk.face.types import CropInfo, FaceDetectionResult, ParsingMode
from livetalk.frame import frame_to_tensor, validate_frame
from livetalk.geometry import SamplingMode, affine_transform, crop_frame, resize_frame
from livetalk.runtime import Model, ModelSpec, SessionFactory

logger = logging.getLogger(__name__)

LIVEPORTRAIT_DIR = "LivePortrait"
MUSETALK_DIR = "MuseTalk"

DETECTOR = "det_10g"
LANDMARK_106 = "2d106det"
LANDMARK_REFINER = "landmark"
FACE_PARSING = "face_parsing"

MODEL_SPECS = {
    DETECTOR: ModelSpec(DETECTOR, LIVEPORTRAIT_DIR, model_class="face"),
    LANDMARK_106: ModelSpec(LANDMARK_106, LIVEPORTRAIT_DIR, model_class="face"),
    LANDMARK_REFINER: ModelSpec(LANDMARK_REFINER, LIVEPORTRAIT_DIR, model_class="face"),
    FACE_PARSING: ModelSpec(FACE_PARSING, MUSETALK_DIR, model_class="face"),
}

CROP_SIZE = 256


class FaceAnalysis:
    """Detects faces, extracts 106/203-point landmarks and parses face regions.

    Args:
        config: Shared configuration.
        session_factory: Passed to every :class:`Model`; mainly for tests.
        models: Pre-built models by name, overriding the defaults.
    """

    def __init__(
        self,
        config: Optional[LiveTalkConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        models: Optional[Dict[str, Model]] = None,
    ) -> None:
        self.config = config or LiveTalkConfig()
        models = dict(models or {})
        for name, spec in MODEL_SPECS.items():
            if name not in models:
                models[name] = Model(spec, self.config, session_factory=session_factory)
        self._models = models
        self._anchors = detector.AnchorCache()
        logger.info("FaceAnalysis ready (%s)", self.config.load_policy.value)

    # ── Sessions ──

    @property
    def models(self) -> Dict[str, Model]:
        return dict(self._models)

    def _analysis_models(self) -> List[Model]:
        return [self._models[DETECTOR], self._models[LANDMARK_106], self._models[LANDMARK_REFINER]]

    def start_session(self) -> None:
        """Load detector, 106-point model and refiner."""
        for model in self._analysis_models():
            model.start_session()

    def end_session(self) -> None:
        for model in self._analysis_models():
            model.end_session()

    def start_parsing_session(self) -> None:
        self._models[FACE_PARSING].start_session()

    def end_parsing_session(self) -> None:
        self._models[FACE_PARSING].end_session()

    @contextmanager
    def analysis_session(self) -> Iterator["FaceAnalysis"]:
        self.start_session()
        try:
            yield self
        finally:
            self.end_session()

    @contextmanager
    def parsing_session(self) -> Iterator["FaceAnalysis"]:
        self.start_parsing_session()
        try:
            yield self
        finally:
            self.end_parsing_session()

    def close(self) -> None:
        for model in self._models.values():
            model.close()
        self._anchors.clear()

    # ── Detection ──

    def detect_faces(self, frame: np.ndarray) -> List[FaceDetectionResult]:
        """SCRFD detections in score order, without 106-point landmarks.

        Raises:
            InputError: If *frame* is not a valid frame.
            GeometryError: If a kept detection has a degenerate box.
        """
        validate_frame(frame)
        canvas, det_scale = detector.letterbox(frame)
        outputs = self._models[DETECTOR].run_disposable([detector.preprocess(canvas)])
        try:
            candidates = detector.decode_detections(
                list(outputs.values()), det_scale, anchors=self._anchors
            )
        finally:
            self._anchors.clear()

        faces = []
        for cand in detector.nms(candidates):
            x1, y1, x2, y2 = cand.bbox
            if x2 - x1 <= 0 or y2 - y1 <= 0:
                raise GeometryError(f"Detector produced a degenerate box: {tuple(cand.bbox)}")
            faces.append(FaceDetectionResult(bbox=cand.bbox, kps5=cand.kps, score=cand.score))
        logger.debug("Detected %d face(s)", len(faces))
        return faces

    def detect(self, frame: np.ndarray) -> List[FaceDetectionResult]:
        """Detect faces with 106-point landmarks, largest area first."""
        faces = self.detect_faces(frame)
        for face in faces:
            face.landmarks106 = self.get_landmarks(frame, face)
        faces.sort(key=lambda f: f.area, reverse=True)
        return faces

    analyze_faces = detect

    # ── Landmarks ──

    def get_landmarks(self, frame: np.ndarray, face: FaceDetectionResult) -> np.ndarray:
        """106-point landmarks of *face* in original image pixels."""
        m_align = landmark_alignment(face.bbox, LANDMARK_INPUT_SIZE)
        aligned = affine_transform(frame, m_align, LANDMARK_INPUT_SIZE, LANDMARK_INPUT_SIZE)
        outputs = self._models[LANDMARK_106].run([frame_to_tensor(aligned)])
        raw = next(iter(outputs.values()))
        return decode_landmarks_106(raw, m_align, LANDMARK_INPUT_SIZE)

    def refine_landmarks(self, frame: np.ndarray, landmarks) -> np.ndarray:
        """Refined landmarks from a 224 crop around *landmarks*.

        The refiner's third output holds the points, normalised to the crop.
        """
        crop_info = self.get_crop_info(
            frame, landmarks, REFINER_INPUT_SIZE, REFINER_SCALE, REFINER_VY_RATIO
        )
        tensor = frame_to_tensor(crop_info.image_crop, 1.0 / 255.0)
        outputs = list(self._models[LANDMARK_REFINER].run([tensor]).values())
        return decode_refined_landmarks(outputs[2], crop_info, REFINER_INPUT_SIZE)

    def get_crop_info(
        self, frame: np.ndarray, landmarks, dsize: int, scale: float, vy_ratio: float
    ) -> CropInfo:
        return get_crop_info(frame, landmarks, dsize, scale, vy_ratio)

    # ── Parsing ──

    def generate_parsing_mask(
        self, frame: np.ndarray, mode: Union[ParsingMode, str] = ParsingMode.JAW
    ) -> np.ndarray:
        """Smoothed 0..255 mask of the mode's face classes, at frame size."""
        validate_frame(frame)
        if not isinstance(mode, ParsingMode):
            mode = ParsingMode.from_string(mode)
        outputs = self._models[FACE_PARSING].run([parsing.preprocess(frame)])
        class_map = parsing.class_map_from_logits(next(iter(outputs.values())))
        height, width = frame.shape[:2]
        mask = parsing.mask_from_class_map(class_map, mode, width, height)
        return parsing.smooth_mask(mask, mode)

    # ── Avatar boxes ──

    def get_landmark_and_bbox(
        self, frames: Sequence[np.ndarray], bbox_shift: int = 0
    ) -> Tuple[List[Optional[BBox]], Tuple[float, float]]:
        """Per-frame avatar face boxes.

        Returns:
            (bboxes, (range_minus, range_plus)). ``bboxes`` is aligned with
            *frames*; entries are ``None`` for frames without a face. The
            ranges are averaged over frames with landmarks.
        """
        bboxes: List[Optional[BBox]] = []
        minus, plus = [], []
        for idx, frame in enumerate(frames):
            faces = self.detect_faces(frame)
            if not faces:
                height, width = frame.shape[:2]
                logger.warning("No face detected in image %d (%dx%d)", idx, width, height)
                bboxes.append(None)
                continue

            face = faces[0]
            if len(faces) > 1:
                logger.warning(
                    "%d faces detected in image %d, using the best scoring one (%.3f)",
                    len(faces), idx, face.score,
                )
            landmarks = self.get_landmarks(frame, face)
            if landmarks is not None and len(landmarks) >= 106:
                r_minus, r_plus = landmark_ranges(landmarks)
                minus.append(r_minus)
                plus.append(r_plus)
            bboxes.append(avatar_bbox(landmarks, face.bbox, bbox_shift, idx))

        ranges = (
            float(np.mean(minus)) if minus else 0.0,
            float(np.mean(plus)) if plus else 0.0,
        )
        logger.info(
            "Avatar boxes: %d/%d frames with a face",
            sum(b is not None for b in bboxes), len(frames),
        )
        return bboxes, ranges

    def crop_face_region(
        self,
        frame: np.ndarray,
        bbox: Sequence[float],
        version: Optional[str] = None,
        extra_margin: Optional[int] = None,
    ) -> np.ndarray:
        """Cropped face resized to 256x256 with Lanczos.

        v15 extends the box ``extra_margin`` pixels down, clamped to the frame.
        """
        version = version or self.config.version
        extra_margin = self.config.extra_margin if extra_margin is None else extra_margin
        x1, y1, x2, y2 = (int(v) for v in bbox)
        if version == "v15":
            y2 = min(y2 + extra_margin, frame.shape[0])
        crop = crop_frame(frame, x1, y1, x2 - x1, y2 - y1)
        return resize_frame(crop, CROP_SIZE, CROP_SIZE, SamplingMode.LANCZOS)


__all__ = ["FaceAnalysis", "MODEL_SPECS"]
