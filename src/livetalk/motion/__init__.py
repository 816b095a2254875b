"""Portrait animation by implicit keypoint motion transfer.

Example:
    >>> pipeline = LivePortraitPipeline(FaceAnalysis(config), config)
    >>> with pipeline.session():
    ...     source = pipeline.process_source(portrait)
    ...     state = PredictionState()
    ...     frames = [pipeline.process_driving_frame(source, state, f) for f in video]
"""

from livetalk.motion.types import MotionInfo, PredictionState, SourceState
from livetalk.motion.transfer import (
    apply_motion,
    apply_stitching,
    compose_driving_motion,
    headpose_from_logits,
    transform_keypoints,
)
from livetalk.motion.mask import default_mask_template, load_mask_template
from livetalk.motion.liveportrait import LivePortraitPipeline

__all__ = [
    "MotionInfo",
    "PredictionState",
    "SourceState",
    "apply_motion",
    "apply_stitching",
    "compose_driving_motion",
    "headpose_from_logits",
    "transform_keypoints",
    "default_mask_template",
    "load_mask_template",
    "LivePortraitPipeline",
]
