from livetalk.face.types import (
    CropInfo,
    DetectionCandidate,
    FaceClass,
    FaceDetectionResult,
    ParsingMode,
)
from livetalk.face.detector import AnchorCache, decode_detections, letterbox, nms
from livetalk.face.landmarks import fallback_bbox, get_crop_info, hybrid_bbox
from livetalk.face.analysis import FaceAnalysis

__all__ = [
    "CropInfo",
    "DetectionCandidate",
    "FaceClass",
    "FaceDetectionResult",
    "ParsingMode",
    "AnchorCache",
    "decode_detections",
    "letterbox",
    "nms",
    "fallback_bbox",
    "get_crop_info",
    "hybrid_bbox",
    "FaceAnalysis",
]
