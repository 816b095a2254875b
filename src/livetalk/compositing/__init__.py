"""Mask preparation and blending of generated faces into avatar frames."""

from livetalk.compositing.segmentation import (
    SegmentationData,
    adjust_face_bbox,
    apply_upper_boundary_ratio,
    blur_kernel_size,
    blur_mask,
    create_full_mask,
    create_small_mask,
    crop_region,
    precompute_segmentation,
)
from livetalk.compositing.blending import blend_face_with_original, composite_with_mask

__all__ = [
    "SegmentationData",
    "adjust_face_bbox",
    "apply_upper_boundary_ratio",
    "blur_kernel_size",
    "blur_mask",
    "create_full_mask",
    "create_small_mask",
    "crop_region",
    "precompute_segmentation",
    "blend_face_with_original",
    "composite_with_mask",
]
