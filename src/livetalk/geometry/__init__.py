from livetalk.geometry.transforms import (
    transform_points,
    to_homogeneous,
    invert_3x3,
    invert_affine,
    parse_pt2_from_pt106,
    parse_pt2_from_ptx,
    parse_rect_from_landmark,
    estimate_similarity_transform,
    face_align,
    expand_bounding_box,
)
from livetalk.geometry.rotation import rotation_matrix
from livetalk.geometry.image import (
    SamplingMode,
    affine_transform,
    crop_frame,
    resize_frame,
    alpha_blend,
    paste_back,
    prepare_paste_back,
)

__all__ = [
    "transform_points",
    "to_homogeneous",
    "invert_3x3",
    "invert_affine",
    "parse_pt2_from_pt106",
    "parse_pt2_from_ptx",
    "parse_rect_from_landmark",
    "estimate_similarity_transform",
    "face_align",
    "expand_bounding_box",
    "rotation_matrix",
    "SamplingMode",
    "affine_transform",
    "crop_frame",
    "resize_frame",
    "alpha_blend",
    "paste_back",
    "prepare_paste_back",
]
