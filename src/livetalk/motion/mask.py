"""Paste-back mask templates for portrait animation.

The template lives in crop space (512x512): white where the generated face
replaces the source, feathered towards black at the crop border.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)

TEMPLATE_SIZE = 512
TEMPLATE_FILENAME = "mask_template.png"


def default_mask_template(size: int = TEMPLATE_SIZE) -> np.ndarray:
    """Feathered ellipse covering the centre of a ``size`` x ``size`` crop."""
    mask = np.zeros((size, size), dtype=np.uint8)
    center = (size // 2, size // 2)
    axes = (int(size * 0.38), int(size * 0.44))
    cv2.ellipse(mask, center, axes, 0, 0, 360, 255, thickness=-1)
    # Odd kernel of ~1/8 of the crop
    k = (size // 8) | 1
    return cv2.GaussianBlur(mask, (k, k), 0)


def load_mask_template(path: Union[str, Path], size: int = TEMPLATE_SIZE) -> np.ndarray:
    """Read a grayscale template image and resize it to ``size``.

    Raises:
        FileNotFoundError: If the file is missing or not an image.
    """
    mask = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if mask is None:
        raise FileNotFoundError(f"Mask template not found or unreadable: {path}")
    if mask.shape != (size, size):
        mask = cv2.resize(mask, (size, size), interpolation=cv2.INTER_LINEAR)
    return mask


def resolve_mask_template(
    configured: Optional[Union[str, Path]], models_dir: Optional[Path] = None
) -> np.ndarray:
    """Template from the configured path, then the models root, then the default."""
    if configured:
        return load_mask_template(configured)
    if models_dir is not None:
        candidate = Path(models_dir) / TEMPLATE_FILENAME
        if candidate.exists():
            logger.debug("Using mask template %s", candidate)
            return load_mask_template(candidate)
    logger.warning("No %s found, using the default elliptical mask", TEMPLATE_FILENAME)
    return default_mask_template()


__all__ = [
    "TEMPLATE_SIZE",
    "default_mask_template",
    "load_mask_template",
    "resolve_mask_template",
]
