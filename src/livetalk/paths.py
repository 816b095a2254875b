"""Model tree layout.

Each model is one ONNX file named after its precision::

    {models_dir}/
        LivePortrait/   det_10g.onnx  2d106det.onnx  landmark.onnx
                        appearance_feature_extractor.onnx  motion_extractor.onnx
                        stitching.onnx  warping_spade.onnx
        MuseTalk/       unet_fp16.onnx  vae_encoder_fp16.onnx  vae_decoder_fp16.onnx
                        positional_encoding.onnx  whisper_encoder.onnx
                        face_parsing.onnx
        mask_template.png   (optional)

Large graphs may carry their weights beside them as ``{stem}.onnx.data``.

The tree root defaults to ``~/.livetalk/models``; ``LIVETALK_MODELS_DIR``
or ``LIVETALK_HOME`` override it.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path
from typing import Iterable, List, Tuple, Union

from livetalk.runtime.policy import Precision

MODEL_SUFFIX = ".onnx"
EXTERNAL_DATA_SUFFIX = ".onnx.data"
BUNDLE_DIR = Path("LiveTalk") / "models"

# (sub_path, name, precision)
ModelEntry = Tuple[str, str, Precision]


def get_home_dir() -> Path:
    """``LIVETALK_HOME``, or ``~/.livetalk``. Not created here."""
    home = os.environ.get("LIVETALK_HOME")
    return Path(home) if home else Path.home() / ".livetalk"


def get_models_dir() -> Path:
    """Return the root of the model tree.

    Resolution order:
        1. ``LIVETALK_MODELS_DIR`` (absolute or relative to CWD).
        2. ``{home}/models``.

    The directory is not created; missing files are reported by
    :func:`find_missing_models`. When the default root is absent but a
    ``{CWD}/LiveTalk/models`` bundle exists, a :class:`UserWarning` points
    at it.
    """
    env_val = os.environ.get("LIVETALK_MODELS_DIR")
    if env_val:
        models_dir = Path(env_val)
        return models_dir if models_dir.is_absolute() else Path.cwd() / models_dir

    models_dir = get_home_dir() / "models"
    bundled = Path.cwd() / BUNDLE_DIR
    if bundled.is_dir() and not models_dir.is_dir():
        warnings.warn(
            f"No model tree at {models_dir}, but {bundled} exists. "
            f"Set LIVETALK_MODELS_DIR={bundled} to use it.",
            UserWarning,
            stacklevel=2,
        )
    return models_dir


def model_filename(name: str, precision: Precision) -> str:
    """``det_10g.onnx``, ``unet_fp16.onnx``, ``landmark_int8.onnx``."""
    return f"{name}{precision.file_suffix}{MODEL_SUFFIX}"


def model_file(
    models_dir: Union[str, Path], sub_path: str, name: str, precision: Precision
) -> Path:
    return Path(models_dir) / sub_path / model_filename(name, precision)


def external_data_file(model_path: Union[str, Path]) -> Path:
    """Weights file stored next to a large graph (``unet_fp16.onnx.data``)."""
    path = Path(model_path)
    return path.with_name(path.stem + EXTERNAL_DATA_SUFFIX)


def find_missing_models(
    models_dir: Union[str, Path], entries: Iterable[ModelEntry]
) -> List[Path]:
    """Return the files of *entries* that are absent, in entry order."""
    return [
        path
        for path in (model_file(models_dir, *entry) for entry in entries)
        if not path.is_file()
    ]


__all__ = [
    "ModelEntry",
    "get_home_dir",
    "get_models_dir",
    "model_filename",
    "model_file",
    "external_data_file",
    "find_missing_models",
]
