"""ONNX Runtime provider selection and session creation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List

from livetalk.runtime.policy import ExecutionProvider, Precision

logger = logging.getLogger(__name__)

CUDA = "CUDAExecutionProvider"
COREML = "CoreMLExecutionProvider"
CPU = "CPUExecutionProvider"


def resolve_providers(
    preference: ExecutionProvider = ExecutionProvider.AUTO,
    precision: Precision = Precision.FP32,
) -> List[str]:
    """Ordered provider list for a model.

    INT8 models and an explicit CPU preference run on CPU only. Otherwise
    CUDA (then CoreML for ``auto``) is used when available, always with CPU
    as the last resort.
    """
    import onnxruntime as ort

    if precision is Precision.INT8 or preference is ExecutionProvider.CPU:
        return [CPU]

    available = ort.get_available_providers()
    providers = []
    if CUDA in available:
        providers.append(CUDA)
    elif preference is ExecutionProvider.CUDA:
        logger.warning("CUDAExecutionProvider not available, falling back to CPU")
    if preference is ExecutionProvider.AUTO and COREML in available:
        providers.append(COREML)
    providers.append(CPU)
    return providers


def create_session(model_path: Path, providers: List[str]) -> Any:
    """Create an ``onnxruntime.InferenceSession`` for *model_path*."""
    import onnxruntime as ort

    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    session = ort.InferenceSession(str(model_path), options, providers=providers)
    logger.debug(
        "Session for %s using %s", model_path.name, session.get_providers()[0]
    )
    return session


__all__ = ["resolve_providers", "create_session"]
