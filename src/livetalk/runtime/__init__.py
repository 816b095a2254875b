"""Tensor model runtime.

Example:
    >>> from livetalk.runtime import Model, ModelSpec
    >>> model = Model(ModelSpec("det_10g", "LivePortrait", model_class="face"), config)
    >>> with model.session():
    ...     outputs = model.run([tensor])
"""

from livetalk.runtime.policy import (
    ExecutionProvider,
    LoadPolicy,
    MemoryUsage,
    Precision,
)
from livetalk.runtime.buffers import BufferPool
from livetalk.runtime.providers import create_session, resolve_providers
from livetalk.runtime.model import Model, ModelSpec, SessionFactory

__all__ = [
    "ExecutionProvider",
    "LoadPolicy",
    "MemoryUsage",
    "Precision",
    "BufferPool",
    "create_session",
    "resolve_providers",
    "Model",
    "ModelSpec",
    "SessionFactory",
]
