"""Load policies and the model settings they are derived from.

Memory usage modes are configuration presets; each one selects how long
model sessions stay resident:

    quality / performance -> eager (loaded at construction, never released)
    balanced              -> on_demand_keep_alive (loaded on first session)
    optimal               -> on_demand (released after every session)
"""

from __future__ import annotations

from enum import Enum


class LoadPolicy(str, Enum):
    """When a model is loaded and when it is released."""

    EAGER = "eager"
    ON_DEMAND_KEEP_ALIVE = "on_demand_keep_alive"
    ON_DEMAND = "on_demand"

    @property
    def releases_on_end(self) -> bool:
        return self is LoadPolicy.ON_DEMAND


class MemoryUsage(str, Enum):
    """User facing memory mode."""

    QUALITY = "quality"
    PERFORMANCE = "performance"
    BALANCED = "balanced"
    OPTIMAL = "optimal"

    @property
    def load_policy(self) -> LoadPolicy:
        if self in (MemoryUsage.QUALITY, MemoryUsage.PERFORMANCE):
            return LoadPolicy.EAGER
        if self is MemoryUsage.BALANCED:
            return LoadPolicy.ON_DEMAND_KEEP_ALIVE
        return LoadPolicy.ON_DEMAND

    @classmethod
    def from_string(cls, name: str) -> "MemoryUsage":
        """Parse a memory usage name (case-insensitive).

        Raises:
            ValueError: If name is unknown.
        """
        try:
            return cls(name.lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(
                f"Unknown memory usage: {name}. Use one of: {valid}."
            ) from None


class Precision(str, Enum):
    """Weight precision of a model file."""

    FP32 = "fp32"
    FP16 = "fp16"
    INT8 = "int8"

    @property
    def file_suffix(self) -> str:
        # det_10g.onnx, unet_fp16.onnx, ...
        return "" if self is Precision.FP32 else f"_{self.value}"

    @classmethod
    def from_string(cls, name: str) -> "Precision":
        try:
            return cls(name.lower())
        except ValueError:
            raise ValueError(
                f"Unknown precision: {name}. Use 'fp32', 'fp16' or 'int8'."
            ) from None


class ExecutionProvider(str, Enum):
    """Preferred accelerator for a model."""

    AUTO = "auto"
    CUDA = "cuda"
    CPU = "cpu"

    @classmethod
    def from_string(cls, name: str) -> "ExecutionProvider":
        try:
            return cls(name.lower())
        except ValueError:
            raise ValueError(
                f"Unknown execution provider: {name}. Use 'auto', 'cuda' or 'cpu'."
            ) from None


__all__ = ["LoadPolicy", "MemoryUsage", "Precision", "ExecutionProvider"]
