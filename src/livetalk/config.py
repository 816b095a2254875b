"""Configuration for the livetalk pipelines.

Example:
    >>> from livetalk.config import LiveTalkConfig
    >>> config = LiveTalkConfig(models_dir="/opt/livetalk/models", memory_usage="optimal")
    >>> config.load_policy
    <LoadPolicy.ON_DEMAND: 'on_demand'>

    >>> config = LiveTalkConfig.from_yaml("livetalk.yaml")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

import yaml

from livetalk.paths import find_missing_models, get_models_dir, model_file
from livetalk.runtime.policy import (
    ExecutionProvider,
    LoadPolicy,
    MemoryUsage,
    Precision,
)

if TYPE_CHECKING:
    from livetalk.runtime.model import ModelSpec

SUPPORTED_VERSIONS = ("v15",)
MODEL_CLASSES = ("face", "liveportrait", "musetalk")


@dataclass
class LiveTalkConfig:
    """Settings shared by face analysis, portrait animation and lip sync.

    Attributes:
        models_dir: Root of the model tree. ``None`` resolves through
            :func:`livetalk.paths.get_models_dir`.
        memory_usage: Memory mode, selects the model load policy.
        provider: Preferred accelerator for models that allow one.
        precision: Per model class ("face", "liveportrait", "musetalk")
            precision override. Models keep their own default when absent.
        version: Crop geometry version. Only "v15" exists.
        extra_margin: Extra pixels added below the face box in v15.
        fps: Output frame rate of lip sync.
        parsing_mode: Blend mask mode ("jaw", "neck" or "raw").
        bbox_shift: Vertical shift applied to avatar face boxes.
        mask_template_path: Paste-back mask image for portrait animation.
        log_level: Level applied to the ``livetalk`` logger.
    """

    models_dir: Optional[str] = None
    memory_usage: MemoryUsage = MemoryUsage.BALANCED
    provider: ExecutionProvider = ExecutionProvider.AUTO
    precision: Dict[str, Precision] = field(default_factory=dict)
    version: str = "v15"
    extra_margin: int = 10
    fps: int = 25
    parsing_mode: str = "jaw"
    bbox_shift: int = 0
    mask_template_path: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if isinstance(self.memory_usage, str) and not isinstance(self.memory_usage, MemoryUsage):
            self.memory_usage = MemoryUsage.from_string(self.memory_usage)
        if isinstance(self.provider, str) and not isinstance(self.provider, ExecutionProvider):
            self.provider = ExecutionProvider.from_string(self.provider)
        precision = {}
        for model_class, value in self.precision.items():
            if model_class not in MODEL_CLASSES:
                raise ValueError(
                    f"Unknown model class: {model_class}. Use one of {MODEL_CLASSES}."
                )
            precision[model_class] = (
                value if isinstance(value, Precision) else Precision.from_string(value)
            )
        self.precision = precision
        if self.version not in SUPPORTED_VERSIONS:
            raise ValueError(
                f"Unsupported version: {self.version}. Use one of {SUPPORTED_VERSIONS}."
            )
        if self.extra_margin < 0:
            raise ValueError("extra_margin must be >= 0")

    @property
    def load_policy(self) -> LoadPolicy:
        return self.memory_usage.load_policy

    @property
    def models_path(self) -> Path:
        if self.models_dir:
            return Path(self.models_dir)
        return get_models_dir()

    def precision_for(self, model_class: str, default: Precision) -> Precision:
        """Return the configured precision of a model class, or *default*."""
        return self.precision.get(model_class, default)

    def resolve_model_path(
        self, name: str, sub_path: str, precision: Precision
    ) -> Path:
        """Map a model identity onto its ONNX file.

        ``{models_dir}/{sub_path}/{name}{_precision}.onnx``

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = model_file(self.models_path, sub_path, name, precision)
        if not path.is_file():
            raise FileNotFoundError(f"{name} model not found: {path}")
        return path

    def spec_path(self, spec: "ModelSpec") -> Path:
        """File a spec resolves to under this config, present or not."""
        precision = self.precision_for(spec.model_class, spec.precision)
        return model_file(self.models_path, spec.sub_path, spec.name, precision)

    def missing_models(self, specs: Iterable["ModelSpec"]) -> List[Path]:
        """Files of *specs* absent from the model tree, honouring precision overrides."""
        entries = [
            (s.sub_path, s.name, self.precision_for(s.model_class, s.precision))
            for s in specs
        ]
        return find_missing_models(self.models_path, entries)

    def apply_logging(self) -> None:
        """Set the level of the ``livetalk`` logger from ``log_level``."""
        logging.getLogger("livetalk").setLevel(self.log_level.upper())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiveTalkConfig":
        """Create a config from a dictionary (e.g., loaded from YAML).

        Unknown keys are ignored. Enum valued keys accept their string names.
        """
        return cls(
            models_dir=data.get("models_dir"),
            memory_usage=MemoryUsage.from_string(data.get("memory_usage", "balanced")),
            provider=ExecutionProvider.from_string(data.get("provider", "auto")),
            precision=dict(data.get("precision", {}) or {}),
            version=data.get("version", "v15"),
            extra_margin=int(data.get("extra_margin", 10)),
            fps=int(data.get("fps", 25)),
            parsing_mode=data.get("parsing_mode", "jaw"),
            bbox_shift=int(data.get("bbox_shift", 0)),
            mask_template_path=data.get("mask_template_path"),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "LiveTalkConfig":
        """Load a config from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML friendly dictionary."""
        return {
            "models_dir": self.models_dir,
            "memory_usage": self.memory_usage.value,
            "provider": self.provider.value,
            "precision": {k: v.value for k, v in self.precision.items()},
            "version": self.version,
            "extra_margin": self.extra_margin,
            "fps": self.fps,
            "parsing_mode": self.parsing_mode,
            "bbox_shift": self.bbox_shift,
            "mask_template_path": self.mask_template_path,
            "log_level": self.log_level,
        }


__all__ = ["LiveTalkConfig", "SUPPORTED_VERSIONS", "MODEL_CLASSES"]
