"""Stateful wrapper around one ONNX inference session.

A :class:`Model` couples an ONNX file with a :class:`LoadPolicy`:

    eager                 loaded in the constructor, never released
    on_demand_keep_alive  loaded by the first start_session(), never released
    on_demand             loaded by start_session(), released by end_session()

Callers bracket groups of inferences with ``start_session()`` /
``end_session()`` (or ``with model.session():``). Outputs come in two
flavours:

    run()             results copied into scratch arrays owned by the model.
                      They are overwritten by the next run(); copy to keep.
    run_disposable()  fresh arrays owned by the caller.

Example:
    >>> model = Model(ModelSpec("stitching", "LivePortrait"), config)
    >>> with model.session():
    ...     delta = model.run([features])["output"]
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional,
    Sequence, Union,
)

import numpy as np

from livetalk.errors import InputError, ModelExecutionError, ModelNotLoadedError
from livetalk.runtime.buffers import BufferPool
from livetalk.runtime.policy import ExecutionProvider, LoadPolicy, Precision
from livetalk.runtime.providers import create_session, resolve_providers

if TYPE_CHECKING:
    from livetalk.config import LiveTalkConfig

logger = logging.getLogger(__name__)

# ONNX tensor type strings -> numpy dtypes
ONNX_DTYPES: Dict[str, Any] = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(bool)": np.bool_,
}


@dataclass(frozen=True)
class ModelSpec:
    """Identity of a model file.

    Attributes:
        name: File stem, e.g. "det_10g".
        sub_path: Directory under the models root, e.g. "LivePortrait".
        provider: Preferred accelerator.
        precision: Default precision; the config may override it per
            ``model_class``.
        model_class: Precision override key ("face", "liveportrait", "musetalk").
    """

    name: str
    sub_path: str
    provider: ExecutionProvider = ExecutionProvider.AUTO
    precision: Precision = Precision.FP32
    model_class: str = ""


SessionFactory = Callable[[ModelSpec, Precision], Any]


class Model:
    """One neural model with lazy loading and reusable outputs.

    Args:
        spec: Model identity.
        config: Supplies the models root, precision overrides, provider
            preference and the default load policy.
        policy: Explicit load policy; defaults to ``config.load_policy``.
        session_factory: ``(spec, precision) -> session``. The session must
            provide ``get_inputs()``, ``get_outputs()`` and
            ``run(output_names, feeds)`` like ``onnxruntime.InferenceSession``.
            Defaults to loading the ONNX file through onnxruntime.
    """

    def __init__(
        self,
        spec: ModelSpec,
        config: Optional["LiveTalkConfig"] = None,
        policy: Optional[LoadPolicy] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        if policy is None:
            policy = config.load_policy if config is not None else LoadPolicy.ON_DEMAND_KEEP_ALIVE
        self.spec = spec
        self._config = config
        self._policy = policy
        self._session_factory = session_factory or self._create_onnx_session
        self._session = None
        self._lock = threading.RLock()
        self._input_meta: List[Any] = []
        self._output_meta: List[Any] = []
        self._inputs: Dict[str, np.ndarray] = {}
        self._outputs = BufferPool()
        self.load_count = 0
        self.last_run_ms = 0.0

        if self._policy is LoadPolicy.EAGER:
            self._load()

    # ── Properties ──

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def policy(self) -> LoadPolicy:
        return self._policy

    @property
    def precision(self) -> Precision:
        if self._config is not None and self.spec.model_class:
            return self._config.precision_for(self.spec.model_class, self.spec.precision)
        return self.spec.precision

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def input_names(self) -> List[str]:
        self._require_loaded()
        return [meta.name for meta in self._input_meta]

    @property
    def output_names(self) -> List[str]:
        self._require_loaded()
        return [meta.name for meta in self._output_meta]

    # ── Lifecycle ──

    def start_session(self) -> None:
        """Make sure the model is loaded. No-op when it already is."""
        with self._lock:
            if self._session is None:
                self._load()

    def end_session(self) -> None:
        """Close a session. Releases the model only under the on-demand policy."""
        with self._lock:
            if self._policy.releases_on_end and self._session is not None:
                self._release()

    @contextmanager
    def session(self) -> Iterator["Model"]:
        """``start_session()`` / ``end_session()`` bracket."""
        self.start_session()
        try:
            yield self
        finally:
            self.end_session()

    def close(self) -> None:
        """Release the model regardless of policy."""
        with self._lock:
            if self._session is not None:
                self._release()

    # ── Inputs ──

    def bind_input(self, key: Union[int, str], value: np.ndarray) -> None:
        """Bind one input by position or by declared name."""
        with self._lock:
            self._require_loaded()
            if isinstance(key, int):
                if not 0 <= key < len(self._input_meta):
                    raise InputError(
                        f"Input index {key} out of range for {self.name} "
                        f"({len(self._input_meta)} inputs)"
                    )
                meta = self._input_meta[key]
            else:
                matches = [m for m in self._input_meta if m.name == key]
                if not matches:
                    raise InputError(f"{self.name} has no input named '{key}'")
                meta = matches[0]
            self._inputs[meta.name] = self._coerce(meta, value)

    def bind_inputs(self, values: Sequence[np.ndarray]) -> None:
        """Bind all inputs positionally; the count must match the model."""
        with self._lock:
            self._require_loaded()
            if len(values) != len(self._input_meta):
                raise InputError(
                    f"{self.name} expects {len(self._input_meta)} inputs, got {len(values)}"
                )
            for index, value in enumerate(values):
                self.bind_input(index, value)

    def clear_inputs(self) -> None:
        with self._lock:
            self._inputs.clear()

    # ── Execution ──

    def run(
        self,
        inputs: Union[Sequence[np.ndarray], Mapping[str, np.ndarray], None] = None,
    ) -> Dict[str, np.ndarray]:
        """Run and return outputs in model-owned scratch arrays.

        The arrays are reused by the next ``run()``.
        """
        with self._lock:
            results = self._execute(inputs)
            return {name: self._outputs.store(name, value) for name, value in results.items()}

    def run_disposable(
        self,
        inputs: Union[Sequence[np.ndarray], Mapping[str, np.ndarray], None] = None,
    ) -> Dict[str, np.ndarray]:
        """Run and return freshly allocated outputs owned by the caller."""
        with self._lock:
            results = self._execute(inputs)
            return {name: np.array(value, copy=True) for name, value in results.items()}

    def update_output_dimensions(self, name: str, dims: Sequence[int]) -> np.ndarray:
        """Resize the scratch buffer of output *name* ahead of a run."""
        with self._lock:
            self._require_loaded()
            meta = self._output_meta_by_name(name)
            dtype = ONNX_DTYPES.get(getattr(meta, "type", ""), np.float32)
            return self._outputs.get(name, dims, dtype)

    def get_output(self, name: str) -> np.ndarray:
        """Scratch buffer of output *name* (contents of the last ``run()``)."""
        with self._lock:
            self._require_loaded()
            self._output_meta_by_name(name)
            buf = self._outputs.peek(name)
            if buf is None:
                raise KeyError(f"No buffer allocated for output '{name}' of {self.name}")
            return buf

    # ── Internals ──

    def _execute(self, inputs) -> Dict[str, np.ndarray]:
        self._require_loaded()
        if inputs is not None:
            if isinstance(inputs, Mapping):
                for key, value in inputs.items():
                    self.bind_input(key, value)
            else:
                self.bind_inputs(list(inputs))
        if not self._inputs:
            raise InputError(f"No inputs loaded for {self.name}")

        output_names = [meta.name for meta in self._output_meta]
        start = time.perf_counter()
        try:
            values = self._session.run(output_names, dict(self._inputs))
        except Exception as exc:
            logger.error("Model %s failed: %s", self.name, exc)
            raise ModelExecutionError(self.name, exc) from exc
        self.last_run_ms = (time.perf_counter() - start) * 1000
        logger.debug("%s executed in %.2fms", self.name, self.last_run_ms)
        return dict(zip(output_names, values))

    def _load(self) -> None:
        start = time.perf_counter()
        session = self._session_factory(self.spec, self.precision)
        self._session = session
        self._input_meta = list(session.get_inputs())
        self._output_meta = list(session.get_outputs())
        self._preallocate_outputs()
        self.load_count += 1
        logger.info(
            "Loaded %s (%s, %s) in %.1fms",
            self.name, self.precision.value, self._policy.value,
            (time.perf_counter() - start) * 1000,
        )

    def _release(self) -> None:
        self._session = None
        self._inputs.clear()
        self._outputs.clear()
        self._input_meta = []
        self._output_meta = []
        logger.info("Released %s", self.name)

    def _preallocate_outputs(self) -> None:
        for meta in self._output_meta:
            dtype = ONNX_DTYPES.get(getattr(meta, "type", ""))
            if dtype is None:
                continue
            # Symbolic or unknown dims start at 1 and grow on first run
            shape = [d if isinstance(d, int) and d > 0 else 1 for d in (meta.shape or [])]
            self._outputs.get(meta.name, shape, dtype)

    def _create_onnx_session(self, spec: ModelSpec, precision: Precision):
        if self._config is None:
            raise ValueError(f"{spec.name}: a config is required to locate the model file")
        path = self._config.resolve_model_path(spec.name, spec.sub_path, precision)
        provider = spec.provider
        if provider is ExecutionProvider.AUTO:
            provider = self._config.provider
        return create_session(path, resolve_providers(provider, precision))

    def _require_loaded(self) -> None:
        if self._session is None:
            raise ModelNotLoadedError(
                f"Model {self.name} is not initialized. Call start_session() first."
            )

    def _output_meta_by_name(self, name: str):
        for meta in self._output_meta:
            if meta.name == name:
                return meta
        raise KeyError(f"{self.name} has no output named '{name}'")

    @staticmethod
    def _coerce(meta, value) -> np.ndarray:
        arr = np.asarray(value)
        dtype = ONNX_DTYPES.get(getattr(meta, "type", ""))
        if dtype is not None and arr.dtype != dtype:
            arr = arr.astype(dtype)
        return arr

    def __repr__(self) -> str:
        state = "loaded" if self.is_loaded else "unloaded"
        return f"Model({self.name!r}, {self._policy.value}, {state})"


__all__ = ["Model", "ModelSpec", "SessionFactory", "ONNX_DTYPES"]
