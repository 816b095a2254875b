"""Reusable named arrays for hot inference loops."""

from __future__ import annotations

from typing import Dict, Iterator, Optional, Sequence

import numpy as np


class BufferPool:
    """Named scratch arrays, sized by first use.

    ``get`` hands back the same array for the same key as long as shape and
    dtype match, and allocates a new one when they change. Whoever owns the
    pool owns the arrays: callers that keep data past the next ``get``/
    ``store`` of that key must copy it.

    Example:
        >>> pool = BufferPool()
        >>> a = pool.get("latents", (1, 8, 32, 32))
        >>> a is pool.get("latents", (1, 8, 32, 32))
        True
    """

    def __init__(self) -> None:
        self._buffers: Dict[str, np.ndarray] = {}
        self.allocations = 0

    def get(self, key: str, shape: Sequence[int], dtype=np.float32) -> np.ndarray:
        """Return the buffer for *key*, (re)allocating it on shape/dtype change."""
        shape = tuple(int(d) for d in shape)
        dtype = np.dtype(dtype)
        buf = self._buffers.get(key)
        if buf is None or buf.shape != shape or buf.dtype != dtype:
            buf = np.zeros(shape, dtype=dtype)
            self._buffers[key] = buf
            self.allocations += 1
        return buf

    def store(self, key: str, value: np.ndarray) -> np.ndarray:
        """Copy *value* into the buffer for *key* and return that buffer."""
        buf = self.get(key, value.shape, value.dtype)
        np.copyto(buf, value)
        return buf

    def peek(self, key: str) -> Optional[np.ndarray]:
        return self._buffers.get(key)

    def clear(self) -> None:
        self._buffers.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def __iter__(self) -> Iterator[str]:
        return iter(self._buffers)


__all__ = ["BufferPool"]
