"""Exception types raised by the livetalk core.

Nothing in the core retries. A failure either aborts the current call
(input and geometry errors), the current session (model execution) or is
reported as a warning by the caller (multiple faces).
"""

from __future__ import annotations

from typing import Optional


class LiveTalkError(Exception):
    """Base class for all livetalk errors."""


class InputError(LiveTalkError, ValueError):
    """Raised for null, empty or wrongly shaped inputs."""


class DetectionFailure(LiveTalkError):
    """Raised when no face can be found where one is required.

    Attributes:
        frame_index: Index of the offending frame in a sequence, if known.
    """

    def __init__(self, message: str, frame_index: Optional[int] = None):
        self.frame_index = frame_index
        if frame_index is not None:
            message = f"{message} (frame {frame_index})"
        super().__init__(message)


class GeometryError(LiveTalkError, ValueError):
    """Raised for degenerate boxes and singular transforms.

    A zero or negative sized box reaching a crop means detection produced
    garbage upstream, so it is never clamped away silently.
    """


class ModelNotLoadedError(LiveTalkError, RuntimeError):
    """Raised when a model is run outside of a session."""


class ModelExecutionError(LiveTalkError, RuntimeError):
    """Raised when an inference call fails.

    Wraps the original exception with the name of the model that raised
    it. The session that hit it should be torn down by the caller.

    Attributes:
        model_name: Name of the model that failed.
        original_error: The underlying exception.
    """

    def __init__(self, model_name: str, original_error: Exception):
        self.model_name = model_name
        self.original_error = original_error
        super().__init__(
            f"Model execution failed for {model_name}: {original_error}"
        )


__all__ = [
    "LiveTalkError",
    "InputError",
    "DetectionFailure",
    "GeometryError",
    "ModelNotLoadedError",
    "ModelExecutionError",
]
