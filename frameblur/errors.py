"""Error taxonomy shared by the frame processing pipeline."""

from __future__ import annotations


class FrameblurError(Exception):
    """Base class for all pipeline errors."""


class CapabilityUnavailable(FrameblurError):
    """A backend probe rejected a configuration. Non-fatal, triggers fallback."""


class ConfigurationError(FrameblurError):
    """Bad model, encoder or pipeline configuration."""


class ModelInitError(FrameblurError):
    """The detection model failed to initialize on every execution provider."""


class CancelledByUser(FrameblurError):
    """Raised when a stop flag or explicit abort interrupts work."""

    def __init__(self, reason: str = "user abort"):
        super().__init__(reason)
        self.reason = reason


class DecodeError(FrameblurError):
    """Decoding failed after a decoder configuration was accepted."""


class EncodeError(FrameblurError):
    """Encoding failed after an encoder configuration was accepted."""


class DetectionError(FrameblurError):
    """Inference failed inside the detection worker."""


class InvalidStateError(FrameblurError):
    """An operation was called in a state that does not allow it."""


class BufferMovedError(FrameblurError):
    """A frame buffer was accessed while its pixels were owned elsewhere."""


class MediaToolError(FrameblurError):
    """The external media tool exited unsuccessfully."""

    def __init__(self, message: str, exit_code: int | None = None,
                 log_tail: list[str] | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.log_tail = log_tail or []


class PipelineError(FrameblurError):
    """A run failed. Carries the stage and, where known, the frame index."""

    def __init__(self, stage: str, frame_index: int | None, cause: BaseException):
        where = f"stage={stage}"
        if frame_index is not None:
            where += f" frame={frame_index}"
        super().__init__(f"processing failed ({where}): {cause}")
        self.stage = stage
        self.frame_index = frame_index
        self.cause = cause
