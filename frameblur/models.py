"""Shared data models for the frame processing pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Optional

import numpy as np

from frameblur.errors import BufferMovedError


@dataclass(frozen=True)
class Metadata:
    """Video properties shared by every frame of one loaded file."""
    width: int
    height: int
    pix_fmt: str
    fps_ratio: str            # exact rational, e.g. "30000/1001"
    fps: float
    duration: float           # seconds

    @classmethod
    def from_ratio(cls, width: int, height: int, pix_fmt: str,
                   fps_ratio: str, duration: float) -> "Metadata":
        """Build metadata deriving ``fps`` from the rational frame rate."""
        ratio = Fraction(fps_ratio)
        return cls(
            width=int(width),
            height=int(height),
            pix_fmt=str(pix_fmt),
            fps_ratio=f"{ratio.numerator}/{ratio.denominator}",
            fps=float(ratio),
            duration=float(duration),
        )

    @property
    def frame_bytes(self) -> int:
        """Size of one decoded BGR frame."""
        return self.width * self.height * 3


class FrameBuffer:
    """Exclusive owner of one frame's pixels.

    ``take()`` moves the pixels out, leaving the buffer empty until
    ``restore()`` hands them back. Reading a moved-out buffer raises.
    """

    def __init__(self, array: np.ndarray):
        self._array: np.ndarray | None = array
        self._released = False

    @property
    def moved(self) -> bool:
        return self._array is None

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            state = "released" if self._released else "moved out"
            raise BufferMovedError(f"frame buffer is {state}")
        return self._array

    def take(self) -> np.ndarray:
        array = self.array
        self._array = None
        return array

    def restore(self, array: np.ndarray) -> None:
        if self._released:
            raise BufferMovedError("cannot restore a released frame buffer")
        if self._array is not None:
            raise BufferMovedError("frame buffer already holds pixels")
        self._array = array

    def release(self) -> None:
        self._array = None
        self._released = True


@dataclass
class Frame:
    """A decoded frame with its absolute index and batch number."""
    index: int
    image: FrameBuffer
    meta: Metadata
    batch: int = 0


@dataclass(frozen=True)
class Box:
    """A single detection in source-frame pixel coordinates."""
    label_index: int
    confidence: float                            # class specific
    xywh: tuple[float, float, float, float]      # top-left origin

    def to_dict(self) -> dict[str, Any]:
        return {
            "labelIndex": self.label_index,
            "confidence": self.confidence,
            "xywh": list(self.xywh),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Box":
        x, y, w, h = data["xywh"]
        return cls(
            label_index=int(data["labelIndex"]),
            confidence=float(data["confidence"]),
            xywh=(float(x), float(y), float(w), float(h)),
        )


@dataclass
class DetectionResult:
    """Response of the detection engine: boxes plus the lent-out image."""
    boxes: list[Box]
    image: np.ndarray


@dataclass(frozen=True)
class ModelSpec:
    """Static description of one detection model."""
    name: str = "detect_s_2024_04"
    parts: int = 0
    width: int = 1280
    height: int = 736
    labels: tuple[str, ...] = ("plate", "person")
    round_corner_ratios: tuple[float, ...] = (0.95, 0.8)
    # boxes overlapping more than this are "the same"
    threshold_iou: float = 0.45
    # minimum objectness
    threshold_conf: float = 0.1
    # minimum class confidence (class score * objectness)
    threshold_class: float = 0.1

    def label(self, index: int) -> str:
        if 0 <= index < len(self.labels):
            return self.labels[index]
        return f"class{index}"


@dataclass(frozen=True)
class CacheKey:
    """Identifies the detections of one model over one file."""
    model_name: str
    file_name: str
    file_size: int

    def serialize(self) -> str:
        return f"{self.model_name}-{self.file_name}-{self.file_size}"


@dataclass
class RunResult:
    """Summary of a completed processing run."""
    output_path: Optional[str] = None
    frames: int = 0
    segments: list[str] = field(default_factory=list)
    cached_frames: int = 0
