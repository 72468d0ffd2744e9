"""Segment encoders: OpenCV VideoWriter (accelerated) and ffmpeg libx264 (fallback).

Both cut the output into independently decodable segment files of
``key_frame_interval`` frames each, so segments can be concatenated
without re-encoding.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import cv2
import numpy as np

from frameblur.errors import ConfigurationError, EncodeError, InvalidStateError, MediaToolError
from frameblur.media.capability import first_supported
from frameblur.media.tool import MediaTool
from frameblur.models import Metadata

logger = logging.getLogger(__name__)


class EncoderState(str, Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    FLUSHED = "flushed"
    DESTROYED = "destroyed"


class SegmentEncoder(ABC):
    """Accepts frames in order and produces segment files in the working directory."""

    extension = ""

    def __init__(self, tool: MediaTool, prefix: str, meta: Metadata,
                 key_frame_interval: int):
        if key_frame_interval < 1:
            raise ConfigurationError(
                f"key_frame_interval must be at least 1, got {key_frame_interval}")
        self._tool = tool
        self._prefix = prefix
        self._meta = meta
        self._key_frame_interval = key_frame_interval
        self._state = EncoderState.IDLE
        self._frames_encoded = 0
        self._segments: list[str] = []

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def frames_encoded(self) -> int:
        return self._frames_encoded

    @property
    def key_frame_interval(self) -> int:
        return self._key_frame_interval

    @property
    def segments(self) -> list[str]:
        return list(self._segments)

    def _segment_name(self) -> str:
        return f"{self._prefix}_chunk_{len(self._segments)}{self.extension}"

    @abstractmethod
    def is_supported(self) -> bool:
        """Probe whether this strategy can encode the video's format."""

    @abstractmethod
    def _write(self, image: np.ndarray) -> None:
        ...

    @abstractmethod
    def _close_segment(self) -> None:
        """Finish the segment being written, if any."""

    @abstractmethod
    def _release(self) -> None:
        """Drop resources and scratch files without producing a segment."""

    def encode(self, image: np.ndarray) -> None:
        """Append one BGR frame. Segments are cut every key_frame_interval frames."""
        if self._state in (EncoderState.FLUSHED, EncoderState.DESTROYED):
            raise InvalidStateError(f"cannot encode frames when {self._state.value}")
        if image.shape != (self._meta.height, self._meta.width, 3):
            raise EncodeError(
                f"frame shape {image.shape} does not match "
                f"{self._meta.width}x{self._meta.height}")

        self._state = EncoderState.ENCODING
        try:
            self._write(image)
            self._frames_encoded += 1
            if self._frames_encoded % self._key_frame_interval == 0:
                self._close_segment()
        except (cv2.error, MediaToolError, OSError) as exc:
            raise EncodeError(
                f"encoding frame {self._frames_encoded} failed: {exc}") from exc

    def flush(self) -> list[str]:
        """Finish the trailing partial segment and return all segment names in order."""
        if self._state in (EncoderState.FLUSHED, EncoderState.DESTROYED):
            raise InvalidStateError(f"cannot flush when {self._state.value}")
        try:
            self._close_segment()
        except (cv2.error, MediaToolError, OSError) as exc:
            raise EncodeError(f"flushing encoder failed: {exc}") from exc
        self._state = EncoderState.FLUSHED
        logger.info("Encoded %d frames into %d segments", self._frames_encoded,
                    len(self._segments))
        return list(self._segments)

    def destroy(self) -> None:
        """Release resources and delete every file this encoder produced."""
        if self._state == EncoderState.DESTROYED:
            return
        self._release()
        for name in self._segments:
            self._tool.delete_file(name)
        self._segments = []
        self._state = EncoderState.DESTROYED


# (hardware acceleration, fourcc), most preferred first
WRITER_CANDIDATES = [
    (accel, fourcc)
    for accel in (cv2.VIDEO_ACCELERATION_ANY, cv2.VIDEO_ACCELERATION_NONE)
    for fourcc in ("avc1", "hvc1", "mp4v")
]


class OpenCVSegmentEncoder(SegmentEncoder):
    """Writes mp4 segments with cv2.VideoWriter."""

    extension = ".mp4"

    def __init__(self, tool: MediaTool, prefix: str, meta: Metadata,
                 key_frame_interval: int):
        super().__init__(tool, prefix, meta, key_frame_interval)
        self._config: Optional[tuple[int, str]] = None
        self._probed = False
        self._writer: cv2.VideoWriter | None = None

    def _open_writer(self, name: str, accel: int, fourcc: str) -> cv2.VideoWriter:
        return cv2.VideoWriter(
            str(self._tool.path(name)),
            cv2.CAP_FFMPEG,
            cv2.VideoWriter_fourcc(*fourcc),
            self._meta.fps,
            (self._meta.width, self._meta.height),
            [cv2.VIDEOWRITER_PROP_HW_ACCELERATION, accel],
        )

    def _probe(self, candidate: tuple[int, str]) -> Optional[bool]:
        accel, fourcc = candidate
        name = f"{self._prefix}_probe{self.extension}"
        try:
            writer = self._open_writer(name, accel, fourcc)
        except cv2.error as exc:
            logger.debug("VideoWriter rejected %s: %s", candidate, exc)
            return None
        try:
            return True if writer.isOpened() else None
        finally:
            writer.release()
            self._tool.delete_file(name)

    def is_supported(self) -> bool:
        if not self._probed:
            self._probed = True
            accepted = first_supported(WRITER_CANDIDATES, self._probe)
            self._config = accepted[0] if accepted else None
            if self._config is None:
                logger.info("No OpenCV encoder configuration supports %dx%d@%s",
                            self._meta.width, self._meta.height, self._meta.fps_ratio)
            else:
                logger.info("Encoding with OpenCV (fourcc=%s, hw_acceleration=%d)",
                            self._config[1], self._config[0])
        return self._config is not None

    def _write(self, image: np.ndarray) -> None:
        if self._writer is None:
            if not self.is_supported():
                raise EncodeError("no supported OpenCV encoder configuration")
            accel, fourcc = self._config
            name = self._segment_name()
            writer = self._open_writer(name, accel, fourcc)
            if not writer.isOpened():
                writer.release()
                raise EncodeError(f"could not open segment writer for {name}")
            self._writer = writer
            self._segments.append(name)
        self._writer.write(image)

    def _close_segment(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None

    def _release(self) -> None:
        self._close_segment()


class FfmpegSegmentEncoder(SegmentEncoder):
    """Writes raw frames to scratch files and encodes each segment with libx264."""

    extension = ".ts"

    def __init__(self, tool: MediaTool, prefix: str, meta: Metadata,
                 key_frame_interval: int):
        super().__init__(tool, prefix, meta, key_frame_interval)
        self._pending: list[str] = []

    def is_supported(self) -> bool:
        return True

    def _write(self, image: np.ndarray) -> None:
        name = f"{self._prefix}_{self._frames_encoded}.raw"
        self._tool.write_file(name, np.ascontiguousarray(image))
        self._pending.append(name)

    def _close_segment(self) -> None:
        if not self._pending:
            return
        name = self._segment_name()
        ratio = self._meta.fps_ratio
        logger.debug("encoding %d frames into %s", len(self._pending), name)
        self._tool.exec([
            "-hide_banner",
            "-y",
            "-f", "rawvideo",
            "-pix_fmt", "bgr24",
            "-video_size", f"{self._meta.width}x{self._meta.height}",
            "-framerate", ratio,
            "-i", "concat:" + "|".join(self._pending),
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-color_primaries", "bt709",
            "-color_trc", "bt709",
            "-colorspace", "bt709",
            "-pix_fmt", "yuv420p",
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-g", self._key_frame_interval,
            "-r", ratio,
            name,
        ])
        self._segments.append(name)
        self._release()

    def _release(self) -> None:
        for name in self._pending:
            self._tool.delete_file(name)
        self._pending = []
