"""Frame decoding: OpenCV (accelerated) and ffmpeg rawvideo (fallback) strategies."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Iterator, Optional

import cv2
import ffmpeg
import numpy as np

from frameblur.errors import DecodeError, MediaToolError
from frameblur.media.capability import first_supported
from frameblur.media.tool import MediaTool
from frameblur.models import Frame, FrameBuffer, Metadata
from frameblur.processing.detector import js_round

logger = logging.getLogger(__name__)

StopFlag = Callable[[], bool]
MetadataCallback = Callable[[Metadata], None]

# hardware acceleration preference, most preferred first
HW_ACCELERATION_CANDIDATES = (cv2.VIDEO_ACCELERATION_ANY, cv2.VIDEO_ACCELERATION_NONE)

DURATION_RE = re.compile(r"Duration: (\d+):(\d\d):(\d\d)\.(\d+)")
FRAME_RE = re.compile(r"w:(\d+) h:(\d+) pixfmt:(\S+) tb:\S+ fr:(\d+)/(\d+)")


def frames_per_batch(segment_seconds: float, fps: float) -> int:
    """Number of consecutive frames grouped into one batch / segment."""
    return max(1, js_round(segment_seconds * fps))


@dataclass(frozen=True)
class DecoderConfig:
    """Video track description read from the container."""
    codec: str
    width: int
    height: int
    pix_fmt: str
    fps_ratio: str
    duration: float

    def metadata(self) -> Metadata:
        return Metadata.from_ratio(self.width, self.height, self.pix_fmt,
                                   self.fps_ratio, self.duration)


def _valid_ratio(value: str | None) -> Optional[str]:
    if not value:
        return None
    try:
        ratio = Fraction(value)
    except (ValueError, ZeroDivisionError):
        return None
    return value if ratio > 0 else None


def read_decoder_config(tool: MediaTool, name: str) -> Optional[DecoderConfig]:
    """Parse the container's track table. Returns None when it cannot be used."""
    try:
        info = tool.probe(name)
    except ffmpeg.Error as exc:
        stderr = exc.stderr.decode(errors="replace") if exc.stderr else ""
        logger.debug("container probe failed for %s: %s", name, stderr.strip())
        return None
    except OSError as exc:
        logger.debug("container probe unavailable: %s", exc)
        return None

    stream = next((s for s in info.get("streams", []) if s.get("codec_type") == "video"), None)
    if stream is None:
        logger.debug("no video track found in %s", name)
        return None

    fps_ratio = _valid_ratio(stream.get("avg_frame_rate")) or _valid_ratio(stream.get("r_frame_rate"))
    if fps_ratio is None or not stream.get("width") or not stream.get("height"):
        logger.debug("video track of %s lacks dimensions or frame rate", name)
        return None

    duration = stream.get("duration") or info.get("format", {}).get("duration") or 0
    return DecoderConfig(
        codec=str(stream.get("codec_name", "unknown")),
        width=int(stream["width"]),
        height=int(stream["height"]),
        pix_fmt=str(stream.get("pix_fmt", "unknown")),
        fps_ratio=fps_ratio,
        duration=float(duration),
    )


class OpenCVFrameDecoder:
    """Decodes with cv2.VideoCapture after probing the container and the decoder."""

    def __init__(self, tool: MediaTool, name: str, segment_seconds: float):
        self._tool = tool
        self._name = name
        self._segment_seconds = segment_seconds

    def frames(self, should_stop: StopFlag,
               on_metadata: MetadataCallback) -> Iterator[Frame]:
        """Yield every frame, or nothing at all when the probe fails."""
        config = read_decoder_config(self._tool, self._name)
        if config is None:
            return

        accepted = first_supported(HW_ACCELERATION_CANDIDATES,
                                   lambda accel: self._open(config, accel))
        if accepted is None:
            logger.info("OpenCV cannot decode %s (%s), using fallback",
                        self._name, config.codec)
            return

        accel, (cap, first) = accepted
        meta = config.metadata()
        on_metadata(meta)
        per_batch = frames_per_batch(self._segment_seconds, meta.fps)
        logger.info("Decoding %s with OpenCV (codec=%s, hw_acceleration=%d)",
                    self._name, config.codec, accel)

        index = 0
        image = first
        try:
            while image is not None:
                if should_stop():
                    logger.info("Frame extraction stopped at frame %d", index)
                    return
                yield Frame(index=index, image=FrameBuffer(image), meta=meta,
                            batch=index // per_batch)
                index += 1
                ok, image = cap.read()
                if not ok:
                    image = None
        except cv2.error as exc:
            logger.error("OpenCV decoder failed at frame %d: %s", index, exc)
            raise DecodeError(f"decoding failed at frame {index}: {exc}") from exc
        finally:
            cap.release()
        logger.info("OpenCV decoding finished after %d frames", index)

    def _open(self, config: DecoderConfig,
              accel: int) -> Optional[tuple[cv2.VideoCapture, np.ndarray]]:
        path = str(self._tool.path(self._name))
        try:
            cap = cv2.VideoCapture(path, cv2.CAP_FFMPEG,
                                   [cv2.CAP_PROP_HW_ACCELERATION, accel])
        except cv2.error as exc:
            logger.debug("VideoCapture failed for hw_acceleration=%d: %s", accel, exc)
            return None
        if not cap.isOpened():
            cap.release()
            return None

        try:
            ok, first = cap.read()
        except cv2.error as exc:
            logger.debug("first frame decode failed: %s", exc)
            ok, first = False, None
        if not ok or first is None or first.shape[:2] != (config.height, config.width):
            cap.release()
            return None
        return cap, first


class MetadataLogReader:
    """Collects video metadata from ffmpeg's verbose log output.

    Assumes ffmpeg prints the container duration before the filter graph
    input description.
    """

    def __init__(self):
        self.duration = 0.0
        self.metadata: Metadata | None = None

    def __call__(self, line: str) -> None:
        if self.metadata is not None:
            return

        match = DURATION_RE.search(line)
        if match:
            h, m, s, frac = match.groups()
            self.duration = int(h) * 3600 + int(m) * 60 + float(f"{s}.{frac}")

        match = FRAME_RE.search(line)
        if not match:
            return
        w, h, pix_fmt, fps_num, fps_den = match.groups()
        if int(fps_num) == 0 or int(fps_den) == 0:
            return
        self.metadata = Metadata.from_ratio(int(w), int(h), pix_fmt,
                                            f"{fps_num}/{fps_den}", self.duration)


class FfmpegFrameDecoder:
    """Rasterizes fixed-duration slices with ffmpeg and splits them into frames."""

    def __init__(self, tool: MediaTool, name: str, segment_seconds: float,
                 scratch_prefix: str):
        self._tool = tool
        self._name = name
        self._segment_seconds = segment_seconds
        self._scratch_prefix = scratch_prefix

    def frames(self, should_stop: StopFlag,
               on_metadata: MetadataCallback) -> Iterator[Frame]:
        reader = MetadataLogReader()
        self._tool.on_log(reader)
        meta: Metadata | None = None
        index = 0
        start = 0.0
        try:
            while not should_stop():
                raw = self._slice_to_raw(start, verbose=meta is None)

                if meta is None:
                    meta = reader.metadata
                    if meta is None:
                        if not raw:
                            return
                        raise DecodeError("could not determine video metadata from ffmpeg logs")
                    self._tool.off_log(reader)
                    on_metadata(meta)

                # i.e. finished reading the video
                if not raw:
                    logger.info("ffmpeg decoding finished after %d frames", index)
                    return

                frame_bytes = meta.frame_bytes
                if len(raw) % frame_bytes != 0:
                    raise DecodeError(
                        f"extracted frames should be a multiple of w*h*bpp={frame_bytes}, "
                        f"but got {len(raw)} bytes")

                per_batch = frames_per_batch(self._segment_seconds, meta.fps)
                for pos in range(0, len(raw), frame_bytes):
                    if should_stop():
                        return
                    image = np.frombuffer(raw, dtype=np.uint8, count=frame_bytes,
                                          offset=pos).reshape(meta.height, meta.width, 3)
                    yield Frame(index=index, image=FrameBuffer(image), meta=meta,
                                batch=index // per_batch)
                    index += 1

                start += self._segment_seconds
        finally:
            self._tool.off_log(reader)

    def _slice_to_raw(self, start: float, verbose: bool) -> bytearray:
        duration = self._segment_seconds
        scratch = f"{self._scratch_prefix}frame-extract-{start:.3f}-{duration}.rawvideo"
        logger.debug("extracting frames from=%.3f to=%.3f", start, start + duration)
        try:
            self._tool.exec([
                "-hide_banner",
                "-loglevel", "verbose" if verbose else "error",
                "-ss", f"{start:.3f}",
                "-t", duration,
                "-i", self._name,
                "-pix_fmt", "bgr24",
                "-vcodec", "rawvideo",
                "-f", "image2pipe",
                "-y", scratch,
            ])
            return bytearray(self._tool.read_file(scratch))
        except MediaToolError as exc:
            logger.error("ffmpeg frame extraction failed: %s %s", exc, exc.log_tail[-3:])
            raise DecodeError(f"frame extraction at {start:.3f}s failed: {exc}") from exc
        finally:
            self._tool.delete_file(scratch)
