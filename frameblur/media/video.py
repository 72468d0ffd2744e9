"""A loaded media file: metadata, frame extraction, encoding and final remux."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Iterator, Sequence

from frameblur.errors import ConfigurationError, InvalidStateError
from frameblur.media.decode import FfmpegFrameDecoder, OpenCVFrameDecoder, frames_per_batch
from frameblur.media.encode import FfmpegSegmentEncoder, OpenCVSegmentEncoder, SegmentEncoder
from frameblur.media.tool import MediaTool, ProgressCallback
from frameblur.models import Frame, Metadata

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _never() -> bool:
    return False


class Video:
    """One input file copied into the media tool's working directory."""

    def __init__(self, tool: MediaTool, segment_seconds: float = 2.0,
                 accelerated_decode: bool = True, accelerated_encode: bool = True):
        self._tool = tool
        self.segment_seconds = segment_seconds
        self.accelerated_decode = accelerated_decode
        self.accelerated_encode = accelerated_encode
        self._dir: str | None = None
        self._input: str | None = None
        self._file_name = ""
        self._file_size = 0
        self._meta: Future = Future()

    @property
    def segment_seconds(self) -> float:
        return self._segment_seconds

    @segment_seconds.setter
    def segment_seconds(self, value: float) -> None:
        if value <= 0:
            raise ConfigurationError(f"segment_seconds must be > 0, got {value}")
        self._segment_seconds = float(value)

    @property
    def file_name(self) -> str:
        return self._file_name

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def is_image(self) -> bool:
        return Path(self._file_name).suffix.lower() in IMAGE_SUFFIXES

    @property
    def input_name(self) -> str:
        if self._input is None:
            raise InvalidStateError("no file loaded")
        return self._input

    # --- loading ---

    def _prepare(self, file_name: str) -> str:
        self.cleanup()
        self._meta = Future()
        self._file_name = file_name
        self._dir = _UNSAFE.sub("_", Path(file_name).stem) or "input"
        self._tool.delete_dir(self._dir)
        self._tool.create_dir(self._dir)
        self._input = f"{self._dir}/input{Path(file_name).suffix.lower()}"
        return self._input

    def load_file(self, path: str | Path) -> tuple[str, int]:
        """Copy a file from disk into the working directory."""
        path = Path(path)
        name = self._prepare(path.name)
        shutil.copyfile(path, self._tool.path(name))
        self._file_size = path.stat().st_size
        logger.info("Loaded %s (%d bytes)", self._file_name, self._file_size)
        return self._file_name, self._file_size

    def load_bytes(self, file_name: str, data: bytes) -> tuple[str, int]:
        """Store uploaded bytes in the working directory."""
        name = self._prepare(file_name)
        self._tool.write_file(name, data)
        self._file_size = len(data)
        logger.info("Loaded %s (%d bytes)", self._file_name, self._file_size)
        return self._file_name, self._file_size

    # --- metadata ---

    def _resolve_metadata(self, meta: Metadata) -> None:
        if self._meta.done():
            return
        logger.info("Video metadata: %dx%d %s fps=%s duration=%.2fs",
                    meta.width, meta.height, meta.pix_fmt, meta.fps_ratio, meta.duration)
        self._meta.set_result(meta)

    async def resolve_metadata(self) -> Metadata:
        """Wait until frame extraction has determined the metadata."""
        return await asyncio.wrap_future(self._meta)

    def metadata(self, timeout: float | None = None) -> Metadata:
        return self._meta.result(timeout)

    @property
    def has_metadata(self) -> bool:
        return self._meta.done() and self._meta.exception() is None

    @property
    def key_frame_interval(self) -> int:
        return frames_per_batch(self._segment_seconds, self.metadata(timeout=0).fps)

    # --- frames ---

    def extract_frames(self, should_stop: Callable[[], bool] = _never) -> Iterator[Frame]:
        """Yield every decoded frame in order.

        The OpenCV decoder is tried first; the ffmpeg decoder runs only when
        it produced no frame at all.
        """
        yielded = False
        if self.accelerated_decode:
            decoder = OpenCVFrameDecoder(self._tool, self.input_name, self._segment_seconds)
            for frame in decoder.frames(should_stop, self._resolve_metadata):
                yielded = True
                yield frame
        if yielded:
            return

        decoder = FfmpegFrameDecoder(self._tool, self.input_name, self._segment_seconds,
                                     f"{self._dir}/")
        yield from decoder.frames(should_stop, self._resolve_metadata)

    def fail_metadata(self, exc: BaseException) -> None:
        """Propagate an extraction failure to anyone waiting on metadata."""
        if not self._meta.done():
            self._meta.set_exception(exc)

    # --- encoding ---

    def new_encoder(self) -> SegmentEncoder:
        """Create a segment encoder for the loaded video's format."""
        if not self.has_metadata:
            raise InvalidStateError("video metadata is not resolved yet")
        meta = self.metadata()
        prefix = f"{self._dir}/encode"
        interval = self.key_frame_interval

        if self.accelerated_encode:
            encoder = OpenCVSegmentEncoder(self._tool, prefix, meta, interval)
            if encoder.is_supported():
                return encoder
        logger.info("Encoding with ffmpeg libx264 (key_frame_interval=%d)", interval)
        return FfmpegSegmentEncoder(self._tool, prefix, meta, interval)

    def render(self, segments: Sequence[str], output_path: str | Path,
               progress: ProgressCallback | None = None) -> Path:
        """Concatenate segments and copy every non-video stream of the input.

        Streams are copied, not re-encoded. Returns the final output path.
        """
        if not segments:
            raise InvalidStateError("no segments to render")
        list_name = f"{self._dir}/segments.txt"
        out_name = f"{self._dir}/output.mp4"
        listing = "".join(f"file '{Path(s).name}'\n" for s in segments)
        self._tool.write_file(list_name, listing.encode())

        duration = self.metadata(timeout=0).duration if self.has_metadata else None
        try:
            self._tool.exec([
                "-hide_banner",
                "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", list_name,
                "-i", self.input_name,
                "-map", "0:v",
                "-map", "1",
                "-map", "-1:v",
                "-map", "-1:d",
                "-map_metadata", "1",
                "-c", "copy",
                "-movflags", "+faststart",
                out_name,
            ], progress=progress, duration=duration)
        finally:
            self._tool.delete_file(list_name)

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self._tool.path(out_name)), str(output_path))
        logger.info("Rendered %d segments to %s", len(segments), output_path)
        return output_path

    def cleanup(self) -> None:
        """Delete everything this video put into the working directory."""
        if self._dir is not None:
            self._tool.delete_dir(self._dir)
            self._dir = None
            self._input = None
