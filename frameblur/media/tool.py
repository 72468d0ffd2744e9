"""ffmpeg subprocess wrapper operating on files inside one working directory."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Sequence

import ffmpeg

from frameblur.errors import MediaToolError

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
ProgressCallback = Callable[[float], None]

# harmless warnings that would otherwise flood the debug log
_NOISE = (
    "No accelerated colorspace conversion found from",
    "deprecated pixel format used, make sure you did set range correctly",
)

_TIME_RE = re.compile(r"time=(\d+):(\d\d):(\d\d(?:\.\d+)?)")


def _timestamp_seconds(match: re.Match) -> float:
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


class MediaTool:
    """Runs ffmpeg and manages named files in a working directory.

    File names passed to the file methods and used in ffmpeg arguments are
    relative to ``work_dir``; ffmpeg runs with it as current directory.
    """

    def __init__(self, work_dir: str | Path, ffmpeg_bin: str = "ffmpeg",
                 ffprobe_bin: str = "ffprobe"):
        self._work_dir = Path(work_dir)
        self._work_dir.mkdir(parents=True, exist_ok=True)
        self._ffmpeg_bin = ffmpeg_bin
        self._ffprobe_bin = ffprobe_bin
        self._log_callbacks: list[LogCallback] = []
        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    def path(self, name: str) -> Path:
        return self._work_dir / name

    # --- files ---

    def write_file(self, name: str, data: Any) -> None:
        """Write bytes (or anything exposing the buffer protocol) to a file."""
        path = self.path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(memoryview(data).cast("B"))

    def read_file(self, name: str) -> bytes:
        return self.path(name).read_bytes()

    def delete_file(self, name: str) -> None:
        logger.debug("deleting %s", name)
        self.path(name).unlink(missing_ok=True)

    def create_dir(self, name: str) -> None:
        self.path(name).mkdir(parents=True, exist_ok=True)

    def list_dir(self, name: str = ".") -> list[str]:
        directory = self.path(name)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir())

    def delete_dir(self, name: str) -> None:
        """Recursively delete a directory below the working directory."""
        shutil.rmtree(self.path(name), ignore_errors=True)

    # --- logs ---

    def on_log(self, callback: LogCallback) -> None:
        with self._lock:
            self._log_callbacks.append(callback)

    def off_log(self, callback: LogCallback) -> None:
        with self._lock:
            if callback in self._log_callbacks:
                self._log_callbacks.remove(callback)

    def _emit_log(self, line: str) -> None:
        if not any(noise in line for noise in _NOISE):
            logger.debug("ffmpeg | %s", line)
        with self._lock:
            callbacks = list(self._log_callbacks)
        for callback in callbacks:
            callback(line)

    # --- processes ---

    def exec(self, args: Sequence[Any], progress: ProgressCallback | None = None,
             duration: float | None = None) -> int:
        """Run ffmpeg with args, streaming its log. Raises MediaToolError on failure.

        ``progress`` receives values in [0, 1] when ``duration`` is known.
        """
        cmd = [self._ffmpeg_bin] + [str(a) for a in args]
        logger.debug("running: %s", " ".join(cmd))
        tail: deque[str] = deque(maxlen=20)

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self._work_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise MediaToolError(f"failed to start {self._ffmpeg_bin}: {exc}") from exc

        self._proc = proc
        try:
            for raw in proc.stderr:
                line = raw.rstrip("\n")
                if not line:
                    continue
                tail.append(line)
                self._emit_log(line)
                if progress is not None and duration:
                    match = _TIME_RE.search(line)
                    if match:
                        progress(min(1.0, _timestamp_seconds(match) / duration))
            code = proc.wait()
        finally:
            self._proc = None

        if code != 0:
            raise MediaToolError(f"ffmpeg exited with code={code}",
                                 exit_code=code, log_tail=list(tail))
        if progress is not None:
            progress(1.0)
        return code

    def probe(self, name: str) -> dict:
        """Return ffprobe's description of a file's container and streams."""
        return ffmpeg.probe(str(self.path(name)), cmd=self._ffprobe_bin)

    def terminate(self) -> None:
        """Kill a running ffmpeg process, if any."""
        proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.info("terminating running ffmpeg process")
            proc.kill()
