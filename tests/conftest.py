"""Shared test fixtures: synthetic BGR frames, an in-memory store and fakes
standing in for ffmpeg, the detection worker, the engine and the video."""

from __future__ import annotations

import os

import ffmpeg
import numpy as np
import pytest

from frameblur.config import AppConfig
from frameblur.media.tool import MediaTool
from frameblur.models import Box, DetectionResult, Frame, FrameBuffer, Metadata, ModelSpec
from frameblur.storage.detection_cache import DetectionCache
from frameblur.storage.kv_store import KeyValueStore


def make_frame(width: int = 64, height: int = 48, value: int = 0) -> np.ndarray:
    """Create a uniform BGR frame."""
    return np.full((height, width, 3), value, dtype=np.uint8)


def make_checkerboard(width: int = 64, height: int = 48, cell: int = 4) -> np.ndarray:
    """Create a high-contrast BGR frame that blurring visibly changes."""
    ys, xs = np.indices((height, width))
    board = (((xs // cell) + (ys // cell)) % 2 * 255).astype(np.uint8)
    return np.dstack([board, board, board])


def make_meta(width: int = 64, height: int = 48, fps_ratio: str = "5/1",
              duration: float = 2.0) -> Metadata:
    return Metadata.from_ratio(width, height, "yuv420p", fps_ratio, duration)


class FakeMediaTool(MediaTool):
    """MediaTool with real file handling but a scripted ``exec`` and ``probe``.

    ``handler(args, tool)`` runs instead of ffmpeg; it may write outputs,
    emit log lines via ``tool._emit_log`` or raise.
    """

    def __init__(self, work_dir, handler=None, probe_result=None):
        super().__init__(work_dir)
        self.calls: list[list[str]] = []
        self._handler = handler
        self.probe_result = probe_result

    def exec(self, args, progress=None, duration=None) -> int:
        args = [str(a) for a in args]
        self.calls.append(args)
        if self._handler is not None:
            self._handler(args, self)
        else:
            # pretend the last argument (the output file) was produced
            self.write_file(args[-1], b"")
        return 0

    def probe(self, name):
        if self.probe_result is None:
            raise ffmpeg.Error("ffprobe", b"", b"Invalid data found when processing input")
        return self.probe_result


class FakeWorker:
    """Worker-side detector returning one fixed box per frame."""

    def __init__(self, spec, execution_providers, use_multithreading, weights_path):
        self.spec = spec
        self.providers = execution_providers

    def loaded(self):
        return None

    def detect(self, image):
        h, w = image.shape[:2]
        return [Box(label_index=1, confidence=0.9, xywh=(w / 4, h / 4, w / 2, h / 2))]

    def release(self):
        pass


class BrokenWorker(FakeWorker):
    def loaded(self):
        return "Model initialization failed on all providers (cpu) with error(s) cpu: boom"


class CrashingWorker(FakeWorker):
    def detect(self, image):
        os._exit(3)


class FakeEngine:
    """Host-side engine stand-in running detection inline."""

    def __init__(self, spec, execution_providers, use_multithreading, weights_path,
                 isolation="thread", error=None, fail_at=None):
        self.spec = spec
        self.weights_path = weights_path
        self.error = error
        self.fail_at = fail_at
        self.detect_calls = 0
        self.aborted: str | None = None

    async def loaded(self):
        return self.error

    async def detect(self, buffer: FrameBuffer) -> DetectionResult:
        image = buffer.take()
        self.detect_calls += 1
        if self.fail_at is not None and self.detect_calls > self.fail_at:
            raise RuntimeError("inference exploded")
        h, w = image.shape[:2]
        boxes = [Box(label_index=1, confidence=0.9, xywh=(w / 4, h / 4, w / 2, h / 2))]
        return DetectionResult(boxes=boxes, image=image)

    def abort(self, reason="user abort"):
        self.aborted = reason


class FakeEncoder:
    def __init__(self, key_frame_interval: int = 10):
        self.key_frame_interval = key_frame_interval
        self.frames: list[np.ndarray] = []
        self.flushed = False
        self.destroyed = False

    def encode(self, image):
        self.frames.append(image.copy())

    def flush(self):
        self.flushed = True
        count = -(-len(self.frames) // self.key_frame_interval)
        return [f"clip/encode_chunk_{i}.ts" for i in range(count)]

    def destroy(self):
        self.destroyed = True


class FakeVideo:
    """Video stand-in producing synthetic frames without ffmpeg."""

    frame_count = 10

    def __init__(self, tool, segment_seconds=2.0, accelerated_decode=True,
                 accelerated_encode=True):
        self.tool = tool
        self.segment_seconds = segment_seconds
        self.file_name = ""
        self.file_size = 0
        self.meta = make_meta()
        self.encoder: FakeEncoder | None = None
        self.rendered: tuple | None = None
        self.cleaned = False
        self.failed: BaseException | None = None

    @property
    def is_image(self) -> bool:
        return self.file_name.endswith((".png", ".jpg"))

    def load_file(self, path):
        self.file_name = str(path).rsplit("/", 1)[-1]
        self.file_size = 1234
        return self.file_name, self.file_size

    def load_bytes(self, file_name, data):
        self.file_name = file_name
        self.file_size = len(data)
        return self.file_name, self.file_size

    def extract_frames(self, should_stop=lambda: False):
        count = 1 if self.is_image else self.frame_count
        for index in range(count):
            if should_stop():
                return
            yield Frame(index=index, image=FrameBuffer(make_checkerboard()),
                        meta=self.meta, batch=index // 10)

    def new_encoder(self):
        self.encoder = FakeEncoder(10)
        return self.encoder

    def render(self, segments, output_path):
        self.rendered = (list(segments), str(output_path))
        return output_path

    def fail_metadata(self, exc):
        self.failed = exc

    def cleanup(self):
        self.cleaned = True


@pytest.fixture
def spec() -> ModelSpec:
    return ModelSpec(name="test_model", width=64, height=48)


@pytest.fixture
def store(tmp_path) -> KeyValueStore:
    kv = KeyValueStore(str(tmp_path / "db" / "kv.db"))
    yield kv
    kv.close()


@pytest.fixture
def cache(store) -> DetectionCache:
    return DetectionCache(store)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.video.work_dir = str(tmp_path / "work")
    config.video.output_dir = str(tmp_path / "out")
    config.model.model_dir = str(tmp_path / "models")
    config.model.name = "test_model"
    config.model.isolation = "thread"
    config.cache.db_path = str(tmp_path / "db" / "kv.db")
    config.logging.log_dir = str(tmp_path / "logs")
    (tmp_path / "models").mkdir()
    (tmp_path / "models" / "test_model.onnx").write_bytes(b"weights")
    return config
