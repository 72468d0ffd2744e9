"""Pipeline orchestrator: decode → detect (cached) → blur → encode → remux."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Callable

import cv2

from frameblur.assets import assemble_model
from frameblur.config import AppConfig
from frameblur.errors import (
    CancelledByUser,
    ConfigurationError,
    DecodeError,
    EncodeError,
    InvalidStateError,
    ModelInitError,
    PipelineError,
)
from frameblur.media.encode import SegmentEncoder
from frameblur.media.tool import MediaTool
from frameblur.media.video import Video
from frameblur.models import Box, Frame, ModelSpec, RunResult
from frameblur.processing.blurrer import Blurrer, select_boxes
from frameblur.processing.engine import DetectionEngine
from frameblur.processing.overlay import draw_detection_boxes
from frameblur.storage.detection_cache import DetectionCache, FileDetections

logger = logging.getLogger(__name__)


class Pipeline:
    """Main processing pipeline orchestrator.

    Runs on the asyncio event loop. Blocking decode and encode calls are
    offloaded to threads, and the loop yields control around detection and
    encoding so other tasks (the web API) stay responsive.
    """

    def __init__(self, config: AppConfig, cache: DetectionCache,
                 tool: MediaTool | None = None,
                 engine_factory: Callable[..., DetectionEngine] = DetectionEngine,
                 video_factory: Callable[..., Video] = Video):
        self._config = config
        self._cache = cache
        self._tool = tool or MediaTool(
            config.video.work_dir,
            ffmpeg_bin=config.video.ffmpeg_bin,
            ffprobe_bin=config.video.ffprobe_bin,
        )
        self._engine_factory = engine_factory
        self._video_factory = video_factory
        self._blurrer = Blurrer(config.blur.mask_cache_size)

        self._engine: DetectionEngine | None = None
        self._model_cancel: threading.Event | None = None
        self._video: Video | None = None

        self._stop = threading.Event()
        self._running = False
        self._job: asyncio.Task | None = None

        # Stats
        self._frames_done = 0
        self._stage: str | None = None
        self._last_result: RunResult | None = None
        self._last_error: str | None = None

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def engine(self) -> DetectionEngine | None:
        return self._engine

    @property
    def video(self) -> Video | None:
        return self._video

    @property
    def blurrer(self) -> Blurrer:
        return self._blurrer

    def _detections(self) -> FileDetections | None:
        if self._engine is None or self._video is None:
            return None
        return self._cache.for_file(self._video.file_name, self._video.file_size,
                                    self._engine.spec.name)

    @property
    def cached_frames(self) -> int:
        detections = self._detections()
        return detections.size() if detections is not None else 0

    @property
    def stats(self) -> dict[str, Any]:
        result = self._last_result
        return {
            "model": self._engine.spec.name if self._engine is not None else None,
            "file_name": self._video.file_name if self._video is not None else None,
            "file_size": self._video.file_size if self._video is not None else None,
            "running": self._running,
            "stage": self._stage,
            "frames_processed": self._frames_done,
            "cached_frames": self.cached_frames,
            "mask_cache_size": len(self._blurrer.cache),
            "mask_cache_hits": self._blurrer.cache.hits,
            "mask_cache_misses": self._blurrer.cache.misses,
            "last_output": result.output_path if result is not None else None,
            "last_error": self._last_error,
        }

    # --- model ---

    async def load_model(self, spec: ModelSpec | None = None) -> ModelSpec:
        """Load detection weights and start a fresh engine.

        Cancels a previous, still assembling load and aborts the current engine
        first, so at most one engine is live.
        """
        if self._model_cancel is not None:
            self._model_cancel.set()
        cancel = threading.Event()
        self._model_cancel = cancel

        if self._engine is not None:
            self._engine.abort("model reloaded")
            self._engine = None

        spec = spec or self._config.model.spec()
        mc = self._config.model
        weights = await asyncio.to_thread(assemble_model, mc.model_dir, spec.name,
                                          spec.parts, cancel)
        if cancel.is_set():
            raise CancelledByUser("model load superseded")

        engine = self._engine_factory(spec, list(mc.execution_providers),
                                      mc.use_multithreading, weights,
                                      isolation=mc.isolation)
        error = await engine.loaded()
        if error is not None:
            engine.abort("model initialization failed")
            raise ModelInitError(error)
        if cancel.is_set():
            engine.abort("model load superseded")
            raise CancelledByUser("model load superseded")

        self._engine = engine
        if self._model_cancel is cancel:
            self._model_cancel = None
        logger.info("Model %s loaded (%dx%d, labels=%s)", spec.name, spec.width,
                    spec.height, ", ".join(spec.labels))
        return spec

    # --- input ---

    def _new_video(self) -> Video:
        if self._running:
            raise InvalidStateError("cannot load a file while a run is in progress")
        if self._video is not None:
            self._video.cleanup()
        vc = self._config.video
        self._video = self._video_factory(
            self._tool,
            segment_seconds=vc.segment_seconds,
            accelerated_decode=vc.accelerated_decode,
            accelerated_encode=vc.accelerated_encode,
        )
        return self._video

    def load_video(self, path: str | Path) -> tuple[str, int]:
        return self._new_video().load_file(path)

    def load_bytes(self, file_name: str, data: bytes) -> tuple[str, int]:
        return self._new_video().load_bytes(file_name, data)

    def default_output_path(self) -> Path:
        if self._video is None:
            raise InvalidStateError("no file loaded")
        name = Path(self._video.file_name)
        suffix = name.suffix if self._video.is_image else ".mp4"
        return Path(self._config.video.output_dir) / f"{name.stem}_blurred{suffix}"

    # --- run ---

    def stop(self) -> None:
        """Ask the current run to stop at the next frame boundary."""
        if self._running:
            logger.info("Stop requested")
        self._stop.set()

    def purge_cache(self, confirm: bool = False) -> int:
        """Drop cached detections of the loaded file and model. Returns the count."""
        if not confirm:
            raise ConfigurationError("purging the detection cache requires confirmation")
        detections = self._detections()
        if detections is None:
            raise InvalidStateError("load a model and a file first")
        purged = detections.size()
        detections.purge()
        logger.info("Purged %d cached frames", purged)
        return purged

    async def _detect_frame(self, frame: Frame) -> list[Box]:
        result = await self._engine.detect(frame.image)
        frame.image.restore(result.image)
        return result.boxes

    def _check_ready(self) -> None:
        if self._engine is None:
            raise InvalidStateError("no model loaded")
        if self._video is None:
            raise InvalidStateError("no file loaded")
        if self._running:
            raise InvalidStateError("a run is already in progress")

    async def process(self, output_path: str | Path | None = None) -> RunResult | None:
        """Process the loaded file end to end.

        Returns None when stopped or cancelled. Any other failure releases
        the encoder and the detection engine and raises PipelineError.
        """
        self._check_ready()
        video = self._video
        engine = self._engine
        spec = engine.spec
        blur = self._config.blur
        output_path = Path(output_path) if output_path else self.default_output_path()
        detections = self._cache.for_file(video.file_name, video.file_size, spec.name)

        self._stop.clear()
        self._running = True
        self._frames_done = 0
        self._last_error = None
        cached = 0
        stage = "decode"
        index: int | None = None
        encoder: SegmentEncoder | None = None
        frames = video.extract_frames(self._stop.is_set)
        logger.info("Processing %s (%d frames cached)", video.file_name, detections.size())

        try:
            while not self._stop.is_set():
                stage = self._stage = "decode"
                frame = await asyncio.to_thread(next, frames, None)
                if frame is None:
                    break
                index = frame.index

                stage = self._stage = "detect"
                if detections.get(index) is not None:
                    cached += 1
                boxes = await detections.get_or_compute(
                    index, lambda: self._detect_frame(frame))

                stage = self._stage = "blur"
                image = frame.image.array
                self._blurrer.blur_boxes(
                    image, spec, select_boxes(boxes, spec.labels,
                                              blur.blur_person, blur.blur_plate))
                if blur.draw_boxes:
                    draw_detection_boxes(image, spec.labels, boxes)
                await asyncio.sleep(0)

                stage = self._stage = "encode"
                if video.is_image:
                    await asyncio.to_thread(self._write_image, image, output_path)
                else:
                    if encoder is None:
                        encoder = video.new_encoder()
                    await asyncio.to_thread(encoder.encode, image)
                frame.image.release()
                self._frames_done += 1
                await asyncio.sleep(0)

            if self._stop.is_set():
                logger.info("Run stopped after %d frames", self._frames_done)
                return None

            stage = self._stage = "render"
            index = None
            segments: list[str] = []
            if video.is_image:
                if self._frames_done == 0:
                    raise DecodeError("no frames decoded")
            else:
                if encoder is None:
                    raise DecodeError("no frames decoded")
                segments = encoder.flush()
                await asyncio.to_thread(video.render, segments, output_path)

            result = RunResult(output_path=str(output_path), frames=self._frames_done,
                               segments=segments, cached_frames=cached)
            self._last_result = result
            logger.info("Finished %s: %d frames (%d from cache) -> %s", video.file_name,
                        result.frames, cached, output_path)
            return result
        except CancelledByUser as exc:
            logger.info("Run cancelled: %s", exc.reason)
            return None
        except Exception as exc:
            logger.error("Processing failed at stage=%s frame=%s: %s", stage, index, exc)
            self._last_error = str(exc)
            video.fail_metadata(exc)
            engine.abort(f"pipeline failed: {exc}")
            if self._engine is engine:
                self._engine = None
            raise PipelineError(stage, index, exc) from exc
        finally:
            try:
                frames.close()
            except ValueError:
                # the decode thread still owns the generator, it ends with the thread
                logger.debug("frame generator still running, not closed")
            if encoder is not None:
                encoder.destroy()
            self._running = False
            self._stage = None

    def _write_image(self, image, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(output_path), image):
            raise EncodeError(f"could not write image {output_path}")

    # --- background jobs (web) ---

    def start_background(self, output_path: str | Path | None = None) -> asyncio.Task:
        """Schedule ``process`` on the running loop, recording its outcome."""
        if self._job is not None and not self._job.done():
            raise InvalidStateError("a run is already in progress")
        self._check_ready()
        self._job = asyncio.get_running_loop().create_task(self._run_job(output_path))
        return self._job

    async def _run_job(self, output_path: str | Path | None) -> RunResult | None:
        try:
            return await self.process(output_path)
        except PipelineError as exc:
            # already recorded in stats
            logger.debug("background run failed: %s", exc)
            return None

    def close(self) -> None:
        """Stop work and release the engine and working files."""
        self.stop()
        if self._model_cancel is not None:
            self._model_cancel.set()
        if self._engine is not None:
            self._engine.abort("shutdown")
            self._engine = None
        if self._video is not None:
            self._video.cleanup()
            self._video = None
        logger.info("Pipeline closed")
