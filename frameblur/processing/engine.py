"""Detection engine isolated in a worker process (or thread).

The host and the worker talk over two queues. Every request carries an id;
the host keeps one Future per id, which is that call's response channel, and
a reader thread resolves it when the matching response arrives::

    request:  {"id": 7, "task": "create" | "detect" | "loaded" | "destroy", "args": [...]}
    response: (7, ok, payload)

A ``detect`` request moves the frame's pixels to the worker. The response
carries the same array back together with the boxes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing
import queue
import threading
from concurrent.futures import Future, InvalidStateError
from pathlib import Path
from typing import Any, Callable, Sequence

from frameblur.errors import CancelledByUser, ConfigurationError, DetectionError
from frameblur.models import DetectionResult, FrameBuffer, ModelSpec
from frameblur.processing.detector import DetectorWorker

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.5
_TEARDOWN_TIMEOUT = 5.0


def serve(requests: Any, responses: Any, worker_factory: Callable[..., Any]) -> None:
    """Worker loop: answer requests until ``destroy`` or a None sentinel."""
    instance = None
    for task_count in itertools.count():
        message = requests.get()
        if message is None:
            break

        call_id, task, args = message["id"], message["task"], message.get("args", [])
        logger.debug("detection worker received task %d: %s", task_count, task)
        try:
            if task == "create":
                instance = worker_factory(*args)
                payload = None
            elif task == "loaded":
                payload = instance.loaded() if instance is not None else "detector was never created"
            elif task == "detect":
                if instance is None:
                    raise RuntimeError("detector was never created")
                image = args[0]
                boxes = instance.detect(image)
                payload = {"boxes": boxes, "image": image}
            elif task == "destroy":
                if instance is not None:
                    instance.release()
                instance = None
                responses.put((call_id, True, {}))
                break
            else:
                raise ValueError(f"unknown task {task!r}")
        except Exception as exc:
            logger.exception("detection worker task %s failed", task)
            responses.put((call_id, False, f"{type(exc).__name__}: {exc}"))
            continue

        responses.put((call_id, True, payload))


class DetectionEngine:
    """Host side handle of one detection worker."""

    def __init__(self, spec: ModelSpec, execution_providers: Sequence[str],
                 use_multithreading: bool, weights_path: str | Path,
                 isolation: str = "process",
                 worker_factory: Callable[..., Any] = DetectorWorker):
        self._spec = spec
        self._reason = "detector terminated"
        self._terminated = False
        self._ids = itertools.count()
        self._pending: dict[int, Future] = {}
        self._lock = threading.Lock()

        if isolation == "process":
            ctx = multiprocessing.get_context("spawn")
            self._requests = ctx.Queue()
            self._responses = ctx.Queue()
            self._worker = ctx.Process(
                target=serve,
                args=(self._requests, self._responses, worker_factory),
                name=f"detector-{spec.name}",
                daemon=True,
            )
        elif isolation == "thread":
            self._requests = queue.Queue()
            self._responses = queue.Queue()
            self._worker = threading.Thread(
                target=serve,
                args=(self._requests, self._responses, worker_factory),
                name=f"detector-{spec.name}",
                daemon=True,
            )
        else:
            raise ConfigurationError(f"unknown isolation {isolation!r}")

        self._worker.start()
        self._reader = threading.Thread(target=self._read_responses, daemon=True)
        self._reader.start()

        self._post("create", [spec, list(execution_providers),
                              use_multithreading, str(weights_path)])
        logger.info("Detection engine for %s started (%s isolation)", spec.name, isolation)

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def loaded(self) -> str | None:
        """Wait for initialization. Returns an error description or None."""
        return await asyncio.wrap_future(self._post("loaded"))

    async def detect(self, image: FrameBuffer) -> DetectionResult:
        """Run inference on a frame, taking ownership of its pixels.

        The returned result carries the same array, handed back once the
        worker no longer needs it.
        """
        if self._terminated:
            raise CancelledByUser(self._reason)
        array = image.take()
        payload = await asyncio.wrap_future(self._post("detect", [array]))
        return DetectionResult(boxes=list(payload["boxes"]), image=payload["image"])

    def abort(self, reason: str = "user abort") -> None:
        """Terminate the engine. Later calls fail with CancelledByUser(reason)."""
        if self._terminated:
            return
        self._reason = reason
        self._terminated = True
        logger.info("Aborting detection engine: %s", reason)

        destroyed = self._send("destroy")
        self._fail_pending(CancelledByUser(reason), keep=destroyed)
        threading.Thread(target=self._teardown, args=(destroyed,), daemon=True).start()

    def _post(self, task: str, args: Sequence[Any] = ()) -> Future:
        if self._terminated:
            future: Future = Future()
            future.set_exception(CancelledByUser(self._reason))
            return future
        return self._send(task, args)

    def _send(self, task: str, args: Sequence[Any] = ()) -> Future:
        future: Future = Future()
        call_id = next(self._ids)
        with self._lock:
            self._pending[call_id] = future
        logger.debug("detector sending task %s (%d) to worker", task, call_id)
        self._requests.put({"id": call_id, "task": task, "args": list(args)})
        return future

    def _read_responses(self) -> None:
        while True:
            try:
                message = self._responses.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._worker.is_alive():
                    continue
                if not self._terminated:
                    exitcode = getattr(self._worker, "exitcode", None)
                    self.abort(f"detector worker exited unexpectedly (exitcode={exitcode})")
                self._fail_pending(CancelledByUser(self._reason))
                return

            call_id, ok, payload = message
            with self._lock:
                future = self._pending.pop(call_id, None)
            if future is None or future.cancelled():
                continue
            try:
                if ok:
                    future.set_result(payload)
                else:
                    future.set_exception(DetectionError(payload))
            except InvalidStateError:
                logger.debug("response %d arrived for a settled call", call_id)

    def _fail_pending(self, error: Exception, keep: Future | None = None) -> None:
        with self._lock:
            failed = [(cid, f) for cid, f in self._pending.items() if f is not keep]
            for cid, _future in failed:
                del self._pending[cid]
        for _cid, future in failed:
            if not future.done():
                future.set_exception(error)

    def _teardown(self, destroyed: Future) -> None:
        try:
            destroyed.result(timeout=_TEARDOWN_TIMEOUT)
        except Exception as exc:
            logger.debug("detector destroy did not complete: %s", exc)
        self._worker.join(timeout=_TEARDOWN_TIMEOUT)
        if isinstance(self._worker, multiprocessing.process.BaseProcess) and self._worker.is_alive():
            logger.warning("detector worker did not exit, terminating")
            self._worker.terminate()
