"""Per-file memoization of detection results, persisted as one JSON document.

Layout of the stored document::

    {
      "<model>-<file>-<size>": {
        "<frameIndex>": [{"labelIndex": 1, "confidence": 0.9, "xywh": [x, y, w, h]}, ...],
        ...
      },
      ...
    }

Frame indices are stored as strings so the document stays plain JSON.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Union

from frameblur.models import Box, CacheKey
from frameblur.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Union[Iterable[Box], Awaitable[Iterable[Box]]]]


class FileDetections:
    """Detections of one model over one file, keyed by frame index."""

    def __init__(self, data: dict[str, Any] | None, saver: Callable[[], None]):
        self._frames: dict[str, list[Box]] = {}
        self._saver = saver
        self._pending: dict[str, asyncio.Future] = {}
        for frame_index, boxes in (data or {}).items():
            self._frames[str(frame_index)] = [Box.from_dict(b) for b in boxes]

    def size(self) -> int:
        return len(self._frames)

    def get(self, frame_index: int) -> list[Box] | None:
        return self._frames.get(str(frame_index))

    def set(self, frame_index: int, boxes: Iterable[Box]) -> list[Box]:
        stored = list(boxes)
        self._frames[str(frame_index)] = stored
        self._saver()
        return stored

    def purge(self) -> None:
        self._frames = {}
        self._saver()

    async def get_or_compute(self, frame_index: int, compute: ComputeFn) -> list[Box]:
        """Return cached boxes for the frame or compute, store and return them.

        ``compute`` may return boxes directly or an awaitable. Concurrent
        callers asking for the same frame share one computation.
        """
        cached = self.get(frame_index)
        if cached is not None:
            return cached

        key = str(frame_index)
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = compute()
            if inspect.isawaitable(result):
                result = await result
            boxes = self.set(frame_index, result)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # mark retrieved, the caller below re-raises it
            future.exception()
            raise
        finally:
            self._pending.pop(key, None)

        future.set_result(boxes)
        return boxes

    def to_json(self) -> dict[str, list[dict[str, Any]]]:
        return {
            frame_index: [box.to_dict() for box in boxes]
            for frame_index, boxes in self._frames.items()
        }


class DetectionCache:
    """All detection buckets, loaded from and saved to a key/value store."""

    def __init__(self, store: KeyValueStore, storage_key: str = "detectionCache"):
        self._store = store
        self._storage_key = storage_key
        self._entries: dict[str, FileDetections | dict] = {}

        stored = store.get(storage_key)
        if stored:
            try:
                parsed = json.loads(stored)
                if not isinstance(parsed, dict):
                    raise ValueError(f"expected an object, got {type(parsed).__name__}")
                self._entries = dict(parsed)
            except ValueError:
                logger.warning("Stored detection cache is corrupt, starting empty",
                               exc_info=True)
                self._entries = {}
        logger.info("Detection cache loaded with %d file entries", len(self._entries))

    def for_file(self, file_name: str, file_size: int, model_name: str) -> FileDetections:
        """Return (creating if needed) the bucket for a file and model."""
        key = CacheKey(model_name=model_name, file_name=file_name,
                       file_size=int(file_size)).serialize()
        entry = self._entries.get(key)
        if isinstance(entry, FileDetections):
            return entry

        data = entry if isinstance(entry, dict) else None
        try:
            bucket = FileDetections(data, self._save)
        except (KeyError, TypeError, ValueError):
            logger.warning("Cached detections for %s are corrupt, discarding", key)
            bucket = FileDetections(None, self._save)

        self._entries[key] = bucket
        return bucket

    def _save(self) -> None:
        document = {}
        for key, entry in self._entries.items():
            document[key] = entry.to_json() if isinstance(entry, FileDetections) else entry
        self._store.set(self._storage_key, json.dumps(document))
