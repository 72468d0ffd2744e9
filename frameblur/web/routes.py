"""HTTP routes: REST control surface for loading, processing and the cache."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from frameblur.errors import (
    CancelledByUser,
    ConfigurationError,
    InvalidStateError,
    ModelInitError,
)
from frameblur.pipeline import Pipeline


def _cast(current_value, new_value):
    """Cast new_value to the same type as the existing config attribute."""
    if isinstance(current_value, bool):
        return new_value in (True, "true", "1", "on", 1)
    elif isinstance(current_value, int):
        return int(float(new_value))
    elif isinstance(current_value, float):
        return float(new_value)
    return new_value


def _typed_dict(config_obj, body: dict) -> dict:
    """Return a dict of values from body, cast to match config_obj field types."""
    result = {}
    for key, value in body.items():
        if hasattr(config_obj, key):
            result[key] = _cast(getattr(config_obj, key), value)
    return result


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status)


# settings applied on the next load or run; the media tool is built once at startup
VIDEO_SETTINGS = ("segment_seconds", "accelerated_decode", "accelerated_encode", "output_dir")


def create_router(pipeline: Pipeline) -> APIRouter:
    router = APIRouter()

    # --- REST API: stats ---

    @router.get("/api/stats")
    async def api_stats():
        return JSONResponse(pipeline.stats)

    # --- REST API: input & runs ---

    @router.post("/api/upload")
    async def api_upload(request: Request, name: str):
        data = await request.body()
        if not data:
            return _error(400, "empty upload")
        try:
            file_name, file_size = pipeline.load_bytes(name, data)
        except InvalidStateError as exc:
            return _error(409, str(exc))
        return JSONResponse({"status": "ok", "file_name": file_name, "file_size": file_size})

    @router.post("/api/process")
    async def api_process(request: Request):
        body = await request.json() if await request.body() else {}
        try:
            if body.get("path"):
                pipeline.load_video(body["path"])
            pipeline.start_background(body.get("output"))
        except FileNotFoundError as exc:
            return _error(404, f"file not found: {exc.filename}")
        except InvalidStateError as exc:
            return _error(409, str(exc))
        return JSONResponse({"status": "started", "file_name": pipeline.video.file_name})

    @router.post("/api/stop")
    async def api_stop():
        pipeline.stop()
        return JSONResponse({"status": "ok", "running": pipeline.running})

    # --- REST API: detection cache ---

    @router.get("/api/cache")
    async def api_cache():
        return JSONResponse({"cached_frames": pipeline.cached_frames})

    @router.delete("/api/cache")
    async def api_purge_cache(confirm: bool = False):
        try:
            purged = pipeline.purge_cache(confirm)
        except ConfigurationError as exc:
            return _error(400, str(exc))
        except InvalidStateError as exc:
            return _error(409, str(exc))
        return JSONResponse({"status": "ok", "purged": purged})

    # --- REST API: model ---

    @router.post("/api/model/reload")
    async def api_model_reload():
        if pipeline.running:
            return _error(409, "cannot reload the model while a run is in progress")
        try:
            spec = await pipeline.load_model()
        except (ConfigurationError, ModelInitError) as exc:
            return _error(500, str(exc))
        except CancelledByUser as exc:
            return _error(409, exc.reason)
        return JSONResponse({"status": "ok", "model": spec.name})

    # --- REST API: settings ---

    @router.post("/api/settings/blur")
    async def api_update_blur(request: Request):
        body = await request.json()
        typed = _typed_dict(pipeline.config.blur, body)
        typed.pop("mask_cache_size", None)
        for key, value in typed.items():
            setattr(pipeline.config.blur, key, value)
        return JSONResponse({"status": "ok", "updated": typed})

    @router.post("/api/settings/video")
    async def api_update_video(request: Request):
        body = await request.json()
        typed = _typed_dict(pipeline.config.video,
                            {k: v for k, v in body.items() if k in VIDEO_SETTINGS})
        if "segment_seconds" in typed and typed["segment_seconds"] <= 0:
            return _error(400, "segment_seconds must be > 0")
        if pipeline.running:
            return _error(409, "cannot change video settings while a run is in progress")
        for key, value in typed.items():
            setattr(pipeline.config.video, key, value)
        return JSONResponse({"status": "ok", "updated": typed})

    return router
