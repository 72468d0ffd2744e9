"""YAML configuration loader with dataclass mapping."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from frameblur.errors import ConfigurationError
from frameblur.models import ModelSpec


@dataclass
class VideoConfig:
    segment_seconds: float = 2.0
    work_dir: str = "data/work"
    output_dir: str = "data/output"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    accelerated_decode: bool = True
    accelerated_encode: bool = True


@dataclass
class ModelConfig:
    name: str = "detect_s_2024_04"
    parts: int = 0
    model_dir: str = "models"
    width: int = 1280
    height: int = 736
    labels: list = field(default_factory=lambda: ["plate", "person"])
    round_corner_ratios: list = field(default_factory=lambda: [0.95, 0.8])
    threshold_iou: float = 0.45
    threshold_conf: float = 0.1
    threshold_class: float = 0.1
    execution_providers: list = field(default_factory=lambda: ["cpu"])
    use_multithreading: bool = True
    isolation: str = "process"    # "process" or "thread"

    def spec(self) -> ModelSpec:
        return ModelSpec(
            name=self.name,
            parts=int(self.parts),
            width=int(self.width),
            height=int(self.height),
            labels=tuple(self.labels),
            round_corner_ratios=tuple(float(r) for r in self.round_corner_ratios),
            threshold_iou=float(self.threshold_iou),
            threshold_conf=float(self.threshold_conf),
            threshold_class=float(self.threshold_class),
        )


@dataclass
class BlurConfig:
    mask_cache_size: int = 100
    blur_person: bool = True
    blur_plate: bool = True
    draw_boxes: bool = False


@dataclass
class CacheConfig:
    db_path: str = "data/db/detections.db"
    storage_key: str = "detectionCache"


@dataclass
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class LoggingConfig:
    log_dir: str = "data/logs"


@dataclass
class AppConfig:
    video: VideoConfig = field(default_factory=VideoConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    blur: BlurConfig = field(default_factory=BlurConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_dict(dc: object, data: dict) -> None:
    """Apply dictionary values onto a dataclass instance, ignoring unknown keys."""
    for key, value in data.items():
        if hasattr(dc, key):
            setattr(dc, key, value)


def validate_config(config: AppConfig) -> None:
    """Raise ConfigurationError for values the pipeline cannot work with."""
    if float(config.video.segment_seconds) <= 0:
        raise ConfigurationError(
            f"segment_seconds must be > 0, got {config.video.segment_seconds}")
    if config.model.isolation not in ("process", "thread"):
        raise ConfigurationError(
            f"model isolation must be 'process' or 'thread', got {config.model.isolation!r}")
    if not config.model.execution_providers:
        raise ConfigurationError("at least one execution provider is required")
    if len(config.model.round_corner_ratios) < len(config.model.labels):
        raise ConfigurationError("every label needs a round corner ratio")
    if int(config.blur.mask_cache_size) < 1:
        raise ConfigurationError("mask_cache_size must be at least 1")


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from a YAML file, falling back to defaults."""
    config = AppConfig()

    if path is None:
        path = os.environ.get("CONFIG_PATH", "config/default.yaml")

    path = Path(path)
    if path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        section_map = {
            "video": config.video,
            "model": config.model,
            "blur": config.blur,
            "cache": config.cache,
            "web": config.web,
            "logging": config.logging,
        }

        for section_name, dc_instance in section_map.items():
            if section_name in raw and isinstance(raw[section_name], dict):
                _apply_dict(dc_instance, raw[section_name])

    # Environment variable overrides
    env_model_dir = os.environ.get("FRAMEBLUR_MODEL_DIR")
    if env_model_dir:
        config.model.model_dir = env_model_dir

    env_host = os.environ.get("WEB_HOST")
    if env_host:
        config.web.host = env_host

    env_port = os.environ.get("WEB_PORT")
    if env_port:
        config.web.port = int(env_port)

    validate_config(config)
    return config
