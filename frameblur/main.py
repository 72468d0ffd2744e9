"""Entry point: CLI argument parsing + pipeline run or uvicorn startup."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from frameblur.config import AppConfig, load_config
from frameblur.errors import FrameblurError
from frameblur.pipeline import Pipeline
from frameblur.storage.detection_cache import DetectionCache
from frameblur.storage.kv_store import KeyValueStore
from frameblur.web.app import create_app


def setup_logging(log_dir: str, verbose: bool = False) -> None:
    """Configure logging to both console and file."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_path / "frameblur.log"),
        ],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Blur faces/persons and license plates in videos and images"
    )
    parser.add_argument(
        "input",
        nargs="?",
        default=None,
        help="Video or image file to process",
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Output file (default: <output_dir>/<name>_blurred.<ext>)",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to YAML config file (default: $CONFIG_PATH or config/default.yaml)",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start the REST control server instead of a single run",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Web server host (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Web server port (overrides config)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)
    if args.input is None and not args.serve:
        parser.error("an input file is required unless --serve is given")
    return args


async def run_once(pipeline: Pipeline, input_path: str, output: str | None) -> int:
    """Load the model and the file, process it, and return an exit code."""
    logger = logging.getLogger(__name__)
    await pipeline.load_model()
    pipeline.load_video(input_path)
    result = await pipeline.process(output)
    if result is None:
        logger.info("Run stopped before completion")
        return 130
    logger.info("Output written to %s", result.output_path)
    return 0


def serve(pipeline: Pipeline, config: AppConfig) -> None:
    logger = logging.getLogger(__name__)
    app = create_app(pipeline, preload_model=True)
    logger.info("Control API: http://%s:%d", config.web.host, config.web.port)
    uvicorn.run(
        app,
        host=config.web.host,
        port=config.web.port,
        log_level="info",
        loop="asyncio",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # Load configuration
    config = load_config(args.config)

    # Apply CLI overrides
    if args.host:
        config.web.host = args.host
    if args.port:
        config.web.port = args.port

    # Setup logging
    setup_logging(config.logging.log_dir, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info("Starting frameblur")

    # Ensure data directories exist
    Path(config.cache.db_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.video.work_dir).mkdir(parents=True, exist_ok=True)

    store = KeyValueStore(config.cache.db_path)
    cache = DetectionCache(store, config.cache.storage_key)
    pipeline = Pipeline(config, cache)

    try:
        if args.serve:
            if args.input:
                pipeline.load_video(args.input)
            serve(pipeline, config)
            return 0
        return asyncio.run(run_once(pipeline, args.input, args.output))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 130
    except FrameblurError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        pipeline.close()
        store.close()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
