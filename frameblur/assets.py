"""Model weight assets, optionally stored as numbered parts."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path

from frameblur.errors import CancelledByUser, ConfigurationError

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1 << 20


def weights_file_name(name: str) -> str:
    return name if name.endswith(".onnx") else f"{name}.onnx"


def part_paths(model_dir: str | Path, name: str, parts: int) -> list[Path]:
    base = Path(model_dir) / weights_file_name(name)
    return [base.with_name(f"{base.name}.{i}") for i in range(parts)]


def assemble_model(model_dir: str | Path, name: str, parts: int,
                   cancel: threading.Event | None = None) -> Path:
    """Return the path of the model weights, joining numbered parts if needed.

    With ``parts <= 0`` the weights are a single file. Otherwise the parts
    ``<name>.onnx.0`` .. ``<name>.onnx.<parts-1>`` are concatenated in order.
    An assembled file newer than all its parts is reused. Setting ``cancel``
    interrupts assembly with CancelledByUser.
    """
    target = Path(model_dir) / weights_file_name(name)
    if parts <= 0:
        if not target.is_file():
            raise ConfigurationError(f"model weights not found: {target}")
        return target

    sources = part_paths(model_dir, name, parts)
    missing = [str(p) for p in sources if not p.is_file()]
    if missing:
        raise ConfigurationError(f"model parts missing: {', '.join(missing)}")

    newest = max(p.stat().st_mtime for p in sources)
    if target.is_file() and target.stat().st_mtime >= newest:
        logger.info("Using assembled model %s", target)
        return target

    logger.info("Assembling %s from %d parts", target.name, parts)
    # one partial file per assembly
    with tempfile.NamedTemporaryFile(dir=target.parent, prefix=target.name + ".",
                                     suffix=".partial", delete=False) as tmp:
        partial = Path(tmp.name)
    try:
        with open(partial, "wb") as out:
            for i, source in enumerate(sources):
                if cancel is not None and cancel.is_set():
                    raise CancelledByUser("model load cancelled")
                with open(source, "rb") as f:
                    shutil.copyfileobj(f, out, _COPY_CHUNK)
                logger.debug("model part %d/%d appended", i + 1, parts)
        os.replace(partial, target)
    finally:
        partial.unlink(missing_ok=True)
    return target
