"""Probe-then-commit selection of backend configurations."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, TypeVar

from frameblur.errors import CapabilityUnavailable

logger = logging.getLogger(__name__)

C = TypeVar("C")
R = TypeVar("R")


def first_supported(candidates: Iterable[C],
                    probe: Callable[[C], Optional[R]]) -> Optional[tuple[C, R]]:
    """Return (candidate, probe result) for the first candidate the probe accepts.

    The probe signals rejection by returning None or raising
    CapabilityUnavailable. Returns None when every candidate is rejected.
    """
    for candidate in candidates:
        try:
            result = probe(candidate)
        except CapabilityUnavailable as exc:
            logger.debug("capability probe rejected %s: %s", candidate, exc)
            continue
        if result is not None:
            logger.debug("capability probe accepted %s", candidate)
            return candidate, result
        logger.debug("capability probe rejected %s", candidate)
    return None
