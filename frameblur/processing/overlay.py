"""Debug overlay: raw detection boxes with class labels."""

from __future__ import annotations

from typing import Iterable, Sequence

import cv2
import numpy as np

from frameblur.models import Box

BOX_COLOR = (56, 56, 255)     # BGR
TEXT_COLOR = (255, 255, 255)


def draw_detection_boxes(image: np.ndarray, labels: Sequence[str],
                         boxes: Iterable[Box]) -> None:
    """Draw every box with its label and score onto the frame in place."""
    font = cv2.FONT_HERSHEY_SIMPLEX
    scale = 0.5
    thickness = 2

    for box in boxes:
        label = labels[box.label_index] if box.label_index < len(labels) else "?"
        desc = f"{label} {box.confidence * 100:.1f}"
        x, y, w, h = (int(round(v)) for v in box.xywh)

        cv2.rectangle(image, (x, y), (x + w, y + h), BOX_COLOR, thickness)

        (text_w, text_h), baseline = cv2.getTextSize(desc, font, scale, 1)
        y_text = y - text_h - baseline - thickness
        if y_text < 0:
            y_text = 0
        cv2.rectangle(image, (x - 1, y_text),
                      (x + text_w + thickness, y_text + text_h + baseline + thickness),
                      BOX_COLOR, -1)
        cv2.putText(image, desc, (x, y_text + text_h + 1), font, scale,
                    TEXT_COLOR, 1, cv2.LINE_AA)
