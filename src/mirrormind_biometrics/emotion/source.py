"""Where the session coordinator gets the current emotion label from.

Recognition itself happens elsewhere (camera capture and a remote model);
this module only holds its most recent answer.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from mirrormind_biometrics.models import EmotionLabel

logger = structlog.get_logger(__name__)


class EmotionSource(Protocol):
    def latest(self) -> EmotionLabel | None: ...


class LatestEmotionHolder:
    """In-process :class:`EmotionSource` fed by an external recogniser."""

    def __init__(self, initial: EmotionLabel | None = None) -> None:
        self._latest = initial

    def latest(self) -> EmotionLabel | None:
        return self._latest

    def update(self, label: EmotionLabel) -> None:
        self._latest = label
        logger.debug(
            "emotion.updated",
            emotion=label.emotion,
            confidence=label.confidence,
            category=label.category.value,
        )

    def clear(self) -> None:
        self._latest = None
