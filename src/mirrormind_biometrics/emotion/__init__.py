"""Emotion sub-package — the latest-label seam read by the session coordinator."""

from mirrormind_biometrics.emotion.source import EmotionSource, LatestEmotionHolder

__all__ = ["EmotionSource", "LatestEmotionHolder"]
