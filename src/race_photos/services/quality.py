"""Sharpness scoring from Laplacian variance."""

import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageOps

from race_photos.services.renditions import open_image

logger = logging.getLogger(__name__)

ANALYSIS_SIZE = (256, 256)
# Variance at which a photo is considered fully sharp.
_VARIANCE_SCALE = 500.0
_NEUTRAL_SCORE = 50


@dataclass(frozen=True)
class QualityResult:
    """Sharpness score in 0..100 and the derived blur flag."""

    score: int
    is_blurry: bool


def laplacian_variance(image: Image.Image) -> float:
    """Return the mean squared 4-neighbour Laplacian over interior pixels."""
    pixels = np.asarray(image.convert("L"), dtype=np.float64)
    if pixels.shape[0] < 3 or pixels.shape[1] < 3:  # noqa: PLR2004
        return 0.0
    center = pixels[1:-1, 1:-1]
    laplacian = (
        pixels[:-2, 1:-1]
        + pixels[2:, 1:-1]
        + pixels[1:-1, :-2]
        + pixels[1:-1, 2:]
        - 4.0 * center
    )
    return float(np.mean(laplacian**2))


def score_from_variance(variance: float) -> int:
    """Map an edge-response variance onto the 0..100 score scale."""
    return min(100, int(variance / _VARIANCE_SCALE * 100 + 0.5))


@dataclass
class QualityAnalyzer:
    """Deterministic sharpness estimator."""

    threshold: int = 40

    def analyze(self, data: bytes) -> QualityResult:
        """Score an encoded raster; never raises."""
        try:
            with open_image(data) as image:
                image.load()
                small = ImageOps.contain(image, ANALYSIS_SIZE)
            score = score_from_variance(laplacian_variance(small))
        except Exception:
            logger.exception("Quality analysis failed")
            return QualityResult(score=_NEUTRAL_SCORE, is_blurry=False)
        return QualityResult(score=score, is_blurry=score < self.threshold)
