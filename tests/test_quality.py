"""Tests for sharpness scoring."""

import io

from PIL import Image, ImageFilter

from race_photos.services.quality import (
    QualityAnalyzer,
    laplacian_variance,
    score_from_variance,
)
from tests.conftest import make_checkerboard_bytes, make_image_bytes


def test_flat_image_scores_zero_and_is_blurry() -> None:
    result = QualityAnalyzer(threshold=40).analyze(make_image_bytes())

    assert result.score == 0
    assert result.is_blurry is True


def test_checkerboard_scores_full_and_is_sharp() -> None:
    result = QualityAnalyzer(threshold=40).analyze(make_checkerboard_bytes())

    assert result.score == 100
    assert result.is_blurry is False


def test_blurring_lowers_the_score() -> None:
    sharp = Image.open(io.BytesIO(make_checkerboard_bytes((128, 128), square=8)))
    blurred = sharp.convert("RGB").filter(ImageFilter.GaussianBlur(radius=3))

    assert laplacian_variance(blurred) < laplacian_variance(sharp)


def test_score_mapping_is_capped() -> None:
    assert score_from_variance(0.0) == 0
    assert score_from_variance(250.0) == 50
    assert score_from_variance(10_000.0) == 100


def test_tiny_images_have_zero_variance() -> None:
    assert laplacian_variance(Image.new("L", (2, 2), 255)) == 0.0


def test_undecodable_input_gets_neutral_score() -> None:
    result = QualityAnalyzer().analyze(b"not an image")

    assert result.score == 50
    assert result.is_blurry is False


def test_threshold_is_configurable() -> None:
    data = make_checkerboard_bytes()

    assert QualityAnalyzer(threshold=101).analyze(data).is_blurry is True


def test_identical_bytes_get_identical_scores() -> None:
    noise = Image.effect_noise((160, 120), 40).convert("RGB")
    buffer = io.BytesIO()
    noise.save(buffer, format="JPEG", quality=85)
    data = buffer.getvalue()
    analyzer = QualityAnalyzer()

    results = [analyzer.analyze(data) for _ in range(3)]

    assert results[0] == results[1] == results[2]
