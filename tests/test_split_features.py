import math

import numpy as np
import pytest

from column_profile import profile_columns
from split_features import (
    SplitFeatures,
    book_size_category,
    extract_features,
    features_from_raster,
    text_boundaries,
)
from synthetic import PAPER, gutter_spread, inverted_gutter_spread, text_spread


def test_text_blocks_bracket_the_gutter():
    features = features_from_raster(text_spread(width=1000, height=700, gutter=(490, 510)))

    assert features.left_page_text_end <= features.right_page_text_start
    assert features.text_gap_width >= 0
    assert abs(features.text_gap_center - 500) < 5
    assert abs(features.ideal_split_from_text - 500) < 5
    # Mirrored layout: equal outer margins, no margin bias.
    assert features.left_margin == pytest.approx(features.right_margin, abs=0.2)


def test_text_boundaries_in_columns():
    bounds = text_boundaries(profile_columns(text_spread()))

    assert bounds["left_start"] == pytest.approx(80, abs=2)
    assert bounds["left_end"] == pytest.approx(439, abs=2)
    assert bounds["right_start"] == pytest.approx(560, abs=2)
    assert bounds["right_end"] == pytest.approx(919, abs=2)


def test_dark_gutter_prediction_and_width():
    features = features_from_raster(gutter_spread(width=1000, height=700, gutter=(490, 510)))

    assert features.has_inverted_gutter is False
    assert features.edge_center_diff < 0
    # Darkest centre column is the gutter's left edge plus the 0.5 % bias.
    assert features.predicted_position == pytest.approx(495.0)
    assert features.predicted_dark_run == pytest.approx(100.0)
    assert features.predicted_transitions == 0
    assert features.gutter_width == 20


def test_inverted_gutter_uses_brightest_column():
    features = features_from_raster(inverted_gutter_spread(width=400, height=300, gap=(190, 210)))

    assert features.has_inverted_gutter is True
    assert features.edge_center_diff > 30
    assert features.predicted_position == pytest.approx(190 / 400 * 1000)
    assert features.gutter_width == 20


def test_centre_band_indices_are_percent_of_band():
    # 600 px wide: band is columns 240–359, gutter starts at column 300.
    features = features_from_raster(gutter_spread(width=600, height=400, gutter=(300, 320)))

    assert features.center_darkest_idx == pytest.approx(50.0)
    assert features.center_brightest_idx == pytest.approx(0.0)
    assert features.center_avg_p10 < PAPER


def test_blank_page_has_zero_width_text_gap():
    gray = np.full((300, 400), PAPER, dtype=np.uint8)
    features = features_from_raster(gray)

    assert features.text_gap_width == 0
    assert features.left_page_text_end == features.right_page_text_start
    assert features.is_finite()


def test_extract_features_attaches_book_context():
    features = extract_features(gutter_spread(), page_position=0.25, book_size_category=2)

    assert features.page_position == 0.25
    assert features.book_size_category == 2
    assert features.is_finite()


def test_extract_features_raises_on_unreadable_input():
    with pytest.raises(Exception):
        extract_features(b"\x00\x01 not an image")


def test_extract_features_rejects_tiny_raster():
    with pytest.raises(ValueError):
        features_from_raster(np.zeros((50, 10), dtype=np.uint8))


def test_dict_round_trip_ignores_unknown_keys():
    features = features_from_raster(gutter_spread())
    data = features.to_dict()
    data["feature_from_the_future"] = 1.0

    assert SplitFeatures.from_dict(data) == features


def test_is_finite_detects_nan():
    features = features_from_raster(gutter_spread())
    features.edge_center_diff = math.nan
    assert not features.is_finite()


def test_book_size_category_thresholds():
    assert book_size_category(99) == 0
    assert book_size_category(100) == 1
    assert book_size_category(299) == 1
    assert book_size_category(300) == 2
