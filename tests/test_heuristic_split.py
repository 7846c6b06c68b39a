import numpy as np
from PIL import Image

from column_profile import profile_columns
from heuristic_split import (
    FALLBACK_RESULT,
    detect_split,
    detect_split_safe,
    find_gutter,
    has_text_at,
    to_permille,
)
from synthetic import dense_text_page, gutter_spread, text_spread


def test_dark_gutter_is_found_without_text_warning():
    gray = gutter_spread(width=600, height=400, gutter=(290, 310))
    profiles = profile_columns(gray)

    index, score = find_gutter(profiles)

    assert 290 <= index < 310
    assert not has_text_at(profiles, index)
    assert score > 50


def test_ties_resolve_to_leftmost_column():
    # Every column inside the gutter scores the same; the first one wins.
    gray = gutter_spread(width=600, height=400, gutter=(290, 310))
    index, _ = find_gutter(profile_columns(gray))
    assert index == 290


def test_detect_split_on_gutter_spread():
    result = detect_split(gutter_spread())

    assert 483 <= result["split_position"] <= 517
    assert result["has_text_at_split"] is False
    assert result["is_two_page_spread"] is True
    assert result["confidence"] == "high"


def test_dense_text_across_centre_raises_text_warning():
    result = detect_split(dense_text_page())

    assert result["has_text_at_split"] is True
    assert result["confidence"] == "low"


def test_portrait_page_is_not_a_spread():
    gray = np.full((800, 500), 235, dtype=np.uint8)
    result = detect_split(gray)

    assert result["is_two_page_spread"] is False
    assert result["split_position"] == 500


def test_split_position_stays_in_permille_range():
    rng = np.random.default_rng(3)
    for width, height in [(500, 300), (640, 480), (900, 500)]:
        gray = rng.integers(0, 256, size=(height, width), dtype=np.uint8)
        position = detect_split(gray)["split_position"]
        assert 0 <= position <= 1000


def test_mirrored_text_spread_end_to_end():
    # 1000×700 scan with a 20 px gutter at x=490–510, analyzed at 500 px.
    image = Image.fromarray(text_spread(width=1000, height=700, gutter=(490, 510)))

    result = detect_split_safe(image, analysis_width=500)

    assert abs(result["split_position"] - 500) <= 10
    assert result["has_text_at_split"] is False
    assert "fallback" not in result


def test_unreadable_input_returns_centred_fallback(tmp_path):
    assert detect_split_safe(b"not an image") == FALLBACK_RESULT
    assert detect_split_safe(tmp_path / "missing.jpg") == FALLBACK_RESULT


def test_fallback_is_a_fresh_copy():
    result = detect_split_safe(b"")
    result["split_position"] = 1
    assert FALLBACK_RESULT["split_position"] == 500


def test_permille_halves_round_up():
    assert to_permille(201, 400) == 503
    assert to_permille(1, 400) == 3
    assert to_permille(290, 600) == 483
