"""Feature extraction for the trained split-position model.

Turns one scanned spread into a SplitFeatures record: a few dozen named
scalars describing the centre band, the page edges, the column at the
heuristically predicted gutter, and the text blocks on either side.  The same
record is stored with every oracle-labelled training example and fed to the
predictor at inference time, so extraction has to be exact and must fail
loudly: a degenerate feature vector would silently poison the training set.

Units
-----
  permille  (0–1000 of width, like split positions):
            predicted_position, text_gap_center, ideal_split_from_text,
            left/right_page_text_start/end
  percent of width (0–100):
            text_gap_width, left_margin, right_margin,
            left_text_end_idx, right_text_start_idx
  percent of centre band (0–100):
            center_darkest_idx, center_brightest_idx
  analysis columns:
            gutter_width
"""

import math
from collections import defaultdict
from dataclasses import asdict, dataclass, fields
from pathlib import Path

import numpy as np

from column_profile import ColumnProfiles, load_grayscale, profile_columns

# ---------------------------------------------------------------------------
# Tuning parameters
# ---------------------------------------------------------------------------
CENTER_BAND = (0.40, 0.60)     # where the gutter is searched for
EDGE_FRAC = 0.05               # outer strip used for edge brightness
INVERTED_GUTTER_DIFF = 30      # centre this much brighter than edges → bright gap
DARK_GUTTER_BIAS = 0.005       # dark-gutter minimum tends to sit left of the cut
GUTTER_MARGIN = 20             # p10 distance from the extreme still "in" the gutter
TEXT_TRANSITIONS = 20          # columns above this likely cross text lines
TEXT_WINDOW_FRAC = 0.01        # sliding vote window, fraction of width
MIN_TEXT_WINDOW = 3
MIN_WIDTH = 20                 # narrower rasters cannot be analyzed

# Features that every usable training example must carry as finite numbers
CORE_FEATURES = ("center_darkest_idx", "center_brightest_idx", "edge_center_diff", "aspect_ratio")


@dataclass
class SplitFeatures:
    # Image level
    aspect_ratio: float
    width: int
    height: int

    # Centre band (40–60 %)
    center_darkest_p10: float
    center_darkest_idx: float
    center_brightest_p10: float
    center_brightest_idx: float
    center_avg_p10: float
    center_p10_variance: float

    # Edges vs centre
    left_edge_p10: float
    right_edge_p10: float
    edge_center_diff: float

    # Column at the heuristically predicted gutter
    predicted_position: float
    predicted_dark_run: float
    predicted_transitions: int
    predicted_p10: float

    has_inverted_gutter: bool
    gutter_width: int

    # Text blocks
    left_text_end_idx: float
    right_text_start_idx: float
    text_gap_width: float
    text_gap_center: float
    left_page_text_start: float | None = None
    left_page_text_end: float | None = None
    right_page_text_start: float | None = None
    right_page_text_end: float | None = None
    left_margin: float | None = None
    right_margin: float | None = None
    ideal_split_from_text: float | None = None

    # Book context, filled in by the caller when known
    page_position: float | None = None
    book_size_category: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SplitFeatures":
        """Build from a stored dict, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def is_finite(self) -> bool:
        """True when every numeric feature is a finite real number."""
        for value in asdict(self).values():
            if value is None or isinstance(value, bool):
                continue
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                return False
        return True


def book_size_category(total_pages: int) -> int:
    """0 = small (<100 pages), 1 = medium (100–299), 2 = large (300+)."""
    if total_pages < 100:
        return 0
    if total_pages < 300:
        return 1
    return 2


def page_context(images: list[Path]) -> dict[Path, tuple[str, float, int]]:
    """
    Map each image to (book_id, page_position, book_size_category).

    Books are the parent directories (images/<book>/<page>.jpg); pages are
    ordered by path within their book and page_position runs 1/total … 1.
    """
    by_book: dict[Path, list[Path]] = defaultdict(list)
    for p in images:
        by_book[p.parent].append(p)

    context = {}
    for book_dir, pages in by_book.items():
        pages.sort()
        total = len(pages)
        category = book_size_category(total)
        for i, p in enumerate(pages, 1):
            context[p] = (book_dir.name, i / total, category)
    return context


# ---------------------------------------------------------------------------
# Text block scan
# ---------------------------------------------------------------------------

def _text_mask(profiles: ColumnProfiles) -> np.ndarray:
    """
    Boolean per column: does the sliding window around it vote "text"?

    A column counts as text when more than `window` of the 2·window + 1
    columns around it have more than TEXT_TRANSITIONS crossings.  Windows are
    truncated at the image edges but the vote threshold is not.
    """
    w = profiles.width
    window = max(MIN_TEXT_WINDOW, int(w * TEXT_WINDOW_FRAC))
    busy = (profiles.transitions > TEXT_TRANSITIONS).astype(np.int32)
    csum = np.concatenate(([0], np.cumsum(busy)))
    idx = np.arange(w)
    lo = np.maximum(0, idx - window)
    hi = np.minimum(w - 1, idx + window)
    votes = csum[hi + 1] - csum[lo]
    return votes > window


def _first(mask: np.ndarray, indices, default: int) -> int:
    for i in indices:
        if mask[i]:
            return i
    return default


def text_boundaries(profiles: ColumnProfiles) -> dict:
    """
    Locate the inner and outer edges of the text block on each page.

    Returns analysis-column indices:
        left_start   first text column scanning right from the left edge
        left_end     first text column scanning left from the centre
        right_start  first text column scanning right from the centre
        right_end    first text column scanning left from the right edge
    """
    w = profiles.width
    center = w // 2
    mask = _text_mask(profiles)

    left_start = _first(mask, range(0, center), 0)
    left_end = _first(mask, range(center, left_start - 1, -1), center)
    right_end = _first(mask, range(w - 1, center, -1), w - 1)
    right_start = _first(mask, range(center, right_end + 1), center)

    return {
        "left_start": left_start,
        "left_end": left_end,
        "right_start": right_start,
        "right_end": right_end,
    }


def _longest_run(mask: np.ndarray) -> int:
    best = run = 0
    for flag in mask:
        run = run + 1 if flag else 0
        best = max(best, run)
    return best


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def features_from_raster(gray: np.ndarray) -> SplitFeatures:
    """Compute SplitFeatures from a decoded grayscale raster."""
    if gray.ndim != 2:
        raise ValueError(f"expected a 2-D grayscale raster, got shape {gray.shape}")
    h, w = gray.shape
    if w < MIN_WIDTH or h < 2:
        raise ValueError(f"raster too small for feature extraction: {w}x{h}")

    profiles = profile_columns(gray)
    p10 = profiles.p10.astype(np.float64)

    # --- Centre band ------------------------------------------------------
    band_start = int(w * CENTER_BAND[0])
    band_end = int(w * CENTER_BAND[1])
    band = p10[band_start:band_end]
    band_len = len(band)

    darkest_idx = int(np.argmin(band))
    brightest_idx = int(np.argmax(band))
    darkest_p10 = float(band[darkest_idx])
    brightest_p10 = float(band[brightest_idx])
    avg_p10 = float(band.mean())
    variance = float(band.var())

    # --- Edges --------------------------------------------------------------
    edge = max(1, int(w * EDGE_FRAC))
    left_edge = float(p10[:edge].mean())
    right_edge = float(p10[-edge:].mean())
    edge_center_diff = float(band[band_len // 2]) - (left_edge + right_edge) / 2
    inverted = edge_center_diff > INVERTED_GUTTER_DIFF

    # --- Predicted gutter column --------------------------------------------
    if inverted:
        predicted = band_start + brightest_idx
    else:
        predicted = band_start + darkest_idx + int(w * DARK_GUTTER_BIAS)
    predicted = min(predicted, w - 1)
    col = profiles[predicted]

    if inverted:
        in_gutter = band > brightest_p10 - GUTTER_MARGIN
    else:
        in_gutter = band < darkest_p10 + GUTTER_MARGIN
    gutter_width = _longest_run(in_gutter)

    # --- Text blocks ---------------------------------------------------------
    tb = text_boundaries(profiles)
    gap_width = max(0, tb["right_start"] - tb["left_end"])
    gap_center = (tb["left_end"] + tb["right_start"]) / 2
    left_margin = tb["left_start"]
    right_margin = (w - 1) - tb["right_end"]
    ideal_split = gap_center + (left_margin - right_margin) / 2

    def permille(x: float) -> float:
        return x / w * 1000

    def pct(x: float) -> float:
        return x / w * 100

    def band_pct(x: int) -> float:
        return x / band_len * 100

    return SplitFeatures(
        aspect_ratio=w / h,
        width=w,
        height=h,
        center_darkest_p10=darkest_p10,
        center_darkest_idx=band_pct(darkest_idx),
        center_brightest_p10=brightest_p10,
        center_brightest_idx=band_pct(brightest_idx),
        center_avg_p10=avg_p10,
        center_p10_variance=variance,
        left_edge_p10=left_edge,
        right_edge_p10=right_edge,
        edge_center_diff=edge_center_diff,
        predicted_position=permille(predicted),
        predicted_dark_run=col.max_dark_run * 100.0 / h,
        predicted_transitions=col.transitions,
        predicted_p10=float(col.p10),
        has_inverted_gutter=bool(inverted),
        gutter_width=gutter_width,
        left_text_end_idx=pct(tb["left_end"]),
        right_text_start_idx=pct(tb["right_start"]),
        text_gap_width=pct(gap_width),
        text_gap_center=permille(gap_center),
        left_page_text_start=permille(tb["left_start"]),
        left_page_text_end=permille(tb["left_end"]),
        right_page_text_start=permille(tb["right_start"]),
        right_page_text_end=permille(tb["right_end"]),
        left_margin=pct(left_margin),
        right_margin=pct(right_margin),
        ideal_split_from_text=permille(ideal_split),
    )


def extract_features(
    source,
    analysis_width: int | None = None,
    page_position: float | None = None,
    book_size_category: int | None = None,
) -> SplitFeatures:
    """
    Load `source` (path, URL, bytes, PIL image or array) and extract features.

    analysis_width=None analyzes the image at full resolution.  Raises on
    unreadable images and on rasters too small to analyze.
    """
    gray = load_grayscale(source, analysis_width)
    features = features_from_raster(gray)
    features.page_position = page_position
    features.book_size_category = book_size_category
    return features
