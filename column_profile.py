"""Per-column pixel statistics shared by every split detector.

Both the interactive heuristic (heuristic_split.py) and the training feature
extractor (split_features.py) reduce a grayscale raster to one summary per
pixel column before looking for a gutter.  This module does that reduction
once, vectorised over columns with numpy.

Column statistics
-----------------
  p10           10th-percentile brightness of the column (0–255, lower = darker).
                Robust against a handful of noisy pixels.
  max_dark_run  longest unbroken vertical run of pixels below the darkness
                threshold.  A binding shadow or printed rule gives a long run.
  transitions   number of dark↔light crossings from top to bottom.  Text gives
                many, a blank margin or a solid gutter gives almost none.

Image sources
-------------
load_grayscale() accepts a local path, an http(s) URL, encoded image bytes,
a PIL image or an already-decoded 2-D uint8 array, and optionally downsamples
to a fixed analysis width (aspect ratio preserved).
"""

import io
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import requests
from PIL import Image

DARK_THRESHOLD = 180       # pixels below this count as "dark" (ink, shadow)
P10_FRACTION = 0.10        # percentile used for the robust darkness value
FETCH_TIMEOUT = 30         # seconds, for images addressed by URL


def round_half_up(x: float) -> int:
    """Nearest integer with halves rounded up (2.5 -> 3, -2.5 -> -2), unlike round()."""
    return math.floor(x + 0.5)


@dataclass(frozen=True)
class ColumnProfile:
    x: int
    p10: int
    max_dark_run: int
    transitions: int


class ColumnProfiles:
    """Column statistics for a whole raster, stored as parallel numpy arrays."""

    def __init__(
        self,
        p10: np.ndarray,
        max_dark_run: np.ndarray,
        transitions: np.ndarray,
        height: int,
    ) -> None:
        self.p10 = p10
        self.max_dark_run = max_dark_run
        self.transitions = transitions
        self.height = height
        for arr in (self.p10, self.max_dark_run, self.transitions):
            arr.setflags(write=False)

    @property
    def width(self) -> int:
        return len(self.p10)

    @property
    def dark_run_pct(self) -> np.ndarray:
        """Longest dark run per column as a percentage of the raster height."""
        return self.max_dark_run * (100.0 / self.height)

    def __len__(self) -> int:
        return self.width

    def __getitem__(self, x: int) -> ColumnProfile:
        if x < 0:
            x += self.width
        if not 0 <= x < self.width:
            raise IndexError(f"column {x} out of range for width {self.width}")
        return ColumnProfile(
            x=x,
            p10=int(self.p10[x]),
            max_dark_run=int(self.max_dark_run[x]),
            transitions=int(self.transitions[x]),
        )


# ---------------------------------------------------------------------------
# Image loading
# ---------------------------------------------------------------------------

def _open_image(source) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray, memoryview)):
        return Image.open(io.BytesIO(bytes(source)))
    if isinstance(source, str) and source.startswith(("http://", "https://")):
        resp = requests.get(source, timeout=FETCH_TIMEOUT)
        resp.raise_for_status()
        return Image.open(io.BytesIO(resp.content))
    return Image.open(Path(source))


def load_grayscale(source, analysis_width: int | None = None) -> np.ndarray:
    """
    Decode `source` into a 2-D uint8 grayscale array (H × W).

    When analysis_width is given and the image is wider, it is resized down to
    that width with the aspect ratio preserved.  Narrower images are left
    alone.  Decoding errors propagate to the caller.
    """
    if isinstance(source, np.ndarray):
        if source.ndim != 2:
            raise ValueError(f"expected a 2-D grayscale array, got shape {source.shape}")
        img = Image.fromarray(source.astype(np.uint8, copy=False))
    else:
        img = _open_image(source).convert("L")

    w, h = img.size
    if w == 0 or h == 0:
        raise ValueError("image has no pixels")
    if analysis_width and w > analysis_width:
        new_h = max(1, round(h * analysis_width / w))
        img = img.resize((analysis_width, new_h), Image.Resampling.LANCZOS)

    return np.asarray(img, dtype=np.uint8)


# ---------------------------------------------------------------------------
# Column statistics
# ---------------------------------------------------------------------------

def profile_columns(gray: np.ndarray, dark_threshold: int = DARK_THRESHOLD) -> ColumnProfiles:
    """
    Compute p10, longest dark run and transition count for every column.

    Pure function of the raster: O(W·H log H) for the per-column sort, the
    run and transition scans are single passes down the rows.
    """
    if gray.ndim != 2 or gray.size == 0:
        raise ValueError(f"expected a non-empty 2-D raster, got shape {gray.shape}")
    h, w = gray.shape

    p10 = np.sort(gray, axis=0)[int(h * P10_FRACTION)].astype(np.int32)

    dark = gray < dark_threshold
    transitions = np.count_nonzero(dark[1:] != dark[:-1], axis=0).astype(np.int32)

    # Running length of the current dark streak, carried row by row for all
    # columns at once.
    run = np.zeros(w, dtype=np.int32)
    max_run = np.zeros(w, dtype=np.int32)
    for row in dark:
        run = np.where(row, run + 1, 0)
        np.maximum(max_run, run, out=max_run)

    return ColumnProfiles(p10=p10, max_dark_run=max_run, transitions=transitions, height=h)
