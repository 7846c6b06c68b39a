#!/usr/bin/env python3
"""Fast, oracle-free split detection for two-page spreads.

Estimates where to cut a scanned spread into two pages, and warns when the
proposed cut line looks like it runs through text.  Meant for interactive use:
it works on a small (~500 px wide) copy of the image and needs no API calls.

Detection works on per-column statistics (see column_profile.py):
  1. Score every column in the central band (35–65 % of the width).
     A good gutter column is dark (low p10), has a long unbroken dark run
     (binding shadow) and few dark/light transitions (no glyphs).
  2. The highest-scoring column wins; ties go to the leftmost column.
  3. The winner is flagged as "text at split" when it looks busy rather
     than like a clean channel: many transitions and only short dark runs.

The split position is reported on the permille scale (0–1000, 500 = centre)
shared by every detector and the trained model.

If the image cannot be read at all, detect_split_safe() returns the centred
fallback {split_position: 500, has_text_at_split: False} instead of raising,
so interactive callers never hard-fail.

Output of the CLI is a CSV report. No image files are modified.

Usage
-----
    python heuristic_split.py images/alchemy_book
    python heuristic_split.py images/alchemy_book --output split_report.csv
    python heuristic_split.py images/alchemy_book --width 800 --force
"""

import argparse
import csv
import sys
from pathlib import Path

import numpy as np

from column_profile import ColumnProfiles, load_grayscale, profile_columns, round_half_up

# ---------------------------------------------------------------------------
# Tuning parameters
# ---------------------------------------------------------------------------
DEFAULT_ANALYSIS_WIDTH = 500   # interactive path works on a small copy
SEARCH_BAND = (0.35, 0.65)     # fraction of width searched for the gutter

# Column score weights; each component is on a rough 0–100 scale
P10_WEIGHT = 0.30
DARK_RUN_WEIGHT = 0.35
TRANSITION_WEIGHT = 0.20

TEXT_TRANSITIONS = 30          # more crossings than this looks like glyphs
TEXT_MAX_DARK_RUN_PCT = 40     # ...unless a long dark run says binding line

PORTRAIT_ASPECT = 0.9          # narrower than this: single page, skip analysis
SPREAD_ASPECT = 1.0            # wider than this counts as a spread

FALLBACK_RESULT = {"split_position": 500, "has_text_at_split": False, "fallback": True}

REPORT_FILENAME = "split_report.csv"
FIELDNAMES = [
    "image_path", "item_id", "filename", "method",
    "double_page", "split_position", "has_text_at_split", "confidence",
    "gutter_score", "aspect_ratio",
]


# ---------------------------------------------------------------------------
# Core analysis
# ---------------------------------------------------------------------------

def score_columns(profiles: ColumnProfiles, start: int, end: int) -> np.ndarray:
    """Gutter score for columns [start, end); higher means more gutter-like."""
    p10 = profiles.p10[start:end].astype(np.float64)
    dark_run = profiles.dark_run_pct[start:end]
    transitions = profiles.transitions[start:end].astype(np.float64)

    p10_score = (255.0 - p10) / 2.55
    transition_score = np.maximum(0.0, 100.0 - transitions / 5.0)
    return (
        P10_WEIGHT * p10_score
        + DARK_RUN_WEIGHT * dark_run
        + TRANSITION_WEIGHT * transition_score
    )


def find_gutter(
    profiles: ColumnProfiles,
    band: tuple[float, float] = SEARCH_BAND,
) -> tuple[int, float]:
    """
    Return (column_index, score) of the best gutter column inside `band`.

    np.argmax returns the first maximum, so equal scores resolve to the
    leftmost column.
    """
    w = profiles.width
    start = int(w * band[0])
    end = max(start + 1, int(w * band[1]))
    end = min(end, w)
    scores = score_columns(profiles, start, end)
    best = int(np.argmax(scores))
    return start + best, float(scores[best])


def has_text_at(profiles: ColumnProfiles, index: int) -> bool:
    """True when the column looks like it crosses glyphs rather than a gutter."""
    return bool(
        profiles.transitions[index] > TEXT_TRANSITIONS
        and profiles.dark_run_pct[index] < TEXT_MAX_DARK_RUN_PCT
    )


def to_permille(index: int, width: int) -> int:
    return round_half_up(index * 1000 / width)


def _confidence(aspect: float, score: float, has_text: bool) -> str:
    if aspect > 1.1 and score > 50 and not has_text:
        return "high"
    if aspect < SPREAD_ASPECT or score < 30 or has_text:
        return "low"
    return "medium"


def detect_split(gray: np.ndarray) -> dict:
    """
    Analyze one grayscale raster for a split position.

    Returns a dict with keys:
        split_position       int    (0–1000 permille of width)
        has_text_at_split    bool
        is_two_page_spread   bool   (aspect ratio > 1.0)
        confidence           'high' | 'medium' | 'low'
        gutter_score         float
        aspect_ratio         float
        transitions_at_split int
        dark_run_at_split    float  (percent of height)
    """
    h, w = gray.shape
    aspect = w / h

    if aspect < PORTRAIT_ASPECT:
        return {
            "split_position": 500, "has_text_at_split": False,
            "is_two_page_spread": False, "confidence": "high",
            "gutter_score": 0.0, "aspect_ratio": round(aspect, 3),
            "transitions_at_split": 0, "dark_run_at_split": 0.0,
        }

    profiles = profile_columns(gray)
    index, score = find_gutter(profiles)
    text = has_text_at(profiles, index)

    return {
        "split_position": to_permille(index, w),
        "has_text_at_split": text,
        "is_two_page_spread": aspect > SPREAD_ASPECT,
        "confidence": _confidence(aspect, score, text),
        "gutter_score": round(score, 3),
        "aspect_ratio": round(aspect, 3),
        "transitions_at_split": int(profiles.transitions[index]),
        "dark_run_at_split": round(float(profiles.dark_run_pct[index]), 2),
    }


def detect_split_safe(source, analysis_width: int = DEFAULT_ANALYSIS_WIDTH) -> dict:
    """
    Interactive entry point: load, downsample and analyze `source`.

    Never raises.  Anything that goes wrong while obtaining or analyzing the
    raster yields a copy of FALLBACK_RESULT.
    """
    try:
        gray = load_grayscale(source, analysis_width)
        return detect_split(gray)
    except Exception:  # noqa: BLE001
        return dict(FALLBACK_RESULT)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def find_images(images_root: Path) -> list[Path]:
    """All .jpg images under images_root except split outputs."""
    return sorted(
        p for p in images_root.rglob("*.jpg")
        if not (p.stem.endswith("_left") or p.stem.endswith("_right"))
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Heuristic split-position detection for two-page spreads.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "images_dir",
        help="Directory to scan (e.g. images/alchemy_book or a single item dir)",
    )
    parser.add_argument(
        "--output", "-o",
        default=None,
        help=f"Output CSV path (default: <images_dir>/{REPORT_FILENAME})",
    )
    parser.add_argument(
        "--width", "-w",
        type=int,
        default=DEFAULT_ANALYSIS_WIDTH,
        metavar="PX",
        help=f"Analysis width in pixels (default: {DEFAULT_ANALYSIS_WIDTH})",
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help=f"Re-analyze all images even if {REPORT_FILENAME} already exists",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress per-image progress output",
    )
    args = parser.parse_args()

    images_root = Path(args.images_dir)
    if not images_root.exists():
        print(f"Error: directory not found: {images_root}", file=sys.stderr)
        sys.exit(1)

    out_path = Path(args.output) if args.output else images_root / REPORT_FILENAME
    if out_path.exists() and not args.force:
        print(
            f"{out_path.name} already exists ({out_path}). Use --force to re-analyze.",
            file=sys.stderr,
        )
        sys.exit(0)

    images = find_images(images_root)
    if not images:
        print(f"No .jpg files found under {images_root}", file=sys.stderr)
        sys.exit(0)

    print(f"Scanning {len(images)} image(s)…", file=sys.stderr)
    counts = {"double": 0, "single": 0, "text_warning": 0, "fallback": 0}

    with open(out_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()

        for i, img_path in enumerate(images, 1):
            result = detect_split_safe(img_path, args.width)
            if result.get("fallback"):
                counts["fallback"] += 1
                print(
                    f"  Warning: could not analyze {img_path.name}; using centre fallback",
                    file=sys.stderr,
                )

            double = bool(result.get("is_two_page_spread", False))
            counts["double" if double else "single"] += 1
            if result["has_text_at_split"]:
                counts["text_warning"] += 1

            writer.writerow({
                "image_path": str(img_path),
                "item_id": img_path.parent.name,
                "filename": img_path.name,
                "method": "heuristic",
                "double_page": double,
                "split_position": result["split_position"],
                "has_text_at_split": result["has_text_at_split"],
                "confidence": result.get("confidence", "low"),
                "gutter_score": result.get("gutter_score", ""),
                "aspect_ratio": result.get("aspect_ratio", ""),
            })

            if not args.quiet:
                flag = "DOUBLE" if double else "single"
                warn = "  TEXT!" if result["has_text_at_split"] else ""
                print(
                    f"  [{i:04d}/{len(images)}] {flag:6s} "
                    f"split={result['split_position']:4d}  "
                    f"({result.get('confidence', 'low'):6s}){warn}  {img_path.name}",
                    file=sys.stderr,
                )

    total = counts["double"] + counts["single"]
    print(
        f"\nDone. {total} image(s) analyzed: "
        f"{counts['double']} double-page, {counts['single']} single-page"
        + (f", {counts['text_warning']} with text at split" if counts["text_warning"] else "")
        + (f", {counts['fallback']} unreadable" if counts["fallback"] else "")
        + ".",
        file=sys.stderr,
    )
    print(f"Report → {out_path}", file=sys.stderr)


if __name__ == "__main__":
    main()
