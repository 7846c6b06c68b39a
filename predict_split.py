#!/usr/bin/env python3
"""Predict split positions for spread images with the trained model.

Extracts features from each image and applies the saved split model, writing
a split_report.csv in the same format as heuristic_split.py so either report
can drive split_spreads.py.  No network access is needed.

Model predictions are clamped to 200–800 permille; see split_model.py.

Usage
-----
    python predict_split.py images/alchemy_book
    python predict_split.py images/alchemy_book --model-path data/split_model.json
    python predict_split.py images/alchemy_book --output model_report.csv --force
"""

import argparse
import csv
import sys
from pathlib import Path

from heuristic_split import FIELDNAMES, REPORT_FILENAME, find_images
from split_features import SplitFeatures, extract_features, page_context
from split_model import DEFAULT_MODEL_PATH, ModelStore, SplitModel, predict_split


def predict_image(
    model: SplitModel,
    img_path: Path,
    context: tuple[str, float, int],
    analysis_width: int | None = None,
) -> tuple[int, SplitFeatures]:
    """Extract features with the page's book context and predict its split."""
    _, page_position, size_category = context
    features = extract_features(
        img_path,
        analysis_width=analysis_width,
        page_position=page_position,
        book_size_category=size_category,
    )
    return predict_split(model, features), features


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Predict split positions with the trained split model.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("images_dir", help="Directory to scan (e.g. images/alchemy_book)")
    parser.add_argument(
        "--model-path", "-m",
        default=str(DEFAULT_MODEL_PATH),
        help=f"Trained model file (default: {DEFAULT_MODEL_PATH})",
    )
    parser.add_argument(
        "--output", "-o",
        default=None,
        help=f"Output CSV path (default: <images_dir>/{REPORT_FILENAME})",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=None,
        metavar="PX",
        help="Feature analysis width in pixels (default: full resolution)",
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help=f"Overwrite an existing {REPORT_FILENAME}",
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

    model = ModelStore(Path(args.model_path)).load()
    if model is None:
        print(
            f"Error: no trained model at {args.model_path}. Run train_split_model.py first.",
            file=sys.stderr,
        )
        sys.exit(1)

    out_path = Path(args.output) if args.output else images_root / REPORT_FILENAME
    if out_path.exists() and not args.force:
        print(
            f"{out_path.name} already exists ({out_path}). Use --force to overwrite.",
            file=sys.stderr,
        )
        sys.exit(0)

    images = find_images(images_root)
    if not images:
        print(f"No .jpg files found under {images_root}", file=sys.stderr)
        sys.exit(0)

    print(
        f"Predicting {len(images)} image(s) with model trained on "
        f"{model.training_size} example(s) ({model.trained_at:%Y-%m-%d})…",
        file=sys.stderr,
    )
    context = page_context(images)
    counts = {"ok": 0, "error": 0}

    with open(out_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()

        for i, img_path in enumerate(images, 1):
            try:
                position, features = predict_image(model, img_path, context[img_path], args.width)
            except Exception as exc:  # noqa: BLE001
                counts["error"] += 1
                print(f"  Warning: could not analyze {img_path.name}: {exc}", file=sys.stderr)
                continue

            counts["ok"] += 1
            writer.writerow({
                "image_path": str(img_path),
                "item_id": img_path.parent.name,
                "filename": img_path.name,
                "method": "model",
                "double_page": True,
                "split_position": position,
                "has_text_at_split": "",
                "confidence": "",
                "gutter_score": "",
                "aspect_ratio": round(features.aspect_ratio, 3),
            })

            if not args.quiet:
                print(
                    f"  [{i:04d}/{len(images)}] split={position:4d}  "
                    f"gap_center={features.text_gap_center:6.1f}  {img_path.name}",
                    file=sys.stderr,
                )

    print(
        f"\nDone. {counts['ok']} image(s) predicted"
        + (f", {counts['error']} error(s)" if counts["error"] else "")
        + ".",
        file=sys.stderr,
    )
    print(f"Report → {out_path}", file=sys.stderr)


if __name__ == "__main__":
    main()
