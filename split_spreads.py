#!/usr/bin/env python3
"""Cut spread images into page images at a known split position.

Input is a split_report.csv from heuristic_split.py or predict_split.py.
Rows marked double_page=True (or every row, with --include-single) are cut at
their split_position, given in permille of the image width.  Both pages keep
`overlap` permille beyond the cut, so a position that is off by a few columns
still leaves every glyph whole on one page:

    left page   0 … P + overlap
    right page  P − overlap … 1000

For an image NAME.jpg three files are written next to it:

    NAME_left.jpg, NAME_right.jpg   page crops (JPEG, full height)
    NAME_split.json                 where the crops sit in the original

The sidecar holds original_file, original_width, original_height,
split_position, overlap and a "pages" list with one entry per side
(side, file, x_offset, y_offset, width, height).  A point (x, y) on a page
image maps back to (x + x_offset, y + y_offset) on the original.

The source image is never modified.  Images with existing outputs are
skipped unless --force is given.

Usage
-----
    python split_spreads.py images/alchemy_book/split_report.csv
    python split_spreads.py images/alchemy_book/split_report.csv --overlap 0 --force
    python split_spreads.py report.csv --include-single --dry-run
"""

import argparse
import csv
import json
import sys
from pathlib import Path

from PIL import Image

DEFAULT_OVERLAP = 10   # permille kept past the cut on each side
JPEG_QUALITY = 92


def crop_bounds(width: int, position: int, overlap: int = DEFAULT_OVERLAP) -> tuple[tuple[int, int], tuple[int, int]]:
    """
    Pixel column ranges (start, end) of the left and right crops.

    position and overlap are permille of width; ranges are clamped to the
    image and each crop is at least one pixel wide.
    """
    position = max(0, min(1000, position))
    left_end = max(1, min(1000, position + overlap) * width // 1000)
    right_start = min(width - 1, max(0, position - overlap) * width // 1000)
    return (0, left_end), (right_start, width)


def output_paths(image_path: Path) -> tuple[Path, Path, Path]:
    stem = image_path.stem
    return (
        image_path.with_name(f"{stem}_left.jpg"),
        image_path.with_name(f"{stem}_right.jpg"),
        image_path.with_name(f"{stem}_split.json"),
    )


def build_sidecar(image_path: Path, size: tuple[int, int], position: int, overlap: int) -> dict:
    width, height = size
    left_path, right_path, _ = output_paths(image_path)
    pages = []
    for side, path, (x0, x1) in zip(
        ("left", "right"), (left_path, right_path), crop_bounds(width, position, overlap),
    ):
        pages.append({
            "side": side,
            "file": path.name,
            "x_offset": x0,
            "y_offset": 0,
            "width": x1 - x0,
            "height": height,
        })
    return {
        "original_file": image_path.name,
        "original_width": width,
        "original_height": height,
        "split_position": position,
        "overlap": overlap,
        "pages": pages,
    }


def split_image(
    image_path: Path,
    position: int,
    overlap: int = DEFAULT_OVERLAP,
    dry_run: bool = False,
    quiet: bool = False,
    force: bool = False,
) -> dict | None:
    """
    Cut one image at `position` and write the pages and sidecar.

    Returns the sidecar, or None when the image cannot be opened.  If outputs
    already exist and force is False nothing is written and the existing
    sidecar (when readable) comes back with "skipped": True.
    """
    left_path, right_path, json_path = output_paths(image_path)
    existing = [p for p in (left_path, right_path, json_path) if p.exists()]

    if existing and not force:
        if not quiet:
            print(f"  [skip] {image_path.name} already has split outputs", file=sys.stderr)
        if json_path.exists():
            with open(json_path, encoding="utf-8") as f:
                return {**json.load(f), "skipped": True}
        return {"skipped": True, "original_file": image_path.name}

    try:
        img = Image.open(image_path).convert("RGB")
    except Exception as exc:  # noqa: BLE001
        print(f"  Warning: could not open {image_path.name}: {exc}", file=sys.stderr)
        return None

    sidecar = build_sidecar(image_path, img.size, position, overlap)
    summary = ", ".join(f"{p['side']} x={p['x_offset']}+{p['width']}" for p in sidecar["pages"])

    if dry_run:
        print(f"  [dry-run] {image_path.name} at {position}: {summary}", file=sys.stderr)
        return sidecar

    for p in existing:
        p.unlink()
    for page, path in zip(sidecar["pages"], (left_path, right_path)):
        x0 = page["x_offset"]
        img.crop((x0, 0, x0 + page["width"], page["height"])).save(path, "JPEG", quality=JPEG_QUALITY)
    json_path.write_text(json.dumps(sidecar, indent=2), encoding="utf-8")

    if not quiet:
        print(f"  Split {image_path.name} at {position}: {summary}", file=sys.stderr)
    return sidecar


# ---------------------------------------------------------------------------
# Report reading
# ---------------------------------------------------------------------------

def resolve_image(report_path: Path, image_path: str) -> Path | None:
    """Report paths may be absolute, cwd-relative or relative to the report."""
    if not image_path:
        return None
    for candidate in (Path(image_path), report_path.parent / image_path):
        if candidate.exists():
            return candidate
    return None


def report_rows(report_path: Path, include_single: bool = False) -> list[dict]:
    with open(report_path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    if include_single:
        return rows
    return [r for r in rows if (r.get("double_page") or "").strip().lower() == "true"]


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Cut spread images into left/right page images from a split report.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("report_csv", help="split_report.csv from heuristic_split.py or predict_split.py")
    parser.add_argument(
        "--overlap",
        type=int,
        default=DEFAULT_OVERLAP,
        metavar="PERMILLE",
        help=f"Columns kept past the cut on each side, in permille (default: {DEFAULT_OVERLAP})",
    )
    parser.add_argument("--include-single", action="store_true", help="Cut rows not marked double_page too")
    parser.add_argument("--dry-run", action="store_true", help="Report the crops without writing files")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print the summary")
    parser.add_argument("--force", "-f", action="store_true", help="Replace existing split outputs")
    args = parser.parse_args()

    report_path = Path(args.report_csv)
    if not report_path.exists():
        print(f"Error: report not found: {report_path}", file=sys.stderr)
        sys.exit(1)

    rows = report_rows(report_path, args.include_single)
    if not rows:
        print(f"Nothing to split in {report_path}.", file=sys.stderr)
        sys.exit(0)

    print(f"Splitting {len(rows)} image(s){' (dry run)' if args.dry_run else ''}…", file=sys.stderr)
    counts = {"split": 0, "skipped": 0, "error": 0}

    for row in rows:
        name = (row.get("image_path") or "").strip()
        image_path = resolve_image(report_path, name)
        if image_path is None:
            print(f"  Warning: image not found: {name!r}", file=sys.stderr)
            counts["error"] += 1
            continue
        try:
            position = int(row.get("split_position") or "")
        except ValueError:
            print(f"  Warning: no usable split_position for {image_path.name}", file=sys.stderr)
            counts["error"] += 1
            continue

        result = split_image(
            image_path, position, overlap=args.overlap,
            dry_run=args.dry_run, quiet=args.quiet, force=args.force,
        )
        if result is None:
            counts["error"] += 1
        else:
            counts["skipped" if result.get("skipped") else "split"] += 1

    print(
        f"\nDone. {counts['split']} split, {counts['skipped']} skipped, "
        f"{counts['error']} error(s).",
        file=sys.stderr,
    )


if __name__ == "__main__":
    main()
