#!/usr/bin/env python3
"""Spread-splitting pipeline orchestrator.

Runs the requested stages for one images directory.  Stages always execute
in this fixed order regardless of the order flags appear on the command line:

  --heuristic   heuristic_split.py     → <images_dir>/split_report.csv (fast, no API)
  --label       label_spreads.py       → training store (Gemini ground truth)
  --train       train_split_model.py   → split model JSON
  --predict     predict_split.py       → <images_dir>/split_report.csv (trained model)
  --split       split_spreads.py       → {stem}_left.jpg / {stem}_right.jpg / {stem}_split.json

  --full-run    shorthand for --label --train --predict --split

--heuristic and --predict both write split_report.csv; when both are
selected, the model report (written later) is the one --split uses.

Usage
-----
    python main.py images/alchemy_book --heuristic --split
    python main.py images/alchemy_book --label --limit 100 --workers 8
    python main.py images/alchemy_book --train --predict --split --force
    python main.py images/alchemy_book --full-run --dry-run
"""

import argparse
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

from heuristic_split import REPORT_FILENAME
from split_model import DEFAULT_MODEL_PATH
from training_store import DEFAULT_STORE

load_dotenv()

HERE = Path(__file__).parent
RULE = "═" * 62

# (stage, script, flag) in execution order
PIPELINE: list[tuple[str, str, str]] = [
    ("heuristic", "heuristic_split.py",    "--heuristic"),
    ("label",     "label_spreads.py",      "--label"),
    ("train",     "train_split_model.py",  "--train"),
    ("predict",   "predict_split.py",      "--predict"),
    ("split",     "split_spreads.py",      "--split"),
]

# A failure here leaves later stages without a model or a fresh report.
BLOCKING_STAGES = {"train", "predict"}


def run_stage(script: str, stage_args: list[str], dry_run: bool = False) -> bool:
    """Run one stage script with this interpreter; True on exit code 0."""
    cmd = [sys.executable, str(HERE / script), *stage_args]
    shown = " ".join(cmd)
    if dry_run:
        print(f"    [dry run] $ {shown}", file=sys.stderr)
        return True
    print(f"    $ {shown}", file=sys.stderr)
    returncode = subprocess.run(cmd).returncode
    if returncode:
        print(f"  Warning: {script} failed (exit {returncode})", file=sys.stderr)
    return returncode == 0


def build_stage_args(stage: str, images_dir: Path, parsed: argparse.Namespace) -> list[str]:
    """Build the argv list for one pipeline stage."""
    common = ["--quiet"] if parsed.quiet else []

    if stage == "heuristic":
        return [str(images_dir), "--width", str(parsed.width), "--force"] + common
    if stage == "label":
        args = [str(images_dir), "--store", parsed.store, "--workers", str(parsed.workers)]
        if parsed.limit is not None:
            args += ["--limit", str(parsed.limit)]
        return args + common
    if stage == "train":
        args = ["--store", parsed.store, "--model-path", parsed.model_path]
        if parsed.seed is not None:
            args += ["--seed", str(parsed.seed)]
        return args
    if stage == "predict":
        return [str(images_dir), "--model-path", parsed.model_path, "--force"] + common
    if stage == "split":
        args = [str(images_dir / REPORT_FILENAME), "--overlap", str(parsed.overlap)]
        if parsed.force:
            args.append("--force")
        return args + common
    raise ValueError(f"unknown stage: {stage}")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the spread-splitting pipeline stages for one images directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("images_dir", help="Images directory (e.g. images/alchemy_book)")
    for stage, script, label in PIPELINE:
        parser.add_argument(label, dest=stage, action="store_true", help=f"Run {script}")
    parser.add_argument("--full-run", action="store_true", help="Same as --label --train --predict --split")
    parser.add_argument("--store", default=str(DEFAULT_STORE), help="Training example store")
    parser.add_argument("--model-path", default=str(DEFAULT_MODEL_PATH), help="Split model file")
    parser.add_argument("--width", type=int, default=500, help="Heuristic analysis width (default: 500)")
    parser.add_argument("--workers", type=int, default=4, help="Parallel oracle requests (default: 4)")
    parser.add_argument("--limit", type=int, default=None, help="Label at most N images")
    parser.add_argument("--seed", type=int, default=None, help="Training shuffle seed")
    parser.add_argument("--overlap", type=int, default=10, help="Split overlap, permille (default: 10)")
    parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing split files")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress per-image output")
    parser.add_argument("--dry-run", action="store_true", help="Show stage commands without running them")
    args = parser.parse_args()

    full_run = {"label", "train", "predict", "split"} if args.full_run else set()
    enabled = [stage for stage, _, _ in PIPELINE if getattr(args, stage) or stage in full_run]
    if not enabled:
        parser.error("select at least one stage: " + ", ".join(flag for _, _, flag in PIPELINE) + " or --full-run")

    images_dir = Path(args.images_dir)
    if not images_dir.exists() and not args.dry_run:
        print(f"Error: directory not found: {images_dir}", file=sys.stderr)
        sys.exit(1)

    header = [RULE]
    if args.dry_run:
        header.append("  DRY RUN: commands are printed, not executed")
    header.append("  Stages: " + " → ".join(enabled))
    header.append(f"  Images: {images_dir}")
    header.append(RULE)
    print("\n" + "\n".join(header), file=sys.stderr)

    outcomes: dict[str, bool] = {}
    for stage, script, _ in PIPELINE:
        if stage in enabled:
            print(f"\n  [{stage}] {script}", file=sys.stderr)
            outcomes[stage] = run_stage(
                script, build_stage_args(stage, images_dir, args), dry_run=args.dry_run,
            )
            if not outcomes[stage] and stage in BLOCKING_STAGES:
                print(f"  Stopping after failed {stage} stage.", file=sys.stderr)
                break

    print(f"\n{RULE}", file=sys.stderr)
    for stage, ok in outcomes.items():
        print(f"    {'✓' if ok else '✗'} {stage:10s} {'ok' if ok else 'failed'}", file=sys.stderr)
    skipped = [s for s in enabled if s not in outcomes]
    if skipped:
        print(f"    - not run: {', '.join(skipped)}", file=sys.stderr)
    print(RULE, file=sys.stderr)

    if not all(outcomes.values()):
        sys.exit(1)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
