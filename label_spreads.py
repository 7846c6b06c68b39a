#!/usr/bin/env python3
"""Label spread images with Gemini ground truth for split-model training.

For every image under the images directory that is not yet in the training
store, extracts split features locally, asks the Gemini oracle whether the
image is a two-page spread and where to cut it, and appends a training example
when the answer is "spread".  Single pages are counted but not stored.

Book context is taken from the directory layout images/<book>/<page>.jpg:
the page's position within its book (0–1) and a size category for the book
are stored with the features.

Rate-limited calls (HTTP 429) are reported to the key pool, which rests that
key, and retried with exponential backoff.  Press Ctrl-C to stop: no new
oracle calls are issued, calls already in flight finish and are stored.

Requires GEMINI_API_KEY (and optionally GEMINI_API_KEY_2 … _10).

Usage
-----
    python label_spreads.py images/alchemy_book
    python label_spreads.py images/ --limit 50 --workers 4
    python label_spreads.py images/alchemy_book --store data/examples.jsonl
    python label_spreads.py images/alchemy_book --dry-run
"""

import argparse
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from gemini_keys import ApiKeyPool, NoApiKeyError
from gemini_split import DEFAULT_MODEL, detect_split_with_gemini, is_rate_limit_error
from heuristic_split import find_images
from split_features import extract_features, page_context
from training_store import DEFAULT_STORE, TrainingExample, TrainingStore

MAX_RETRIES = 5
INITIAL_BACKOFF = 10   # seconds; doubles on each 429

_print_lock = threading.Lock()


def _log(msg: str) -> None:
    with _print_lock:
        print(msg, file=sys.stderr)


class Cancelled(Exception):
    pass


def pending_images(images: list[Path], store: TrainingStore) -> list[Path]:
    """Images whose (book, page) pair is not in the store yet."""
    done = store.labeled_pages()
    return [p for p in images if (p.parent.name, p.stem) not in done]


def call_oracle(
    image_path: Path,
    model: str,
    key_pool: ApiKeyPool,
    stop: threading.Event,
) -> dict:
    """Oracle call with backoff on rate limits.  Other errors propagate."""
    delay = INITIAL_BACKOFF
    for attempt in range(MAX_RETRIES):
        if stop.is_set():
            raise Cancelled()
        client, key = key_pool.client()
        try:
            return detect_split_with_gemini(
                image_path, client=client, model=model, key_pool=key_pool, api_key=key,
            )
        except Exception as exc:
            if is_rate_limit_error(exc) and attempt < MAX_RETRIES - 1:
                _log(
                    f"  Rate limited, retrying {image_path.name} in {delay}s "
                    f"(attempt {attempt + 1}/{MAX_RETRIES})"
                )
                if stop.wait(delay):
                    raise Cancelled() from None
                delay *= 2
            else:
                raise
    raise RuntimeError("unreachable")


def label_image(
    image_path: Path,
    context: tuple[str, float, int],
    store: TrainingStore,
    model: str,
    key_pool: ApiKeyPool,
    stop: threading.Event,
    analysis_width: int | None = None,
) -> tuple[str, dict | None]:
    """
    Label one image.  Returns (status, judgment) where status is one of
    'labeled', 'single', 'cancelled'.
    """
    if stop.is_set():
        return "cancelled", None
    book_id, page_position, size_category = context

    # Local extraction first: an unreadable image should not cost an oracle call.
    features = extract_features(
        image_path,
        analysis_width=analysis_width,
        page_position=page_position,
        book_size_category=size_category,
    )
    try:
        judgment = call_oracle(image_path, model, key_pool, stop)
    except Cancelled:
        return "cancelled", None

    example = TrainingExample.from_oracle(
        page_id=image_path.stem,
        book_id=book_id,
        image_url=str(image_path),
        features=features,
        judgment=judgment,
    )
    if example is None:
        return "single", judgment
    store.append(example)
    return "labeled", judgment


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Label spread images with Gemini split ground truth.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("images_dir", help="Root images directory (e.g. images/alchemy_book)")
    parser.add_argument(
        "--store", "-s",
        default=str(DEFAULT_STORE),
        help=f"Training example store (default: {DEFAULT_STORE})",
    )
    parser.add_argument(
        "--model", "-m",
        default=DEFAULT_MODEL,
        help=f"Gemini model name (default: {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=4,
        metavar="N",
        help="Number of parallel oracle requests (default: 4)",
    )
    parser.add_argument(
        "--limit", "-n",
        type=int,
        default=None,
        metavar="N",
        help="Label at most N unlabeled images",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=None,
        metavar="PX",
        help="Feature analysis width in pixels (default: full resolution)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the images that would be labeled without calling the oracle",
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

    store = TrainingStore(Path(args.store))
    all_images = find_images(images_root)
    context = page_context(all_images)
    images = pending_images(all_images, store)
    if args.limit is not None:
        images = images[: args.limit]

    if not images:
        print(
            f"Nothing to label under {images_root} "
            f"({len(all_images)} image(s), {len(all_images) - len(images)} already in store).",
            file=sys.stderr,
        )
        sys.exit(0)

    if args.dry_run:
        for p in images:
            book_id, pos, cat = context[p]
            print(f"  [dry-run] would label {book_id}/{p.name} (page_position={pos:.3f}, size={cat})", file=sys.stderr)
        print(f"\n{len(images)} image(s) would be labeled.", file=sys.stderr)
        return

    key_pool = ApiKeyPool()
    if not key_pool.keys:
        print("Error: GEMINI_API_KEY environment variable is not set.", file=sys.stderr)
        sys.exit(1)

    total = len(images)
    print(
        f"Labeling {total} image(s) with {args.workers} worker(s) using {args.model} "
        f"({key_pool.stats()['total_keys']} key(s))…",
        file=sys.stderr,
    )

    stop = threading.Event()
    counts = {"labeled": 0, "single": 0, "cancelled": 0, "failed": 0}
    completed = 0

    executor = ThreadPoolExecutor(max_workers=args.workers)
    futures = {
        executor.submit(
            label_image, img, context[img], store, args.model, key_pool, stop, args.width,
        ): img
        for img in images
    }
    try:
        for future in as_completed(futures):
            image_path = futures[future]
            completed += 1
            try:
                status, judgment = future.result()
            except NoApiKeyError as exc:
                _log(f"Error: {exc}")
                stop.set()
                status, judgment = "failed", None
            except Exception as exc:  # noqa: BLE001
                status, judgment = "failed", None
                _log(f"Warning: exception labeling {image_path}: {exc}")

            counts[status] += 1

            if not args.quiet and status != "cancelled":
                if status == "labeled":
                    detail = f"split={judgment['split_position']} ({judgment['confidence']})"
                elif status == "single":
                    detail = "single page, not stored"
                else:
                    detail = "FAILED"
                _log(f"[{completed:04d}/{total}] {detail}: {image_path.name}")
    except KeyboardInterrupt:
        _log("\nInterrupted: finishing in-flight oracle calls, no new ones will start…")
        stop.set()
        executor.shutdown(wait=True, cancel_futures=True)
        _log(f"Stopped. {store.stats()['total']} example(s) in {store.path}.")
        sys.exit(130)
    finally:
        executor.shutdown(wait=True)

    print(
        f"\nDone. {total} image(s): "
        f"{counts['labeled']} labeled, {counts['single']} single-page, "
        f"{counts['failed']} failed"
        + (f", {counts['cancelled']} cancelled" if counts["cancelled"] else "")
        + ".",
        file=sys.stderr,
    )
    stats = store.stats()
    print(
        f"Store {store.path}: {stats['total']} example(s)"
        + ("" if stats["training_ready"] else " (need 10+ to train)"),
        file=sys.stderr,
    )


if __name__ == "__main__":
    main()
