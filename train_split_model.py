#!/usr/bin/env python3
"""Train the split-position model from the labelled example store.

Reads every example in the training store, drops unusable ones, fits the
linear model in split_model.py and replaces the saved model atomically.
Only one training run per model file can hold the training lock at a time.

Usage
-----
    python train_split_model.py
    python train_split_model.py --store data/examples.jsonl --model-path data/split_model.json
    python train_split_model.py --epochs 2000 --learning-rate 0.001 --seed 7
"""

import argparse
import math
import sys
from pathlib import Path

from split_model import (
    DEFAULT_MODEL_PATH,
    EPOCHS,
    LEARNING_RATE,
    InsufficientDataError,
    ModelStore,
    TrainingInProgressError,
    train_model,
)
from training_store import DEFAULT_STORE, TrainingStore


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train the split-position model on oracle-labelled examples.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--store", "-s",
        default=str(DEFAULT_STORE),
        help=f"Training example store (default: {DEFAULT_STORE})",
    )
    parser.add_argument(
        "--model-path", "-o",
        default=str(DEFAULT_MODEL_PATH),
        help=f"Where to write the trained model (default: {DEFAULT_MODEL_PATH})",
    )
    parser.add_argument("--epochs", type=int, default=EPOCHS, help=f"Gradient descent epochs (default: {EPOCHS})")
    parser.add_argument(
        "--learning-rate",
        type=float,
        default=LEARNING_RATE,
        help=f"Learning rate (default: {LEARNING_RATE})",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the train/validation shuffle (default: fresh randomness)",
    )
    args = parser.parse_args()

    store = TrainingStore(Path(args.store))
    if not store.path.exists():
        print(f"Error: training store not found: {store.path}", file=sys.stderr)
        sys.exit(1)

    examples = store.load()
    print(f"Loaded {len(examples)} example(s) from {store.path}", file=sys.stderr)

    models = ModelStore(Path(args.model_path))
    try:
        with models.training_lock():
            model = train_model(
                examples,
                epochs=args.epochs,
                learning_rate=args.learning_rate,
                seed=args.seed,
            )
            models.save(model)
    except InsufficientDataError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except TrainingInProgressError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(
        f"\nTrained on {model.training_size} example(s). "
        f"Validation MSE {model.validation_mse:.2f} "
        f"(RMSE {math.sqrt(model.validation_mse):.2f} permille).",
        file=sys.stderr,
    )
    for name, value in model.weights().items():
        print(f"  {name:30s} {value: .6f}", file=sys.stderr)
    print(f"Model → {models.path}", file=sys.stderr)


if __name__ == "__main__":
    main()
