"""Linear split-position model trained on oracle labels.

The model approximates the expensive vision oracle with a handful of named
coefficients over normalised features:

    position = bias + Σ weight[name] · term[name](features)

Each term centres and scales its feature so that gradients are of comparable
magnitude (see FEATURE_TERMS).  Training is plain full-batch gradient descent
with per-example gradient clipping, starting from bias = median label.

Predictions are rounded and clamped to [200, 800]: splits further off-centre
than that almost always mean detection failed, not that the spread really is
that lopsided.

Models are stored as JSON:

    {
      "weights": {"bias": 503.2, "center_darkest_idx": 0.01, ...},
      "trained_at": "2026-10-18T12:00:00+00:00",
      "training_size": 96,
      "validation_mse": 212.4
    }

Coefficients missing from a stored model (trained before a feature existed)
load as 0.0; unknown ones are ignored.
"""

import json
import math
import os
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import numpy as np

from column_profile import round_half_up
from split_features import CORE_FEATURES, SplitFeatures
from training_store import MIN_TRAINING_EXAMPLES, TrainingExample

DEFAULT_MODEL_PATH = Path("split_model.json")

EPOCHS = 500
LEARNING_RATE = 1e-4
GRADIENT_CLIP = 10.0
TRAIN_FRACTION = 0.8
PREDICTION_RANGE = (200, 800)


def _or(value, default):
    return default if value is None else value


# Coefficient name → normalised feature term.  Order is the column order of
# the design matrix.
FEATURE_TERMS: dict[str, Callable[[SplitFeatures], float]] = {
    "center_darkest_idx": lambda f: f.center_darkest_idx - 50,
    "center_brightest_idx": lambda f: f.center_brightest_idx - 50,
    "edge_center_diff": lambda f: f.edge_center_diff / 50,
    "inverted_gutter_offset": lambda f: 1.0 if f.has_inverted_gutter else 0.0,
    "aspect_ratio_offset": lambda f: f.aspect_ratio - 1.5,
    "page_position_offset": lambda f: _or(f.page_position, 0.5) - 0.5,
    "book_size_offset": lambda f: _or(f.book_size_category, 1) - 1,
    "text_gap_center_weight": lambda f: (_or(f.text_gap_center, 500) - 500) / 100,
    "ideal_split_from_text_weight": lambda f: (_or(f.ideal_split_from_text, 500) - 500) / 100,
    "left_page_text_end_weight": lambda f: (_or(f.left_page_text_end, 500) - 500) / 100,
    "right_page_text_start_weight": lambda f: (_or(f.right_page_text_start, 500) - 500) / 100,
    "margin_balance_weight": lambda f: (_or(f.left_margin, 5) - _or(f.right_margin, 5)) / 10,
}


class InsufficientDataError(ValueError):
    def __init__(self, valid_count: int, total_count: int, required: int = MIN_TRAINING_EXAMPLES):
        self.valid_count = valid_count
        self.total_count = total_count
        self.required = required
        super().__init__(
            f"Need at least {required} valid examples to train. "
            f"Have {valid_count} valid out of {total_count} total."
        )


class TrainingInProgressError(RuntimeError):
    pass


@dataclass
class SplitModel:
    bias: float = 500.0
    center_darkest_idx: float = 0.0
    center_brightest_idx: float = 0.0
    edge_center_diff: float = 0.0
    inverted_gutter_offset: float = 0.0
    aspect_ratio_offset: float = 0.0
    page_position_offset: float = 0.0
    book_size_offset: float = 0.0
    text_gap_center_weight: float = 0.0
    ideal_split_from_text_weight: float = 0.0
    left_page_text_end_weight: float = 0.0
    right_page_text_start_weight: float = 0.0
    margin_balance_weight: float = 0.0
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    training_size: int = 0
    validation_mse: float = 0.0

    def weights(self) -> dict[str, float]:
        return {"bias": self.bias, **{name: getattr(self, name) for name in FEATURE_TERMS}}

    def to_dict(self) -> dict:
        return {
            "weights": self.weights(),
            "trained_at": self.trained_at.isoformat(),
            "training_size": self.training_size,
            "validation_mse": self.validation_mse,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SplitModel":
        known = {f.name for f in fields(cls)} - {"trained_at", "training_size", "validation_mse"}
        weights = {
            k: float(v) for k, v in (data.get("weights") or {}).items()
            if k in known and v is not None
        }
        trained_at = data.get("trained_at")
        return cls(
            **weights,
            trained_at=datetime.fromisoformat(trained_at) if trained_at else datetime.now(timezone.utc),
            training_size=int(data.get("training_size") or 0),
            validation_mse=float(data.get("validation_mse") or 0.0),
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def feature_terms(features: SplitFeatures) -> list[float]:
    return [float(term(features)) for term in FEATURE_TERMS.values()]


def is_valid_example(example: TrainingExample) -> bool:
    """
    True when the example can be used for training: it has features, a
    finite numeric label, every feature present is a finite number, the
    core features are set, and every normalised term is finite.
    """
    f = getattr(example, "features", None)
    if f is None:
        return False
    if not _is_number(getattr(example, "ground_truth_position", None)):
        return False
    if not all(_is_number(getattr(f, name, None)) for name in CORE_FEATURES):
        return False
    if not f.is_finite():
        return False
    try:
        return all(math.isfinite(t) for t in feature_terms(f))
    except (TypeError, ValueError, AttributeError):
        return False


# ---------------------------------------------------------------------------
# Training and prediction
# ---------------------------------------------------------------------------

def _predict_matrix(bias: float, weights: np.ndarray, X: np.ndarray) -> np.ndarray:
    return bias + X @ weights


def train_model(
    examples: list[TrainingExample],
    epochs: int = EPOCHS,
    learning_rate: float = LEARNING_RATE,
    seed: int | None = None,
    clip: float = GRADIENT_CLIP,
) -> SplitModel:
    """
    Fit a SplitModel to the valid examples in `examples`.

    Invalid examples are dropped.  Raises InsufficientDataError when fewer
    than MIN_TRAINING_EXAMPLES remain.  seed=None shuffles with fresh system
    randomness; pass an int for a reproducible train/validation split.
    """
    valid = [e for e in examples if is_valid_example(e)]
    if len(valid) < MIN_TRAINING_EXAMPLES:
        raise InsufficientDataError(len(valid), len(examples))

    rng = np.random.default_rng(seed)
    order = rng.permutation(len(valid))
    shuffled = [valid[i] for i in order]
    n_train = int(len(shuffled) * TRAIN_FRACTION)
    train, validation = shuffled[:n_train], shuffled[n_train:]

    labels = sorted(float(e.ground_truth_position) for e in valid)
    bias = labels[len(labels) // 2]
    weights = np.zeros(len(FEATURE_TERMS))

    X = np.array([feature_terms(e.features) for e in train], dtype=np.float64)
    y = np.array([e.ground_truth_position for e in train], dtype=np.float64)

    for _ in range(epochs):
        error = _predict_matrix(bias, weights, X) - y
        grad_bias = np.clip(error, -clip, clip).mean()
        grad_w = np.clip(error[:, None] * X, -clip, clip).mean(axis=0)
        bias -= learning_rate * grad_bias
        weights -= learning_rate * grad_w

    if validation:
        Xv = np.array([feature_terms(e.features) for e in validation], dtype=np.float64)
        yv = np.array([e.ground_truth_position for e in validation], dtype=np.float64)
        mse = float(np.mean((_predict_matrix(bias, weights, Xv) - yv) ** 2))
    else:
        mse = 0.0

    return SplitModel(
        bias=float(bias),
        **{name: float(w) for name, w in zip(FEATURE_TERMS, weights)},
        training_size=len(train),
        validation_mse=mse,
    )


def predict_raw(model: SplitModel, features: SplitFeatures) -> float:
    return model.bias + sum(
        getattr(model, name) * value
        for name, value in zip(FEATURE_TERMS, feature_terms(features))
    )


def predict_split(model: SplitModel, features: SplitFeatures) -> int:
    """Model split position, rounded and clamped to PREDICTION_RANGE."""
    lo, hi = PREDICTION_RANGE
    return max(lo, min(hi, round_half_up(predict_raw(model, features))))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class ModelStore:
    """
    One model file plus a sibling lock file.

    save() replaces the model atomically.  training_lock() gives one trainer
    at a time per model file; a second trainer gets TrainingInProgressError
    instead of racing to overwrite the model.
    """

    def __init__(self, path: Path = DEFAULT_MODEL_PATH):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def load(self) -> SplitModel | None:
        if not self.path.exists():
            return None
        return SplitModel.from_dict(json.loads(self.path.read_text(encoding="utf-8")))

    def save(self, model: SplitModel) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(model.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    @contextmanager
    def training_lock(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise TrainingInProgressError(
                f"Another training run holds {self.lock_path}; "
                "delete it if no trainer is running."
            ) from None
        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)
