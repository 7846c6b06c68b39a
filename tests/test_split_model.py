import math
from dataclasses import replace

import numpy as np
import pytest

from split_features import SplitFeatures
from split_model import (
    InsufficientDataError,
    ModelStore,
    SplitModel,
    TrainingInProgressError,
    is_valid_example,
    predict_split,
    train_model,
)
from training_store import TrainingExample


def neutral_features(**overrides) -> SplitFeatures:
    """Features whose normalised terms are all zero unless overridden."""
    base = SplitFeatures(
        aspect_ratio=1.5,
        width=1500,
        height=1000,
        center_darkest_p10=40.0,
        center_darkest_idx=50.0,
        center_brightest_p10=230.0,
        center_brightest_idx=50.0,
        center_avg_p10=200.0,
        center_p10_variance=100.0,
        left_edge_p10=220.0,
        right_edge_p10=220.0,
        edge_center_diff=0.0,
        predicted_position=500.0,
        predicted_dark_run=80.0,
        predicted_transitions=2,
        predicted_p10=40.0,
        has_inverted_gutter=False,
        gutter_width=12,
        left_text_end_idx=45.0,
        right_text_start_idx=55.0,
        text_gap_width=10.0,
        text_gap_center=500.0,
        left_page_text_end=500.0,
        right_page_text_start=500.0,
        ideal_split_from_text=500.0,
    )
    return replace(base, **overrides)


def example(position, features=None, page_id="p") -> TrainingExample:
    return TrainingExample(
        page_id=page_id,
        book_id="book",
        image_url=f"images/book/{page_id}.jpg",
        features=features if features is not None else neutral_features(),
        ground_truth_position=position,
        confidence="high",
    )


def text_driven_examples(labels=None) -> list[TrainingExample]:
    """100 spreads whose text-derived ideal split runs from 400 to 598."""
    ideals = [400 + 2 * i for i in range(100)]
    labels = ideals if labels is None else labels
    return [
        example(label, neutral_features(ideal_split_from_text=float(ideal)), page_id=f"p{i:03d}")
        for i, (ideal, label) in enumerate(zip(ideals, labels))
    ]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_valid_example_is_accepted():
    assert is_valid_example(example(512))


def test_examples_with_bad_labels_or_features_are_rejected():
    assert not is_valid_example(example(None))
    assert not is_valid_example(example(math.nan))
    assert not is_valid_example(example(True))
    assert not is_valid_example(example(500, neutral_features(edge_center_diff=math.nan)))
    assert not is_valid_example(example(500, neutral_features(text_gap_center=math.inf)))
    no_features = TrainingExample("p", "b", "u", None, 500, "high")
    assert not is_valid_example(no_features)


def test_non_finite_auxiliary_feature_is_rejected():
    # Neither a core feature nor an input to any model term.
    assert not is_valid_example(example(500, neutral_features(center_p10_variance=math.nan)))
    assert not is_valid_example(example(500, neutral_features(predicted_dark_run=math.inf)))
    assert not is_valid_example(example(500, neutral_features(right_page_text_end=-math.inf)))


def test_insufficient_data_reports_both_counts():
    examples = [example(500 + i) for i in range(9)] + [example(None), example(math.nan)]

    with pytest.raises(InsufficientDataError) as excinfo:
        train_model(examples)

    assert excinfo.value.valid_count == 9
    assert excinfo.value.total_count == 11
    assert "Have 9 valid out of 11 total" in str(excinfo.value)


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------

def test_correlated_feature_is_learned():
    model = train_model(text_driven_examples(), epochs=3000, learning_rate=0.05, seed=0)

    assert model.ideal_split_from_text_weight == pytest.approx(100, abs=5)
    assert model.validation_mse < 25
    assert model.training_size == 80


def test_shuffled_labels_validate_worse():
    ideals = [400 + 2 * i for i in range(100)]
    shuffled = list(np.random.default_rng(1).permutation(ideals))
    correlated = train_model(text_driven_examples(), epochs=3000, learning_rate=0.05, seed=0)
    noisy = train_model(
        text_driven_examples([int(v) for v in shuffled]), epochs=3000, learning_rate=0.05, seed=0
    )

    assert noisy.validation_mse > 500
    assert noisy.validation_mse > 20 * correlated.validation_mse


def test_trained_model_beats_the_median_on_most_examples():
    examples = text_driven_examples()
    model = train_model(examples, epochs=3000, learning_rate=0.05, seed=0)
    median = sorted(e.ground_truth_position for e in examples)[len(examples) // 2]

    better = sum(
        abs(predict_split(model, e.features) - e.ground_truth_position)
        < abs(median - e.ground_truth_position)
        for e in examples
    )
    assert better > len(examples) // 2


def test_bias_starts_at_median_label():
    # Zero epochs: the model is just the starting point.
    examples = [example(p) for p in [410, 420, 430, 440, 450, 460, 470, 480, 490, 500, 900]]
    model = train_model(examples, epochs=0, seed=0)

    assert model.bias == 460
    assert all(v == 0 for k, v in model.weights().items() if k != "bias")


def test_seeded_training_is_reproducible():
    examples = text_driven_examples()
    a = train_model(examples, epochs=200, learning_rate=0.05, seed=7)
    b = train_model(examples, epochs=200, learning_rate=0.05, seed=7)

    assert a.weights() == b.weights()
    assert a.validation_mse == b.validation_mse


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------

def test_prediction_is_clamped():
    features = neutral_features()
    assert predict_split(SplitModel(bias=1000.0), features) == 800
    assert predict_split(SplitModel(bias=-50.0), features) == 200
    assert predict_split(SplitModel(bias=512.4), features) == 512
    assert predict_split(SplitModel(bias=512.5), features) == 513
    assert predict_split(SplitModel(bias=500.5), features) == 501


def test_missing_coefficients_load_as_zero():
    model = SplitModel.from_dict({"weights": {"bias": 480, "retired_feature": 3.0}})

    assert model.bias == 480
    assert model.ideal_split_from_text_weight == 0.0
    assert predict_split(model, neutral_features(ideal_split_from_text=700.0)) == 480


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def test_model_store_round_trip(tmp_path):
    store = ModelStore(tmp_path / "split_model.json")
    assert store.load() is None

    model = SplitModel(bias=501.5, edge_center_diff=-2.0, training_size=40, validation_mse=12.5)
    store.save(model)
    loaded = store.load()

    assert loaded.weights() == model.weights()
    assert loaded.trained_at == model.trained_at
    assert loaded.training_size == 40
    assert loaded.validation_mse == 12.5


def test_training_lock_blocks_second_trainer(tmp_path):
    store = ModelStore(tmp_path / "split_model.json")

    with store.training_lock():
        assert store.lock_path.exists()
        with pytest.raises(TrainingInProgressError):
            with store.training_lock():
                pass

    assert not store.lock_path.exists()
    with store.training_lock():
        pass
