import numpy as np
import pytest

from distforest import (
    ConfigurationError,
    ControlParams,
    ForestParams,
    ForestTrainer,
    InputDataError,
    InvalidMethodError,
    InvalidResponseEncodingError,
    InvalidWeightError,
    MissingExposureError,
    MissingInputError,
    UnsupportedOobTrackingError,
    build_forest,
    predict,
    predict_all,
)
from distforest.forest_trainer import draw_sample
from distforest.losses import make_loss
from distforest.observations import build_observations
from distforest.tree_builder import grow_tree

CONTROL = {"minsplit": 10, "minbucket": 3, "cp": 0.0, "maxdepth": 6}


def _tree_signature(tree):
    return [
        (node.is_leaf, node.n_rows, node.feature, node.threshold, node.left_categories, node.value)
        for node in tree.nodes
    ]


def _make_data(method, n=160, seed=5):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 4))
    X[:, 3] = rng.integers(0, 4, size=n)
    eta = 0.8 * X[:, 0] - 0.5 * X[:, 1]
    exposure = None
    if method == "class":
        y = (eta + 0.3 * rng.normal(size=n) > 0).astype(np.float64)
    elif method == "anova":
        y = 3.0 * eta + rng.normal(size=n)
    elif method == "poisson":
        exposure = rng.uniform(0.2, 1.0, size=n)
        y = rng.poisson(exposure * np.exp(eta)).astype(np.float64)
    elif method == "gamma":
        y = rng.gamma(2.0, np.exp(eta) / 2.0)
    elif method == "lognormal":
        y = np.exp(eta + 0.3 * rng.normal(size=n))
    else:
        exposure = rng.uniform(0.5, 5.0, size=n)
        y = (rng.uniform(size=n) < 0.4).astype(np.float64)
    return X, y, exposure


def test_same_seed_reproduces_forest():
    X, y, _ = _make_data("anova")
    kwargs = dict(method="anova", ncand=2, ntrees=6, control=CONTROL, seed=17, categorical=[3])

    first = build_forest(X, y, **kwargs)
    second = build_forest(X, y, **kwargs)

    assert [_tree_signature(t) for t in first.trees] == [_tree_signature(t) for t in second.trees]
    np.testing.assert_array_equal(predict(first, X), predict(second, X))


def test_threaded_build_matches_serial_build():
    X, y, _ = _make_data("class")
    kwargs = dict(
        method="class", ncand=2, ntrees=8, control=CONTROL, seed=3, track_oob=True, categorical=[3]
    )

    serial = build_forest(X, y, n_jobs=1, **kwargs)
    threaded = build_forest(X, y, n_jobs=2, **kwargs)

    assert [t.seed for t in serial.trees] == [t.seed for t in threaded.trees]
    assert [_tree_signature(t) for t in serial.trees] == [
        _tree_signature(t) for t in threaded.trees
    ]
    np.testing.assert_array_equal(serial.oob_error, threaded.oob_error)
    np.testing.assert_array_equal(predict(serial, X), predict(threaded, X))


@pytest.mark.parametrize("method", ["class", "anova", "poisson", "gamma", "lognormal"])
def test_oob_error_has_one_entry_per_tree(method):
    X, y, exposure = _make_data(method)
    forest = build_forest(
        X, y, method=method, exposure=exposure, ntrees=5, control=CONTROL, track_oob=True, seed=1
    )
    assert forest.oob_error.shape == (5,)
    assert np.all(np.isfinite(forest.oob_error))

    untracked = build_forest(X, y, method=method, exposure=exposure, ntrees=5, control=CONTROL)
    assert untracked.oob_error.size == 0


def test_oob_error_undefined_without_out_of_bag_rows():
    X, y, _ = _make_data("anova", n=40)
    forest = build_forest(
        X, y, method="anova", ntrees=1, bootstrap=False, subsample=1.0, track_oob=True
    )
    assert forest.oob_error.shape == (1,)
    assert np.isnan(forest.oob_error[0])
    assert forest.trees[0].oob_rows.size == 0


def test_unit_exposure_matches_no_exposure():
    X, y, _ = _make_data("poisson")
    kwargs = dict(method="poisson", ncand=2, ntrees=4, control=CONTROL, seed=9)

    plain = build_forest(X, y, **kwargs)
    unit = build_forest(X, y, exposure=np.ones(y.size), **kwargs)

    np.testing.assert_array_equal(predict(plain, X), predict(unit, X))


def test_single_full_tree_matches_greedy_tree():
    X, y, _ = _make_data("anova")
    forest = build_forest(
        X, y, method="anova", ncand=4, ntrees=1, bootstrap=False, control=CONTROL, seed=4
    )

    loss = make_loss("anova")
    obs = build_observations(X, y, loss)
    tree = grow_tree(obs, loss, ControlParams(**CONTROL))

    assert _tree_signature(forest.trees[0]) == _tree_signature(tree)
    np.testing.assert_array_equal(predict(forest, X), tree.predict(X))


def test_two_column_response_matches_exposure_argument():
    X, y, exposure = _make_data("exp")
    kwargs = dict(method="exp", ntrees=3, control=CONTROL, seed=2)

    split = build_forest(X, y, exposure=exposure, **kwargs)
    stacked = build_forest(X, np.column_stack([exposure, y]), **kwargs)

    np.testing.assert_array_equal(predict(split, X), predict(stacked, X))


@pytest.mark.parametrize("method", ["poisson", "gamma", "lognormal", "exp"])
def test_positive_families_predict_non_negative_values(method):
    X, y, exposure = _make_data(method)
    forest = build_forest(X, y, method=method, exposure=exposure, ntrees=4, control=CONTROL)
    pred = predict(forest, X)
    assert pred.shape == (X.shape[0],)
    assert np.all(pred >= 0.0)


def test_classification_predicts_codes_and_learns_signal():
    X, y, _ = _make_data("class", n=300)
    forest = build_forest(X, y, method="class", ntrees=15, control=CONTROL, seed=8)
    pred = predict(forest, X)
    assert set(np.unique(pred)) <= {0.0, 1.0}
    assert np.mean(pred == y) > 0.8

    per_tree = predict_all(forest, X)
    assert per_tree.shape == (15, X.shape[0])


def test_multiclass_forest_predicts_observed_codes():
    X, _, _ = _make_data("class")
    y = np.digitize(X[:, 0], [-0.5, 0.5]).astype(np.float64)
    forest = build_forest(X, y, method="class", ntrees=5, control=CONTROL)
    assert forest.n_classes == 3
    assert set(np.unique(predict(forest, X))) <= {0.0, 1.0, 2.0}


def test_subsample_draws_without_replacement():
    X, y, _ = _make_data("anova", n=100)
    forest = build_forest(X, y, method="anova", ntrees=3, subsample=0.5, control=CONTROL)
    for tree in forest.trees:
        assert tree.n_rows == 50
        assert np.unique(tree.sample_rows).size == 50
        assert tree.oob_rows.size == 50


def test_draw_sample_bootstrap():
    sample, oob = draw_sample(50, 1.0, True, np.random.default_rng(0))
    assert sample.size == 50
    assert np.intersect1d(sample, oob).size == 0
    assert np.union1d(sample, oob).size == 50


def test_reduce_memory_keeps_predictions():
    X, y, _ = _make_data("gamma")
    kwargs = dict(method="gamma", ntrees=4, control=CONTROL, seed=6)

    full = build_forest(X, y, **kwargs)
    small = build_forest(X, y, reduce_memory=True, **kwargs)

    assert all(tree.sample_rows is None and tree.reduced for tree in small.trees)
    np.testing.assert_array_equal(predict(full, X), predict(small, X))


def test_prediction_on_retained_data():
    X, y, _ = _make_data("anova")
    forest = build_forest(X, y, method="anova", ntrees=3, control=CONTROL, keep_data=True)
    np.testing.assert_array_equal(predict(forest), predict(forest, X))

    bare = build_forest(X, y, method="anova", ntrees=3, control=CONTROL)
    with pytest.raises(MissingInputError):
        predict(bare)
    with pytest.raises(InputDataError):
        predict(bare, X[:, :3])


def test_trainer_wrapper():
    X, y, exposure = _make_data("poisson")
    trainer = ForestTrainer(ForestParams(method="poisson", ntrees=3, control=ControlParams(**CONTROL)))
    with pytest.raises(RuntimeError):
        trainer.predict(X)

    forest = trainer.fit(X, y, exposure=exposure, feature_names=["a", "b", "c", "d"])
    assert forest.feature_names == ("a", "b", "c", "d")
    assert trainer.metrics["nodes_split"] > 0
    assert len(trainer.importance()) == 4
    np.testing.assert_array_equal(trainer.predict(X), predict(forest, X))


def test_invalid_inputs_raise():
    X, y, exposure = _make_data("anova", n=40)
    binary = (y > 0).astype(np.float64)

    with pytest.raises(InvalidMethodError):
        build_forest(X, y, method="tweedie")
    with pytest.raises(InvalidResponseEncodingError):
        build_forest(X, binary + 1.0, method="class")
    with pytest.raises(InvalidWeightError):
        build_forest(X, y, method="anova", weights=-np.ones(y.size))
    nan_weights = np.ones(y.size)
    nan_weights[3] = np.nan
    with pytest.raises(InvalidWeightError):
        build_forest(X, y, method="anova", weights=nan_weights)
    inf_weights = np.ones(y.size)
    inf_weights[0] = np.inf
    with pytest.raises(InvalidWeightError):
        build_forest(X, y, method="anova", weights=inf_weights)
    with pytest.raises(InvalidResponseEncodingError):
        build_forest(X, np.where(binary > 0, 1e9, binary), method="class")
    with pytest.raises(MissingExposureError):
        build_forest(X, binary, method="exp")
    with pytest.raises(InputDataError):
        build_forest(X, np.abs(y) - 100.0, method="gamma")
    with pytest.raises(InputDataError):
        build_forest(X, y, method="anova", exposure=np.ones(y.size))
    with pytest.raises(ConfigurationError):
        build_forest(X, y, method="anova", ncand=0)
    with pytest.raises(ConfigurationError):
        build_forest(X, y, method="anova", ncand=5)
    with pytest.raises(ConfigurationError):
        build_forest(X, y, method="anova", subsample=0.0)
    with pytest.raises(ConfigurationError):
        build_forest(X, y, method="anova", subsample=1.5)
    with pytest.raises(ConfigurationError):
        build_forest(X, y, method="anova", ntrees=0)

    X_nan = X.copy()
    X_nan[0, 0] = np.nan
    with pytest.raises(InputDataError):
        build_forest(X_nan, y, method="anova")


def test_oob_tracking_unsupported_families():
    X, y, exposure = _make_data("exp", n=40)
    with pytest.raises(UnsupportedOobTrackingError):
        build_forest(X, y, method="exp", exposure=exposure, track_oob=True)

    multi = np.digitize(X[:, 0], [-0.5, 0.5]).astype(np.float64)
    with pytest.raises(UnsupportedOobTrackingError):
        build_forest(X, multi, method="class", track_oob=True)


def test_configuration_errors_are_value_errors():
    with pytest.raises(ValueError):
        ControlParams(minsplit=0)
    with pytest.raises(ValueError):
        ForestParams(method="anova", ntrees=0)
