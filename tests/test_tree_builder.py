import numpy as np

from distforest.config import ControlParams
from distforest.losses import make_loss
from distforest.observations import build_observations
from distforest.tree_builder import TreeBuilder, grow_tree, reduce_tree


def _tree_signature(tree):
    return [
        (
            node.depth,
            node.is_leaf,
            node.n_rows,
            node.feature,
            node.threshold,
            node.left_categories,
            node.left,
            node.right,
        )
        for node in tree.nodes
    ]


def _regression_data(n=200, seed=3):
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, 4))
    X[:, 3] = rng.integers(0, 5, size=n)
    y = 2.0 * X[:, 0] - X[:, 1] + np.array([0.0, 1.0, -1.0, 2.0, 0.5])[X[:, 3].astype(int)]
    y = y + 0.1 * rng.normal(size=n)
    return X, y


def test_leaves_partition_the_sample():
    X, y = _regression_data()
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    rows = np.sort(np.random.default_rng(0).integers(0, obs.n_rows, size=obs.n_rows))

    builder = TreeBuilder(obs, loss, ControlParams(minsplit=10, minbucket=3, cp=0.0))
    tree = builder.build_tree(rows)

    assert sum(leaf.n_rows for leaf in tree.leaves()) == rows.size
    assert tree.n_rows == rows.size
    assert tree.root.n_rows == rows.size
    for node in tree.decision_nodes():
        left, right = tree.nodes[node.left], tree.nodes[node.right]
        assert left.n_rows + right.n_rows == node.n_rows
        assert left.n_rows >= 3 and right.n_rows >= 3
        assert node.improvement > 0.0
    assert builder.metrics.nodes_split == len(tree.decision_nodes())


def test_importance_accumulates_split_improvements():
    X, y = _regression_data()
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    tree = grow_tree(obs, loss, ControlParams(minsplit=10, minbucket=3, cp=0.0, maxdepth=4))

    expected = np.zeros(obs.n_features)
    for node in tree.decision_nodes():
        expected[node.feature] += node.improvement

    np.testing.assert_allclose(tree.importance, expected)
    assert tree.root.feature == 0
    assert tree.depth <= 4


def test_maxdepth_zero_gives_single_leaf():
    X, y = _regression_data(n=50)
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    tree = grow_tree(obs, loss, ControlParams(minsplit=2, minbucket=1, cp=0.0, maxdepth=0))

    assert tree.n_nodes == 1
    assert tree.root.is_leaf
    assert np.isclose(tree.root.value, np.mean(y))
    np.testing.assert_allclose(tree.predict(X), np.mean(y))


def test_indistinguishable_rows_give_positive_class_leaf():
    X = np.array([[0.3, 1.0], [0.3, 1.0]])
    y = np.array([0.0, 1.0])
    loss = make_loss("class")
    obs = build_observations(X, y, loss)

    tree = grow_tree(obs, loss, ControlParams(minsplit=1, minbucket=1, cp=0.0))

    assert tree.n_nodes == 1
    assert tree.root.value == 1.0


def test_pure_node_is_not_split():
    X = np.arange(30, dtype=np.float64).reshape(-1, 1)
    y = np.where(X[:, 0] < 10, 0.0, 1.0)
    loss = make_loss("class")
    obs = build_observations(X, y, loss)

    tree = grow_tree(obs, loss, ControlParams(minsplit=2, minbucket=1, cp=0.0))

    assert tree.n_nodes == 3
    assert tree.root.threshold == 9.5
    assert [leaf.value for leaf in tree.leaves()] == [0.0, 1.0]


def test_reduce_tree_keeps_predictions_and_importance():
    X, y = _regression_data()
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    tree = grow_tree(obs, loss, ControlParams(minsplit=10, minbucket=3, cp=0.0))

    small = reduce_tree(tree)

    assert small.reduced
    assert small.sample_rows is None
    assert all(node.rows is None and node.deviance is None for node in small.nodes)
    assert tree.root.rows is not None
    np.testing.assert_array_equal(small.predict(X), tree.predict(X))
    np.testing.assert_array_equal(small.importance, tree.importance)


def test_feature_subset_is_reproducible():
    X, y = _regression_data()
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    control = ControlParams(minsplit=10, minbucket=3, cp=0.0)

    first = TreeBuilder(obs, loss, control, ncand=2, rng=np.random.default_rng(11)).build_tree()
    second = TreeBuilder(obs, loss, control, ncand=2, rng=np.random.default_rng(11)).build_tree()

    assert _tree_signature(first) == _tree_signature(second)


def test_unseen_category_follows_default_branch():
    X, y = _regression_data()
    loss = make_loss("anova")
    obs = build_observations(X, y, loss, categorical=[3])
    tree = grow_tree(obs, loss, ControlParams(minsplit=10, minbucket=3, cp=0.0))

    node = next(n for n in tree.decision_nodes() if n.left_categories is not None)
    mask = node.goes_left(np.array([99.0, np.nan]))
    assert mask.tolist() == [node.default_left, node.default_left]

    X_new = X.copy()
    X_new[:, 3] = 99.0
    assert np.all(np.isfinite(tree.predict(X_new)))


def test_missing_numeric_value_follows_heavier_child():
    X = np.arange(30, dtype=np.float64).reshape(-1, 1)
    y = np.where(X[:, 0] < 20, 0.0, 4.0)
    loss = make_loss("anova")
    obs = build_observations(X, y, loss)

    tree = grow_tree(obs, loss, ControlParams(minsplit=2, minbucket=1, cp=0.0))

    assert tree.root.default_left
    assert tree.predict(np.array([[np.nan]]))[0] == 0.0


def test_anova_splits_ignore_response_offset():
    rng = np.random.default_rng(21)
    X = rng.normal(size=(200, 3))
    y = np.where(X[:, 0] > 0.0, 2.0, 0.0) + 0.5 * X[:, 1] + 0.3 * rng.normal(size=200)
    control = ControlParams(minsplit=10, minbucket=3, cp=0.0, maxdepth=4)
    loss = make_loss("anova")

    base = grow_tree(build_observations(X, y, loss), loss, control)
    shifted = grow_tree(build_observations(X, y + 1e9, loss), loss, control)

    def structure(tree):
        return [
            (node.is_leaf, node.n_rows, node.feature, node.threshold, node.left, node.right)
            for node in tree.nodes
        ]

    assert structure(shifted) == structure(base)
    assert base.root.feature == 0
    np.testing.assert_allclose(
        [n.improvement for n in shifted.nodes],
        [n.improvement for n in base.nodes],
        rtol=1e-6,
        atol=1e-4,
    )
