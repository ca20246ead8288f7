from __future__ import annotations

import numpy as np

from distforest.data_structures import Forest
from distforest.exceptions import InputDataError, MissingInputError
from distforest.losses import make_loss
from distforest.observations import check_matrix


def _resolve_matrix(forest: Forest, X: np.ndarray | None) -> np.ndarray:
    if X is None:
        if forest.data is None:
            raise MissingInputError(
                "no data given and the forest was built without keep_data=True"
            )
        return forest.data.X

    X = check_matrix(X, forest.categorical, allow_nan=True)
    if X.shape[1] != forest.n_features:
        raise InputDataError(
            f"X has {X.shape[1]} columns, the forest was built on {forest.n_features}"
        )
    return X


def predict_all(forest: Forest, X: np.ndarray | None = None) -> np.ndarray:
    """Leaf value of every tree for every row, shape (n_trees, n_rows)."""
    X = _resolve_matrix(forest, X)
    preds = np.zeros((forest.ntrees, X.shape[0]), dtype=np.float64)
    for i, tree in enumerate(forest.trees):
        preds[i] = tree.predict(X)
    return preds


def predict(forest: Forest, X: np.ndarray | None = None) -> np.ndarray:
    """Ensemble prediction per row: majority vote for class, mean otherwise."""
    split_params = forest.params.split if forest.params is not None else None
    loss = make_loss(forest.method, split_params, forest.n_classes)
    return loss.aggregate(predict_all(forest, X))
