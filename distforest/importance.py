from __future__ import annotations

import numpy as np

from distforest.data_structures import Forest, VariableImportance


def importance_matrix(forest: Forest) -> np.ndarray:
    """Per-tree, per-predictor sum of split improvements, shape (n_trees, n_features)."""
    out = np.zeros((forest.ntrees, forest.n_features), dtype=np.float64)
    for i, tree in enumerate(forest.trees):
        if tree.importance.size == forest.n_features:
            out[i] = tree.importance
            continue
        for node in tree.decision_nodes():
            out[i, node.feature] += node.improvement
    return out


def compute_importance(forest: Forest) -> list[VariableImportance]:
    """Average improvement per predictor with sum- and max-normalised views.

    Results are sorted by decreasing importance; predictors that never split a
    node score 0 in every column.
    """
    raw = importance_matrix(forest).sum(axis=0) / max(forest.ntrees, 1)
    total = float(raw.sum())
    top = float(raw.max()) if raw.size else 0.0

    scale_sum = raw / total if total > 0.0 else np.zeros_like(raw)
    scale_max = raw / top if top > 0.0 else np.zeros_like(raw)

    names = forest.feature_names or tuple(f"x{j}" for j in range(forest.n_features))
    order = sorted(range(forest.n_features), key=lambda j: (-raw[j], j))
    return [
        VariableImportance(
            predictor=names[j],
            importance=float(raw[j]),
            scale_sum=float(scale_sum[j]),
            scale_max=float(scale_max[j]),
        )
        for j in order
    ]
