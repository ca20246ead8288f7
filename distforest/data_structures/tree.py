from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class TreeNode:
    node_id: int
    depth: int
    n_rows: int = 0
    weight: float = 0.0
    value: float = 0.0
    deviance: float | None = 0.0
    is_leaf: bool = True

    feature: int | None = None
    threshold: float | None = None
    left_categories: tuple[int, ...] | None = None
    right_categories: tuple[int, ...] | None = None
    default_left: bool = True
    improvement: float = 0.0

    # Arena indices of the children, -1 on leaves.
    left: int = -1
    right: int = -1

    rows: np.ndarray | None = None

    @property
    def is_categorical_split(self) -> bool:
        return self.left_categories is not None

    def goes_left(self, values: np.ndarray) -> np.ndarray:
        """Boolean routing mask for the split predictor's values."""
        values = np.asarray(values, dtype=np.float64)
        if self.is_categorical_split:
            in_left = np.isin(values, self.left_categories)
            in_right = np.isin(values, self.right_categories)
            unseen = ~(in_left | in_right)
            return in_left | (unseen & self.default_left)

        missing = np.isnan(values)
        with np.errstate(invalid="ignore"):
            mask = values <= self.threshold
        mask[missing] = self.default_left
        return mask


@dataclass
class Tree:
    """Binary tree stored as a node arena; the root is ``nodes[0]``."""

    nodes: list[TreeNode]
    n_features: int
    seed: int = 0
    n_rows: int = 0
    sample_rows: np.ndarray | None = None
    oob_rows: np.ndarray | None = None
    importance: np.ndarray = field(default_factory=lambda: np.zeros(0))
    reduced: bool = False

    @property
    def root(self) -> TreeNode:
        return self.nodes[0]

    @property
    def depth(self) -> int:
        return max(node.depth for node in self.nodes)

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    def leaves(self) -> list[TreeNode]:
        return [node for node in self.nodes if node.is_leaf]

    def decision_nodes(self) -> list[TreeNode]:
        return [node for node in self.nodes if not node.is_leaf]

    def apply(self, X: np.ndarray) -> np.ndarray:
        """Arena index of the leaf reached by every row of ``X``."""
        X = np.asarray(X, dtype=np.float64)
        leaf_ids = np.zeros(X.shape[0], dtype=np.int64)
        stack = [(0, np.arange(X.shape[0], dtype=np.int64))]

        while stack:
            node_id, rows = stack.pop()
            node = self.nodes[node_id]
            if node.is_leaf or rows.size == 0:
                leaf_ids[rows] = node_id
                continue

            assert node.feature is not None
            left_mask = node.goes_left(X[rows, node.feature])
            stack.append((node.right, rows[~left_mask]))
            stack.append((node.left, rows[left_mask]))

        return leaf_ids

    def predict(self, X: np.ndarray) -> np.ndarray:
        values = np.array([node.value for node in self.nodes], dtype=np.float64)
        return values[self.apply(X)]
