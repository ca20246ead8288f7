from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np

from distforest.config import ControlParams, SplitParams
from distforest.data_structures import Tree, TreeNode
from distforest.losses import LossStrategy
from distforest.observations import ObservationSet
from distforest.split_search import NoImprovingSplit, SplitCandidate, SplitSearch

# Nodes whose deviance falls below this share of the root deviance are pure.
NEGLIGIBLE_DEVIANCE = 1e-10


@dataclass
class TreeBuildMetrics:
    nodes_visited: int = 0
    nodes_split: int = 0
    candidates_evaluated: int = 0
    split_search_time_sec: float = 0.0


class TreeBuilder:
    def __init__(
        self,
        observations: ObservationSet,
        loss: LossStrategy,
        control: ControlParams,
        ncand: int | None = None,
        split_params: SplitParams | None = None,
        stats: np.ndarray | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.observations = observations
        self.loss = loss
        self.control = control
        self.split_params = split_params or SplitParams()
        self.rng = rng if rng is not None else np.random.default_rng(0)

        self.n_features = observations.n_features
        self.ncand = self.n_features if ncand is None else int(ncand)
        if stats is None:
            stats = loss.row_stats(observations.y, observations.exposure, observations.weights)
        self.stats = stats
        self.metrics = TreeBuildMetrics()

    def _sample_feature_subset(self) -> np.ndarray:
        features = np.arange(self.n_features, dtype=np.int64)
        if self.ncand >= self.n_features:
            return features
        chosen = self.rng.choice(features, size=self.ncand, replace=False)
        return np.sort(chosen)

    def _fill_node(self, node: TreeNode) -> None:
        rows = node.rows
        y = self.observations.y[rows]
        exposure = self.observations.exposure[rows]
        weights = self.observations.weights[rows]

        node.n_rows = int(rows.size)
        node.weight = float(np.sum(weights))
        node.value = self.loss.leaf_value(y, exposure, weights)
        node.deviance = self.loss.node_deviance(y, exposure, weights)

    def _is_splittable(self, node: TreeNode, root_deviance: float) -> bool:
        if node.depth >= self.control.maxdepth:
            return False
        if node.n_rows < self.control.minsplit:
            return False
        if node.n_rows < 2 * self.control.minbucket:
            return False
        if root_deviance <= 0.0 or node.deviance <= NEGLIGIBLE_DEVIANCE * root_deviance:
            return False
        return True

    def _find_best_split(
        self,
        node: TreeNode,
        candidate_features: np.ndarray,
        min_improvement: float,
    ) -> SplitCandidate | NoImprovingSplit:
        search = SplitSearch(
            node_rows=node.rows,
            candidate_features=candidate_features,
            observations=self.observations,
            loss=self.loss,
            stats=self.stats,
            min_bucket=self.control.minbucket,
            min_improvement=min_improvement,
            max_exhaustive_categories=self.split_params.max_exhaustive_categories,
        )
        result = search.search()

        self.metrics.candidates_evaluated += search.metrics.candidates_evaluated
        self.metrics.split_search_time_sec += search.metrics.time_spent_sec
        return result

    def _apply_split(self, node: TreeNode, split: SplitCandidate) -> tuple[np.ndarray, np.ndarray]:
        node.is_leaf = False
        node.feature = split.feature
        node.threshold = split.threshold
        node.left_categories = split.left_categories
        node.right_categories = split.right_categories
        node.default_left = split.default_left
        node.improvement = split.improvement

        left_mask = node.goes_left(self.observations.X[node.rows, split.feature])
        return node.rows[left_mask], node.rows[~left_mask]

    def build_tree(self, rows: np.ndarray | None = None, seed: int = 0) -> Tree:
        if rows is None:
            rows = np.arange(self.observations.n_rows, dtype=np.int64)
        else:
            rows = np.asarray(rows, dtype=np.int64)

        importance = np.zeros(self.n_features, dtype=np.float64)
        root = TreeNode(node_id=0, depth=0, rows=rows)
        nodes = [root]

        self._fill_node(root)
        root_deviance = float(root.deviance)
        min_improvement = self.control.cp * root_deviance

        stack = [root]
        while stack:
            node = stack.pop()
            self.metrics.nodes_visited += 1
            if node is not root:
                self._fill_node(node)

            if not self._is_splittable(node, root_deviance):
                continue

            candidate_features = self._sample_feature_subset()
            result = self._find_best_split(node, candidate_features, min_improvement)
            if isinstance(result, NoImprovingSplit):
                continue

            left_rows, right_rows = self._apply_split(node, result)
            importance[result.feature] += result.improvement

            left = TreeNode(node_id=len(nodes), depth=node.depth + 1, rows=left_rows)
            nodes.append(left)
            right = TreeNode(node_id=len(nodes), depth=node.depth + 1, rows=right_rows)
            nodes.append(right)
            node.left = left.node_id
            node.right = right.node_id
            self.metrics.nodes_split += 1

            stack.append(right)
            stack.append(left)

        return Tree(
            nodes=nodes,
            n_features=self.n_features,
            seed=int(seed),
            n_rows=int(rows.size),
            sample_rows=rows,
            importance=importance,
        )


def reduce_tree(tree: Tree) -> Tree:
    """Drop row index lists and node deviances, keeping prediction and importance."""
    nodes = [replace(node, rows=None, deviance=None) for node in tree.nodes]
    return replace(
        tree,
        nodes=nodes,
        sample_rows=None,
        oob_rows=None,
        importance=tree.importance.copy(),
        reduced=True,
    )


def grow_tree(
    observations: ObservationSet,
    loss: LossStrategy,
    control: ControlParams | None = None,
    split_params: SplitParams | None = None,
    rows: np.ndarray | None = None,
) -> Tree:
    """Single greedy tree considering every predictor at every node."""
    builder = TreeBuilder(
        observations=observations,
        loss=loss,
        control=control or ControlParams(),
        ncand=None,
        split_params=split_params,
    )
    return builder.build_tree(rows)
