from __future__ import annotations

import logging
from typing import Any, Sequence

import numpy as np
from joblib import Parallel, delayed

from distforest.config import ControlParams, ForestParams, Method, SplitParams
from distforest.data_structures import Forest, Tree, VariableImportance
from distforest.exceptions import UnsupportedOobTrackingError
from distforest.importance import compute_importance
from distforest.losses import ClassLoss, LossStrategy, make_loss
from distforest.observations import ObservationSet, build_observations, split_response
from distforest.predictor import predict
from distforest.tree_builder import TreeBuilder, TreeBuildMetrics, reduce_tree

logger = logging.getLogger(__name__)

MAX_SEED = 2**31 - 1


def draw_sample(
    n_rows: int,
    subsample: float,
    bootstrap: bool,
    rng: np.random.Generator,
) -> tuple[np.ndarray, np.ndarray]:
    """Row sample for one tree and the complementary out-of-bag rows."""
    if bootstrap and subsample >= 1.0:
        sample = np.sort(rng.choice(n_rows, size=n_rows, replace=True))
    else:
        size = max(1, int(np.floor(subsample * n_rows)))
        if size >= n_rows:
            sample = np.arange(n_rows, dtype=np.int64)
        else:
            sample = np.sort(rng.choice(n_rows, size=size, replace=False))

    in_bag = np.zeros(n_rows, dtype=bool)
    in_bag[sample] = True
    return sample.astype(np.int64), np.flatnonzero(~in_bag).astype(np.int64)


class ForestTrainer:
    """Random forest of distribution-aware trees with optional OOB tracking."""

    def __init__(self, params: ForestParams | None = None) -> None:
        self.params = params or ForestParams()

        self.forest_: Forest | None = None
        self.metrics: dict = {}

    def _make_loss(self, y: np.ndarray) -> LossStrategy:
        n_classes = 2
        if self.params.method == Method.CLASS:
            n_classes = ClassLoss.infer_n_classes(y)
        return make_loss(self.params.method, self.params.split, n_classes)

    def _grow_one_tree(
        self,
        observations: ObservationSet,
        loss: LossStrategy,
        stats: np.ndarray,
        ncand: int,
        seed: int,
    ) -> tuple[Tree, TreeBuildMetrics, np.ndarray | None]:
        rng = np.random.default_rng(seed)
        sample, oob = draw_sample(
            observations.n_rows, self.params.subsample, self.params.bootstrap, rng
        )

        builder = TreeBuilder(
            observations=observations,
            loss=loss,
            control=self.params.control,
            ncand=ncand,
            split_params=self.params.split,
            stats=stats,
            rng=rng,
        )
        tree = builder.build_tree(sample, seed=seed)
        tree.oob_rows = oob

        oob_values = None
        if self.params.track_oob:
            oob_values = tree.predict(observations.X[oob])
        return tree, builder.metrics, oob_values

    def _oob_curve(
        self,
        observations: ObservationSet,
        loss: LossStrategy,
        grown: list[tuple[Tree, TreeBuildMetrics, np.ndarray | None]],
    ) -> np.ndarray:
        # Single writer, tree order: identical curves for serial and threaded runs.
        oob_sum = np.zeros(observations.n_rows, dtype=np.float64)
        oob_count = np.zeros(observations.n_rows, dtype=np.int64)
        errors: list[float] = []

        for tree_idx, (tree, _metrics, oob_values) in enumerate(grown):
            assert oob_values is not None and tree.oob_rows is not None
            oob_sum[tree.oob_rows] += oob_values
            oob_count[tree.oob_rows] += 1

            seen = oob_count > 0
            if not np.any(seen):
                logger.warning(
                    "OOB error undefined after tree %d: no row has been out-of-bag yet",
                    tree_idx,
                )
                errors.append(float("nan"))
                continue

            mean_values = oob_sum[seen] / oob_count[seen]
            errors.append(
                loss.oob_metric(
                    loss.oob_prediction(mean_values),
                    observations.y[seen],
                    observations.exposure[seen],
                    observations.weights[seen],
                )
            )
        return np.asarray(errors, dtype=np.float64)

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        exposure: np.ndarray | None = None,
        weights: np.ndarray | None = None,
        categorical: Sequence[int] | None = None,
        feature_names: Sequence[str] | None = None,
    ) -> Forest:
        params = self.params
        y, exposure = split_response(y, exposure)
        loss = self._make_loss(y)
        if params.track_oob and params.method == Method.EXP:
            raise UnsupportedOobTrackingError(
                "OOB tracking is not defined for exponential survival"
            )

        observations = build_observations(
            X,
            y,
            loss,
            exposure=exposure,
            weights=weights,
            categorical=categorical,
            feature_names=feature_names,
        )
        ncand = params.resolve_ncand(observations.n_features)
        if params.track_oob and not loss.supports_oob:
            raise UnsupportedOobTrackingError(
                "OOB tracking is only defined for binary classification, "
                f"got {getattr(loss, 'n_classes', 0)} classes"
            )

        stats = loss.row_stats(observations.y, observations.exposure, observations.weights)
        # Sub-seeds are fixed before dispatch so thread scheduling never changes draws.
        rng = np.random.default_rng(params.seed)
        tree_seeds = rng.integers(0, MAX_SEED, size=params.ntrees)

        logger.info(
            "Growing %d %s trees on %d rows x %d predictors (ncand=%d, subsample=%.3f)",
            params.ntrees,
            params.method.value,
            observations.n_rows,
            observations.n_features,
            ncand,
            params.subsample,
        )
        grown = Parallel(n_jobs=params.n_jobs, prefer="threads")(
            delayed(self._grow_one_tree)(observations, loss, stats, ncand, int(seed))
            for seed in tree_seeds
        )

        oob_error = np.zeros(0, dtype=np.float64)
        if params.track_oob:
            oob_error = self._oob_curve(observations, loss, grown)

        self.metrics = {
            "nodes_visited": 0,
            "nodes_split": 0,
            "candidates_evaluated": 0,
            "split_search_time_sec": 0.0,
            "tree_metrics": [],
        }
        trees: list[Tree] = []
        for tree_idx, (tree, build_metrics, _oob_values) in enumerate(grown):
            logger.debug(
                "tree %d: seed=%d sample=%d oob=%d nodes=%d depth=%d",
                tree_idx,
                tree.seed,
                tree.n_rows,
                0 if tree.oob_rows is None else tree.oob_rows.size,
                tree.n_nodes,
                tree.depth,
            )
            self.metrics["nodes_visited"] += build_metrics.nodes_visited
            self.metrics["nodes_split"] += build_metrics.nodes_split
            self.metrics["candidates_evaluated"] += build_metrics.candidates_evaluated
            self.metrics["split_search_time_sec"] += build_metrics.split_search_time_sec
            self.metrics["tree_metrics"].append(
                {
                    "tree_idx": tree_idx,
                    "nodes_visited": build_metrics.nodes_visited,
                    "nodes_split": build_metrics.nodes_split,
                }
            )
            trees.append(reduce_tree(tree) if params.reduce_memory else tree)

        self.forest_ = Forest(
            trees=trees,
            method=params.method,
            n_features=observations.n_features,
            feature_names=observations.feature_names,
            categorical=observations.categorical,
            n_classes=getattr(loss, "n_classes", 2),
            oob_error=oob_error,
            params=params,
            data=observations if params.keep_data else None,
        )
        logger.info(
            "Grew %d trees with %d splits in total",
            len(trees),
            self.metrics["nodes_split"],
        )
        return self.forest_

    def predict(self, X: np.ndarray | None = None) -> np.ndarray:
        if self.forest_ is None:
            raise RuntimeError("Model must be fitted before prediction")
        return predict(self.forest_, X)

    def importance(self) -> list[VariableImportance]:
        if self.forest_ is None:
            raise RuntimeError("Model must be fitted before computing importance")
        return compute_importance(self.forest_)


def _as_params(value: Any, cls: type) -> Any:
    if value is None:
        return cls()
    if isinstance(value, dict):
        return cls(**value)
    return value


def build_forest(
    X: np.ndarray,
    y: np.ndarray,
    method: Method | str,
    ncand: int | None = None,
    ntrees: int = 100,
    exposure: np.ndarray | None = None,
    weights: np.ndarray | None = None,
    split_params: SplitParams | dict | None = None,
    control: ControlParams | dict | None = None,
    subsample: float = 1.0,
    bootstrap: bool = True,
    track_oob: bool = False,
    keep_data: bool = False,
    reduce_memory: bool = False,
    seed: int = 0,
    n_jobs: int | None = 1,
    categorical: Sequence[int] | None = None,
    feature_names: Sequence[str] | None = None,
) -> Forest:
    """Grow ``ntrees`` trees under ``method`` and return the assembled Forest.

    ``y`` may be a 1D response or a two-column (exposure/time, value) matrix;
    ``control`` and ``split_params`` accept either dataclasses or plain dicts.
    """
    params = ForestParams(
        method=method,
        ncand=ncand,
        ntrees=ntrees,
        subsample=subsample,
        bootstrap=bootstrap,
        track_oob=track_oob,
        keep_data=keep_data,
        reduce_memory=reduce_memory,
        seed=seed,
        n_jobs=n_jobs,
        control=_as_params(control, ControlParams),
        split=_as_params(split_params, SplitParams),
    )
    return ForestTrainer(params).fit(
        X,
        y,
        exposure=exposure,
        weights=weights,
        categorical=categorical,
        feature_names=feature_names,
    )
