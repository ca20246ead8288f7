from __future__ import annotations

from dataclasses import dataclass
import time

import numpy as np

from distforest.losses import WEIGHT_EPSILON, LossStrategy
from distforest.observations import ObservationSet


@dataclass(frozen=True)
class SplitCandidate:
    feature: int
    improvement: float
    left_deviance: float
    right_deviance: float
    n_left: int
    n_right: int
    threshold: float | None = None
    left_categories: tuple[int, ...] | None = None
    right_categories: tuple[int, ...] | None = None
    default_left: bool = True


@dataclass(frozen=True)
class NoImprovingSplit:
    reason: str


@dataclass
class SplitSearchMetrics:
    features_scanned: int = 0
    candidates_evaluated: int = 0
    time_spent_sec: float = 0.0


class SplitSearch:
    """Exhaustive best-split search for one node over a candidate predictor subset."""

    def __init__(
        self,
        node_rows: np.ndarray,
        candidate_features: np.ndarray,
        observations: ObservationSet,
        loss: LossStrategy,
        stats: np.ndarray,
        min_bucket: int = 1,
        min_improvement: float = 0.0,
        max_exhaustive_categories: int = 8,
    ) -> None:
        self.node_rows = np.asarray(node_rows, dtype=np.int64)
        self.candidate_features = np.sort(np.asarray(candidate_features, dtype=np.int64))
        self.observations = observations
        self.loss = loss
        self.stats = stats
        self.min_bucket = int(min_bucket)
        self.min_improvement = float(min_improvement)
        self.max_exhaustive_categories = int(max_exhaustive_categories)

        self.n_node = int(self.node_rows.size)
        self.node_stats = self.stats[self.node_rows]
        self.parent_stats = self.node_stats.sum(axis=0)
        self.parent_deviance = float(self.loss.split_deviance(self.parent_stats))
        self.metrics = SplitSearchMetrics()

    def _admissible(self, left: np.ndarray, right: np.ndarray, n_left: np.ndarray) -> np.ndarray:
        n_right = self.n_node - n_left
        return (
            (n_left >= self.min_bucket)
            & (n_right >= self.min_bucket)
            & (left[:, 0] >= WEIGHT_EPSILON)
            & (right[:, 0] >= WEIGHT_EPSILON)
        )

    def _pick(
        self, left: np.ndarray, valid: np.ndarray
    ) -> tuple[int, float, np.ndarray, np.ndarray] | None:
        if not np.any(valid):
            return None
        positions = np.flatnonzero(valid)
        left_v = left[positions]
        right_v = self.parent_stats - left_v
        gains = self.loss.split_improvement(self.parent_deviance, left_v, right_v)
        self.metrics.candidates_evaluated += int(gains.size)

        # argmax returns the first maximum, i.e. the lowest threshold.
        j = int(np.argmax(gains))
        return int(positions[j]), float(gains[j]), left_v[j], right_v[j]

    def _best_numeric(self, feature: int) -> SplitCandidate | None:
        values = self.observations.X[self.node_rows, feature]
        order = np.argsort(values, kind="stable")
        sorted_values = values[order]

        cum = np.cumsum(self.node_stats[order], axis=0)
        left = cum[:-1]
        right = self.parent_stats - left
        n_left = np.arange(1, self.n_node, dtype=np.int64)

        valid = (sorted_values[:-1] < sorted_values[1:]) & self._admissible(
            left, right, n_left
        )
        picked = self._pick(left, valid)
        if picked is None:
            return None
        i, gain, left_stats, right_stats = picked

        lo = float(sorted_values[i])
        hi = float(sorted_values[i + 1])
        threshold = 0.5 * (lo + hi)
        if threshold >= hi:
            threshold = lo

        return SplitCandidate(
            feature=int(feature),
            improvement=gain,
            left_deviance=float(self.loss.split_deviance(left_stats)),
            right_deviance=float(self.loss.split_deviance(right_stats)),
            n_left=int(n_left[i]),
            n_right=int(self.n_node - n_left[i]),
            threshold=threshold,
            default_left=bool(left_stats[0] >= right_stats[0]),
        )

    def _category_partitions(self, cat_stats: np.ndarray) -> np.ndarray:
        """Boolean (n_partitions, n_categories) membership of the left child."""
        k = cat_stats.shape[0]
        if k <= self.max_exhaustive_categories:
            # Category 0 always sits on the left; the all-left mask is excluded.
            masks = np.arange(2 ** (k - 1) - 1, dtype=np.int64)
            bits = (masks[:, None] >> np.arange(k - 1, dtype=np.int64)) & 1
            first = np.ones((masks.size, 1), dtype=bool)
            return np.hstack([first, bits.astype(bool)])

        order = np.argsort(self.loss.category_key(cat_stats), kind="stable")
        rank = np.empty(k, dtype=np.int64)
        rank[order] = np.arange(k)
        prefix_len = np.arange(1, k, dtype=np.int64)
        return rank[None, :] < prefix_len[:, None]

    def _best_categorical(self, feature: int) -> SplitCandidate | None:
        codes = self.observations.X[self.node_rows, feature].astype(np.int64)
        categories, inverse = np.unique(codes, return_inverse=True)
        k = categories.size
        if k < 2:
            return None

        cat_stats = np.zeros((k, self.node_stats.shape[1]), dtype=np.float64)
        np.add.at(cat_stats, inverse, self.node_stats)
        cat_counts = np.bincount(inverse, minlength=k).astype(np.int64)

        membership = self._category_partitions(cat_stats)
        left = membership.astype(np.float64) @ cat_stats
        right = self.parent_stats - left
        n_left = membership.astype(np.int64) @ cat_counts

        picked = self._pick(left, self._admissible(left, right, n_left))
        if picked is None:
            return None
        i, gain, left_stats, right_stats = picked

        in_left = membership[i]
        return SplitCandidate(
            feature=int(feature),
            improvement=gain,
            left_deviance=float(self.loss.split_deviance(left_stats)),
            right_deviance=float(self.loss.split_deviance(right_stats)),
            n_left=int(n_left[i]),
            n_right=int(self.n_node - n_left[i]),
            left_categories=tuple(int(c) for c in categories[in_left]),
            right_categories=tuple(int(c) for c in categories[~in_left]),
            default_left=bool(left_stats[0] >= right_stats[0]),
        )

    def search(self) -> SplitCandidate | NoImprovingSplit:
        start = time.perf_counter()
        if self.candidate_features.size == 0:
            return NoImprovingSplit("no candidate predictors")
        if self.n_node < 2 * self.min_bucket:
            return NoImprovingSplit("node smaller than two minimum buckets")

        best: SplitCandidate | None = None
        for feature in self.candidate_features:
            self.metrics.features_scanned += 1
            if self.observations.is_categorical(int(feature)):
                candidate = self._best_categorical(int(feature))
            else:
                candidate = self._best_numeric(int(feature))

            # Strict comparison keeps the lowest predictor index on ties.
            if candidate is not None and (
                best is None or candidate.improvement > best.improvement
            ):
                best = candidate

        self.metrics.time_spent_sec = time.perf_counter() - start
        if best is None:
            return NoImprovingSplit("no admissible split point")
        if best.improvement <= 0.0 or best.improvement <= self.min_improvement:
            return NoImprovingSplit("improvement below complexity threshold")
        return best
