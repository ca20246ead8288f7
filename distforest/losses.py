"""Loss strategies, one per supported distribution family.

Every strategy exposes per-row sufficient statistics whose column 0 is the row
weight. ``split_deviance`` maps (cumulative) statistics to the node deviance up
to a term that is additive over rows, so ``parent - left - right`` on that
scale equals the exact deviance reduction of a split.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from distforest.config import Method, SplitParams
from distforest.exceptions import (
    InputDataError,
    InvalidResponseEncodingError,
    MissingExposureError,
    UnsupportedOobTrackingError,
)

EPSILON = 1e-12
WEIGHT_EPSILON = 1e-10


def _safe_ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    num = np.asarray(num, dtype=np.float64)
    den = np.asarray(den, dtype=np.float64)
    out = np.zeros(np.broadcast(num, den).shape, dtype=np.float64)
    np.divide(num, den, out=out, where=den > WEIGHT_EPSILON)
    return out


def _xlogy_ratio(y: np.ndarray, mu: np.ndarray) -> np.ndarray:
    """y * log(y / mu) with the 0 * log(0) = 0 convention and mu clamped."""
    y = np.asarray(y, dtype=np.float64)
    out = np.zeros_like(y)
    pos = y > 0.0
    out[pos] = y[pos] * np.log(y[pos] / np.maximum(mu[pos], EPSILON))
    return out


class LossStrategy(ABC):
    method: Method
    supports_oob: bool = True
    uses_exposure: bool = False
    requires_exposure: bool = False

    @abstractmethod
    def row_stats(
        self, y: np.ndarray, exposure: np.ndarray, weights: np.ndarray
    ) -> np.ndarray:
        """Per-row sufficient statistics, shape (n_rows, k), column 0 = weight."""

    @abstractmethod
    def split_deviance(self, stats: np.ndarray) -> np.ndarray:
        """Deviance on the split scale, vectorised over the last axis of ``stats``."""

    @abstractmethod
    def node_deviance(
        self, y: np.ndarray, exposure: np.ndarray, weights: np.ndarray
    ) -> float:
        pass

    @abstractmethod
    def leaf_value(
        self, y: np.ndarray, exposure: np.ndarray, weights: np.ndarray
    ) -> float:
        pass

    @abstractmethod
    def category_key(self, stats: np.ndarray) -> np.ndarray:
        """Ordering key per category row of summed statistics."""

    @abstractmethod
    def oob_metric(
        self,
        predictions: np.ndarray,
        y: np.ndarray,
        exposure: np.ndarray,
        weights: np.ndarray,
    ) -> float:
        pass

    def validate_response(self, y: np.ndarray, exposure: np.ndarray | None) -> None:
        if not np.all(np.isfinite(y)):
            raise InputDataError("response contains non-finite values")
        if exposure is None:
            if self.requires_exposure:
                raise MissingExposureError(
                    f"method '{self.method.value}' requires an exposure/time column"
                )
            return
        if not self.uses_exposure:
            raise InputDataError(
                f"method '{self.method.value}' does not take an exposure column"
            )
        if not np.all(np.isfinite(exposure)) or np.any(exposure <= 0.0):
            raise InputDataError("exposure must be finite and strictly positive")

    def split_improvement(
        self,
        parent_deviance: float | np.ndarray,
        left_stats: np.ndarray,
        right_stats: np.ndarray,
    ) -> np.ndarray:
        gain = (
            parent_deviance
            - self.split_deviance(left_stats)
            - self.split_deviance(right_stats)
        )
        return np.maximum(gain, 0.0)

    def oob_prediction(self, mean_values: np.ndarray) -> np.ndarray:
        """Turn running averages of per-tree OOB predictions into predictions."""
        return mean_values

    def aggregate(self, tree_values: np.ndarray) -> np.ndarray:
        """Combine a (n_trees, n_rows) matrix of leaf values."""
        return np.mean(tree_values, axis=0)


class ClassLoss(LossStrategy):
    method = Method.CLASS

    def __init__(self, n_classes: int = 2, split: str = "gini") -> None:
        if n_classes < 2:
            raise InvalidResponseEncodingError("class method needs at least 2 classes")
        self.n_classes = int(n_classes)
        self.split = split
        self.supports_oob = self.n_classes == 2

    @staticmethod
    def infer_n_classes(y: np.ndarray) -> int:
        y = np.asarray(y, dtype=np.float64)
        y = y[np.isfinite(y)]
        if y.size == 0:
            return 2
        return max(2, int(np.floor(np.max(y))) + 1)

    def validate_response(self, y: np.ndarray, exposure: np.ndarray | None) -> None:
        super().validate_response(y, exposure)
        if np.any(y < 0) or np.any(y != np.floor(y)):
            raise InvalidResponseEncodingError(
                "class response must be coded as non-negative integers (0/1 for binary)"
            )
        levels = np.unique(y)
        if levels.size == 2 and not np.array_equal(levels, [0.0, 1.0]):
            raise InvalidResponseEncodingError(
                f"binary class response must be coded 0/1, got levels {levels.tolist()}"
            )
        if levels.size and not np.array_equal(levels, np.arange(levels.size)):
            raise InvalidResponseEncodingError(
                f"class codes must be contiguous 0..K-1, got levels {levels.tolist()[:10]}"
            )
        if levels.size and int(levels[-1]) >= self.n_classes:
            raise InvalidResponseEncodingError(
                f"class code {int(levels[-1])} outside [0, {self.n_classes})"
            )

    def row_stats(self, y, exposure, weights):
        n = y.shape[0]
        stats = np.zeros((n, self.n_classes + 1), dtype=np.float64)
        stats[:, 0] = weights
        stats[np.arange(n), 1 + y.astype(np.int64)] = weights
        return stats

    def split_deviance(self, stats):
        W = stats[..., 0]
        counts = stats[..., 1:]
        if self.split == "information":
            p = _safe_ratio(counts, np.expand_dims(W, -1))
            return -np.sum(counts * np.log(np.maximum(p, EPSILON)), axis=-1)
        return W - _safe_ratio(np.sum(counts * counts, axis=-1), W)

    def node_deviance(self, y, exposure, weights):
        stats = self.row_stats(y, exposure, weights).sum(axis=0)
        return float(max(self.split_deviance(stats), 0.0))

    def _majority(self, counts: np.ndarray, axis: int = -1) -> np.ndarray:
        # Ties go to the larger class code, i.e. the positive class when binary.
        flipped = np.flip(counts, axis=axis)
        return (self.n_classes - 1) - np.argmax(flipped, axis=axis)

    def leaf_value(self, y, exposure, weights):
        counts = self.row_stats(y, exposure, weights).sum(axis=0)[1:]
        return float(self._majority(counts))

    def category_key(self, stats):
        W = stats[:, 0]
        counts = stats[:, 1:]
        if self.n_classes == 2:
            return _safe_ratio(counts[:, 1], W)
        dominant = int(self._majority(counts.sum(axis=0)))
        return _safe_ratio(counts[:, dominant], W)

    def oob_metric(self, predictions, y, exposure, weights):
        if not self.supports_oob:
            raise UnsupportedOobTrackingError(
                "OOB tracking is only defined for binary classification"
            )
        pred = predictions >= 0.5
        truth = y >= 0.5
        tp = float(np.sum(weights[pred & truth]))
        tn = float(np.sum(weights[~pred & ~truth]))
        fp = float(np.sum(weights[pred & ~truth]))
        fn = float(np.sum(weights[~pred & truth]))
        denom = np.sqrt((tp + fp) * (tp + fn) * (tn + fp) * (tn + fn))
        if denom <= 0.0:
            return 0.0
        return float((tp * tn - fp * fn) / denom)

    def oob_prediction(self, mean_values):
        return (mean_values >= 0.5).astype(np.float64)

    def aggregate(self, tree_values):
        codes = tree_values.astype(np.int64)
        votes = np.stack(
            [np.sum(codes == c, axis=0) for c in range(self.n_classes)], axis=0
        )
        return self._majority(votes, axis=0).astype(np.float64)


class AnovaLoss(LossStrategy):
    method = Method.ANOVA

    def _scale(self, y: np.ndarray) -> np.ndarray:
        return y

    def row_stats(self, y, exposure, weights):
        # Centre on the weighted mean before forming S and Q.
        t = self._scale(y)
        W = float(np.sum(weights))
        if W > WEIGHT_EPSILON:
            t = t - float(np.sum(weights * t)) / W
        return np.column_stack([weights, weights * t, weights * t * t])

    def split_deviance(self, stats):
        W = stats[..., 0]
        S = stats[..., 1]
        Q = stats[..., 2]
        return Q - _safe_ratio(S * S, W)

    def node_deviance(self, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return 0.0
        t = self._scale(y)
        mu = float(np.sum(weights * t)) / W
        return float(np.sum(weights * (t - mu) ** 2))

    def leaf_value(self, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return 0.0
        return float(np.sum(weights * y)) / W

    def category_key(self, stats):
        return _safe_ratio(stats[:, 1], stats[:, 0])

    def oob_metric(self, predictions, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return float("nan")
        return float(np.sum(weights * (y - predictions) ** 2)) / W


class LognormalLoss(AnovaLoss):
    """Sum of squares on log(y); leaves predict the weighted mean severity."""

    method = Method.LOGNORMAL

    def _scale(self, y: np.ndarray) -> np.ndarray:
        return np.log(np.maximum(y, EPSILON))

    def validate_response(self, y, exposure):
        super().validate_response(y, exposure)
        if np.any(y <= 0.0):
            raise InputDataError("lognormal response must be strictly positive")


class PoissonLoss(LossStrategy):
    method = Method.POISSON
    uses_exposure = True

    def validate_response(self, y, exposure):
        super().validate_response(y, exposure)
        if np.any(y < 0.0):
            raise InputDataError(f"{self.method.value} response must be non-negative")

    def row_stats(self, y, exposure, weights):
        return np.column_stack([weights, weights * y, weights * exposure])

    def split_deviance(self, stats):
        D = stats[..., 1]
        rate = _safe_ratio(D, stats[..., 2])
        out = np.zeros(np.shape(D), dtype=np.float64)
        np.multiply(
            -2.0 * D, np.log(np.maximum(rate, EPSILON)), out=out, where=D > 0.0
        )
        return out

    def _rate(self, y, exposure, weights) -> float:
        E = float(np.sum(weights * exposure))
        if E <= WEIGHT_EPSILON:
            return 0.0
        return float(np.sum(weights * y)) / E

    def node_deviance(self, y, exposure, weights):
        mu = exposure * self._rate(y, exposure, weights)
        dev = 2.0 * np.sum(weights * (_xlogy_ratio(y, mu) - (y - mu)))
        return float(max(dev, 0.0))

    def leaf_value(self, y, exposure, weights):
        return self._rate(y, exposure, weights)

    def category_key(self, stats):
        return _safe_ratio(stats[:, 1], stats[:, 2])

    def oob_metric(self, predictions, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return float("nan")
        mu = predictions * exposure
        dev = 2.0 * (_xlogy_ratio(y, mu) - (y - mu))
        return float(np.sum(weights * dev)) / W


class ExpLoss(PoissonLoss):
    """Exponential survival: event status over time at risk, as a Poisson rate."""

    method = Method.EXP
    supports_oob = False
    requires_exposure = True

    def validate_response(self, y, exposure):
        super().validate_response(y, exposure)
        if not np.all((y == 0.0) | (y == 1.0)):
            raise InvalidResponseEncodingError("exp status must be coded 0/1")

    def oob_metric(self, predictions, y, exposure, weights):
        raise UnsupportedOobTrackingError(
            "OOB tracking is not defined for exponential survival"
        )


class GammaLoss(LossStrategy):
    method = Method.GAMMA

    def validate_response(self, y, exposure):
        super().validate_response(y, exposure)
        if np.any(y <= 0.0):
            raise InputDataError("gamma response must be strictly positive")

    def row_stats(self, y, exposure, weights):
        return np.column_stack([weights, weights * y])

    def split_deviance(self, stats):
        W = stats[..., 0]
        mu = _safe_ratio(stats[..., 1], W)
        return 2.0 * W * np.log(np.maximum(mu, EPSILON))

    def node_deviance(self, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return 0.0
        mu = max(float(np.sum(weights * y)) / W, EPSILON)
        dev = 2.0 * np.sum(weights * (-np.log(y / mu) + (y - mu) / mu))
        return float(max(dev, 0.0))

    def leaf_value(self, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return 0.0
        return float(np.sum(weights * y)) / W

    def category_key(self, stats):
        return _safe_ratio(stats[:, 1], stats[:, 0])

    def oob_metric(self, predictions, y, exposure, weights):
        W = float(np.sum(weights))
        if W <= WEIGHT_EPSILON:
            return float("nan")
        mu = np.maximum(predictions, EPSILON)
        dev = 2.0 * (-np.log(y / mu) + (y - mu) / mu)
        return float(np.sum(weights * dev)) / W


_LOSSES: dict[Method, type[LossStrategy]] = {
    Method.ANOVA: AnovaLoss,
    Method.POISSON: PoissonLoss,
    Method.GAMMA: GammaLoss,
    Method.LOGNORMAL: LognormalLoss,
    Method.EXP: ExpLoss,
}


def make_loss(
    method: Method | str,
    split_params: SplitParams | None = None,
    n_classes: int = 2,
) -> LossStrategy:
    method = Method.parse(method)
    if method == Method.CLASS:
        split = (split_params or SplitParams()).split
        return ClassLoss(n_classes=n_classes, split=split)
    return _LOSSES[method]()
