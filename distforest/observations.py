from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from distforest.exceptions import (
    ConfigurationError,
    InputDataError,
    InvalidWeightError,
)
from distforest.losses import LossStrategy


@dataclass(frozen=True)
class ObservationSet:
    """Read-only training table handed to the tree builders."""

    X: np.ndarray
    y: np.ndarray
    exposure: np.ndarray
    weights: np.ndarray
    categorical: tuple[int, ...] = ()
    feature_names: tuple[str, ...] = ()

    @property
    def n_rows(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.X.shape[1])

    def is_categorical(self, feature: int) -> bool:
        return feature in self.categorical


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=np.float64, copy=True, order="C")
    a.setflags(write=False)
    return a


def split_response(
    y: np.ndarray, exposure: np.ndarray | None = None
) -> tuple[np.ndarray, np.ndarray | None]:
    """Accept either a 1D response or a (time/exposure, value) two-column matrix."""
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 2:
        if y.shape[1] == 1:
            return y[:, 0], exposure
        if y.shape[1] != 2:
            raise InputDataError("response must have one or two columns")
        if exposure is not None:
            raise ConfigurationError(
                "exposure given both as a response column and as a separate array"
            )
        return y[:, 1], y[:, 0]
    if y.ndim != 1:
        raise InputDataError("response must be 1D or a two-column matrix")
    return y, exposure


def check_matrix(
    X: np.ndarray, categorical: Sequence[int] = (), allow_nan: bool = False
) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise InputDataError("X must be a 2D array")
    if X.shape[1] == 0:
        raise InputDataError("X must have at least one predictor column")

    if not allow_nan and not np.all(np.isfinite(X)):
        raise InputDataError("X contains non-finite values")
    if np.any(np.isinf(X)):
        raise InputDataError("X contains infinite values")

    for feature in categorical:
        column = X[:, feature]
        codes = column[np.isfinite(column)]
        if np.any(codes < 0) or np.any(codes != np.floor(codes)):
            raise InputDataError(
                f"categorical column {feature} must hold non-negative integer codes"
            )
    return X


def _check_categorical(categorical: Sequence[int] | None, n_features: int) -> tuple[int, ...]:
    if categorical is None:
        return ()
    out = sorted({int(c) for c in categorical})
    for feature in out:
        if not (0 <= feature < n_features):
            raise ConfigurationError(
                f"categorical column index {feature} outside [0, {n_features})"
            )
    return tuple(out)


def _check_weights(weights: np.ndarray | None, n_rows: int) -> np.ndarray:
    if weights is None:
        return np.ones(n_rows, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != (n_rows,):
        raise InvalidWeightError("weights must be a 1D array with one entry per row")
    if not np.all(np.isfinite(weights)):
        raise InvalidWeightError("weights must be finite")
    if np.any(weights < 0.0):
        raise InvalidWeightError("weights must be non-negative")
    if n_rows and float(np.sum(weights)) <= 0.0:
        raise InvalidWeightError("weights sum to zero")
    return weights


def build_observations(
    X: np.ndarray,
    y: np.ndarray,
    loss: LossStrategy,
    exposure: np.ndarray | None = None,
    weights: np.ndarray | None = None,
    categorical: Sequence[int] | None = None,
    feature_names: Sequence[str] | None = None,
) -> ObservationSet:
    """Validate caller arrays for ``loss`` and freeze them into an ObservationSet."""
    y, exposure = split_response(y, exposure)
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise InputDataError("X must be a 2D array")
    n_rows, n_features = X.shape
    if n_rows == 0:
        raise InputDataError("X has no rows")

    cats = _check_categorical(categorical, n_features)
    X = check_matrix(X, cats)

    if y.shape[0] != n_rows:
        raise InputDataError("y must have the same number of rows as X")
    if exposure is not None:
        exposure = np.asarray(exposure, dtype=np.float64)
        if exposure.shape != (n_rows,):
            raise InputDataError("exposure must be a 1D array with one entry per row")

    loss.validate_response(y, exposure)
    weights = _check_weights(weights, n_rows)
    if exposure is None:
        exposure = np.ones(n_rows, dtype=np.float64)

    if feature_names is None:
        names = tuple(f"x{j}" for j in range(n_features))
    else:
        names = tuple(str(name) for name in feature_names)
        if len(names) != n_features:
            raise ConfigurationError("feature_names must have one name per column")

    return ObservationSet(
        X=_readonly(X),
        y=_readonly(y),
        exposure=_readonly(exposure),
        weights=_readonly(weights),
        categorical=cats,
        feature_names=names,
    )
