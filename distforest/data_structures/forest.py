from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from distforest.config import ForestParams, Method
from distforest.data_structures.tree import Tree
from distforest.observations import ObservationSet


@dataclass
class Forest:
    trees: list[Tree]
    method: Method
    n_features: int
    feature_names: tuple[str, ...] = ()
    categorical: tuple[int, ...] = ()
    n_classes: int = 2
    oob_error: np.ndarray = field(default_factory=lambda: np.zeros(0))
    params: ForestParams | None = None
    data: ObservationSet | None = None

    @property
    def ntrees(self) -> int:
        return len(self.trees)


@dataclass(frozen=True)
class VariableImportance:
    predictor: str
    importance: float
    scale_sum: float
    scale_max: float
