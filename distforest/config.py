from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from distforest.exceptions import ConfigurationError, InvalidMethodError


class Method(str, Enum):
    CLASS = "class"
    ANOVA = "anova"
    POISSON = "poisson"
    GAMMA = "gamma"
    LOGNORMAL = "lognormal"
    EXP = "exp"

    @classmethod
    def parse(cls, value: str | Method) -> Method:
        if isinstance(value, Method):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise InvalidMethodError(
                f"Unknown method '{value}'. Choose from: {valid}"
            ) from None


@dataclass
class ControlParams:
    """Stopping rules for a single tree (rpart.control defaults)."""

    minsplit: int = 20
    minbucket: int | None = None
    cp: float = 0.01
    maxdepth: int = 30
    xval: int = 0  # accepted for compatibility, cross-validation is never run

    def __post_init__(self) -> None:
        self.minsplit = int(self.minsplit)
        self.cp = float(self.cp)
        self.maxdepth = int(self.maxdepth)
        self.xval = int(self.xval)
        if self.minbucket is None:
            self.minbucket = max(1, int(round(self.minsplit / 3)))
        self.minbucket = int(self.minbucket)
        if self.minsplit < 1:
            raise ConfigurationError("minsplit must be >= 1")
        if self.minbucket < 1:
            raise ConfigurationError("minbucket must be >= 1")
        if not (self.cp >= 0.0):
            raise ConfigurationError("cp must be >= 0")
        if self.maxdepth < 0:
            raise ConfigurationError("maxdepth must be >= 0")
        if self.xval < 0:
            raise ConfigurationError("xval must be >= 0")


@dataclass
class SplitParams:
    split: str = "gini"  # one of: gini, information (class method only)
    max_exhaustive_categories: int = 8

    def __post_init__(self) -> None:
        self.max_exhaustive_categories = int(self.max_exhaustive_categories)
        if self.split not in {"gini", "information"}:
            raise ConfigurationError("split must be one of: gini, information")
        if self.max_exhaustive_categories < 2:
            raise ConfigurationError("max_exhaustive_categories must be >= 2")


@dataclass
class ForestParams:
    method: Method | str = Method.ANOVA
    ncand: int | None = None
    ntrees: int = 100
    subsample: float = 1.0
    bootstrap: bool = True
    track_oob: bool = False
    keep_data: bool = False
    reduce_memory: bool = False
    seed: int = 0
    n_jobs: int | None = 1

    control: ControlParams = field(default_factory=ControlParams)
    split: SplitParams = field(default_factory=SplitParams)

    def __post_init__(self) -> None:
        self.method = Method.parse(self.method)
        self.ntrees = int(self.ntrees)
        self.subsample = float(self.subsample)
        self.seed = int(self.seed)
        self.bootstrap = bool(self.bootstrap)
        self.track_oob = bool(self.track_oob)
        self.keep_data = bool(self.keep_data)
        self.reduce_memory = bool(self.reduce_memory)
        if self.ncand is not None:
            self.ncand = int(self.ncand)
        if self.n_jobs is not None:
            self.n_jobs = int(self.n_jobs)
        if self.ntrees < 1:
            raise ConfigurationError("ntrees must be >= 1")
        if not (0.0 < self.subsample <= 1.0):
            raise ConfigurationError("subsample must be in (0, 1]")
        if self.ncand is not None and self.ncand < 1:
            raise ConfigurationError("ncand must be >= 1")

    def resolve_ncand(self, n_features: int) -> int:
        if self.ncand is None:
            if self.method == Method.CLASS:
                return max(1, int(n_features ** 0.5))
            return max(1, n_features // 3)
        if not (1 <= self.ncand <= n_features):
            raise ConfigurationError(
                f"ncand must be in [1, {n_features}], got {self.ncand}"
            )
        return int(self.ncand)
