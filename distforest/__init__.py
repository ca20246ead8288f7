"""
distforest

Random forests of distribution-aware decision trees for risk modelling:
binary classification, squared-error regression, Poisson counts with
exposure, Gamma and lognormal severities and exponential survival, with
out-of-bag error tracking and variable importance.
"""
from distforest.config import ControlParams, ForestParams, Method, SplitParams
from distforest.data_structures import Forest, Tree, TreeNode, VariableImportance
from distforest.exceptions import (
    ConfigurationError,
    DistForestError,
    InputDataError,
    InvalidMethodError,
    InvalidResponseEncodingError,
    InvalidWeightError,
    MissingExposureError,
    MissingInputError,
    UnsupportedOobTrackingError,
    UnsupportedOperationError,
)
from distforest.forest_trainer import ForestTrainer, build_forest
from distforest.importance import compute_importance
from distforest.predictor import predict, predict_all
from distforest.serialization import load_forest, save_forest

__version__ = "1.0"

__all__ = [
    "ConfigurationError",
    "ControlParams",
    "DistForestError",
    "Forest",
    "ForestParams",
    "ForestTrainer",
    "InputDataError",
    "InvalidMethodError",
    "InvalidResponseEncodingError",
    "InvalidWeightError",
    "Method",
    "MissingExposureError",
    "MissingInputError",
    "SplitParams",
    "Tree",
    "TreeNode",
    "UnsupportedOobTrackingError",
    "UnsupportedOperationError",
    "VariableImportance",
    "build_forest",
    "compute_importance",
    "load_forest",
    "predict",
    "predict_all",
    "save_forest",
]
