"""Errors raised by distforest entry points.

Every check runs before the first tree is grown, so a failing call never
leaves a partially built forest behind.
"""


class DistForestError(Exception):
    """Base class for all distforest errors."""


class ConfigurationError(DistForestError, ValueError):
    """Invalid method, control parameter, ncand or subsample."""


class InvalidMethodError(ConfigurationError):
    pass


class InputDataError(DistForestError, ValueError):
    """Predictor matrix, response, exposure or weights are unusable."""


class InvalidResponseEncodingError(InputDataError):
    pass


class InvalidWeightError(InputDataError):
    pass


class MissingExposureError(InputDataError):
    pass


class UnsupportedOperationError(DistForestError, NotImplementedError):
    """The requested operation is undefined for the chosen loss family."""


class UnsupportedOobTrackingError(UnsupportedOperationError):
    pass


class MissingInputError(DistForestError, ValueError):
    """Prediction asked for without data and without retained training data."""
