class ScalerError(Exception):
    """Base class for errors raised by the scaler."""


class ConfigValidationError(ScalerError):
    """Raised when the scaler configuration fails validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"There were {len(self.errors)} validation errors detected in the configuration")


class ScalingOperationError(ScalerError):
    """Raised when ECS rejects or fails to apply a desired count update."""


class QueueMonitorError(ScalerError):
    """Raised when queue metrics could not be fetched for too many intervals in a row."""
