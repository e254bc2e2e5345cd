"""
Error types for the calibration engine.

Detection misses are not errors (the detector returns None). Estimation and
stream failures are raised as the exceptions below and recovered by the
caller: keep the previous camera model, or report the stream as disconnected.
"""


class CamcalError(Exception):
    """Base class for camcal errors."""


class EstimationFailureError(CamcalError):
    """
    Calibration solve failed.

    Raised when the solver is given too few or degenerate observations, does
    not converge, or returns non-finite parameters. The previously published
    camera model is left untouched.

    Attributes:
        reason: Short description of the failure
        observation_count: Number of observations the solve was run over
    """

    def __init__(self, reason: str = "calibration solve failed", observation_count: int = 0):
        self.reason = reason
        self.observation_count = observation_count
        super().__init__(f"{reason} (observations: {observation_count})")


class StreamStartError(CamcalError):
    """External video pipeline could not be launched or confirmed running."""


class PriorProcessStuckError(StreamStartError):
    """A previous pipeline instance survived every termination attempt."""

    def __init__(self, process_name: str, attempts: int):
        self.process_name = process_name
        self.attempts = attempts
        super().__init__(
            f"cannot terminate running '{process_name}' process(es) after {attempts} attempts"
        )
