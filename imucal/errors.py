"""
Exception hierarchy for accelerometer calibration.

Every error raised by the calibration session derives from CalibrationError.
Argument and state errors additionally derive from the matching built-in
(ValueError / RuntimeError) so callers that only know the built-ins still
catch them.

    CalibrationError
    ├── InvalidArgumentError   (also ValueError)
    ├── LockedError            (also RuntimeError)
    ├── NotReadyError          (also RuntimeError)
    └── CalibrationFailure
        ├── ConsensusError
        └── RefinementError
"""


class CalibrationError(Exception):
    """Base class of every calibration error."""


class InvalidArgumentError(CalibrationError, ValueError):
    """Malformed dimensions or out-of-range configuration values."""


class LockedError(CalibrationError, RuntimeError):
    """A mutating call was made while a calibration is running."""


class NotReadyError(CalibrationError, RuntimeError):
    """calibrate() was invoked before the configuration was complete."""


class CalibrationFailure(CalibrationError):
    """The computation ran but could not produce an estimate."""


class ConsensusError(CalibrationFailure):
    """No candidate model gathered enough inlier support."""


class RefinementError(CalibrationFailure):
    """The inlier refinement did not converge or produced non-finite values."""
