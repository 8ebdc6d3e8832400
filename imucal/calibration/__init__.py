"""
Robust accelerometer calibration with known bias and gravity norm.

Modules:
    calibrator: RANSAC calibration session (state machine, configuration, results)
    minimal_solver: Candidate M_a from a minimal measurement subset
    refinement: Weighted refinement over inliers and the EstimatedResult
    listener: Progress observer interface

Example:
    >>> from imucal.calibration import (
    ...     RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator,
    ... )
    >>> calibrator = RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator()
    >>> calibrator.is_ready
    False
"""

from imucal.calibration.calibrator import (
    RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator,
    SessionState,
    minimum_required_measurements,
)
from imucal.calibration.listener import CalibratorListener
from imucal.calibration.minimal_solver import CandidateModel, MinimalSampleSolver
from imucal.calibration.refinement import EstimatedResult, refine, result_from_candidate
from imucal.errors import (
    CalibrationError,
    CalibrationFailure,
    ConsensusError,
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RefinementError,
)

__all__ = [
    # Session
    "RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator",
    "SessionState",
    "minimum_required_measurements",
    "CalibratorListener",
    # Stages
    "CandidateModel",
    "MinimalSampleSolver",
    "EstimatedResult",
    "refine",
    "result_from_candidate",
    # Errors
    "CalibrationError",
    "CalibrationFailure",
    "ConsensusError",
    "InvalidArgumentError",
    "LockedError",
    "NotReadyError",
    "RefinementError",
]
