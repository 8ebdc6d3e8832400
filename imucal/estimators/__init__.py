"""
Estimation algorithms used by the calibrators.

Available estimators:
    - Nonlinear Least Squares (Levenberg-Marquardt, vector-weighted)
    - Random sample consensus (RANSAC) with pluggable scoring strategy
"""

from imucal.estimators.nonlinear_least_squares import (
    levenberg_marquardt,
    NonlinearLSResult,
)
from imucal.estimators.consensus import (
    ConsensusEstimator,
    ConsensusResult,
    ConsensusScore,
    ConsensusStrategy,
    InliersData,
    RansacConfig,
    RansacStrategy,
    RobustMethod,
    strategy_for,
)

__all__ = [
    # Nonlinear LS
    "levenberg_marquardt",
    "NonlinearLSResult",
    # Consensus
    "ConsensusEstimator",
    "ConsensusResult",
    "ConsensusScore",
    "ConsensusStrategy",
    "InliersData",
    "RansacConfig",
    "RansacStrategy",
    "RobustMethod",
    "strategy_for",
]
