"""
Minimal-sample solver for the scale-factor / cross-coupling matrix.

Given a small subset of static measurements, find M_a such that every
undistorted specific force has the known gravity norm:

    ‖(I + M_a)⁻¹ (f̃_k - b_a)‖ = g,   k = 1..s

This is a small nonlinear least-squares problem on the fixed-size unknown
vector (9 general / 6 common-axis), solved with Levenberg-Marquardt from the
configured initial M_a. The solver is deterministic: identical inputs give
identical candidates.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from imucal.estimators.nonlinear_least_squares import levenberg_marquardt
from imucal.sensors.accelerometer_model import (
    ma_from_params,
    norm_jacobian,
    norm_residual,
    num_unknowns,
    params_from_ma,
    undistorted_specific_force,
    validate_bias,
    validate_ma,
)

MINIMAL_MAX_ITERATIONS = 100
MINIMAL_TOLERANCE = 1e-12


@dataclass(frozen=True, eq=False)
class CandidateModel:
    """Candidate calibration produced from one subset.

    Attributes:
        ma: Candidate M_a (3, 3). Common-axis lower triangle is exactly zero.
        residuals: Norm residuals ‖f‖ - g over the subset (s,). Units: m/s².
        covariance: Parameter covariance (J'WJ)⁻¹ in the solver layout (9×9 or
            6×6), or None.
    """

    ma: np.ndarray
    residuals: np.ndarray
    covariance: Optional[np.ndarray]


class MinimalSampleSolver:
    """
    Solve M_a from a measurement subset.

    Args:
        bias: Known accelerometer bias (3,). Units: m/s².
        gravity_norm: Known gravity norm g. Units: m/s².
        initial_ma: Starting point of the iteration (3, 3). In common-axis mode
            its lower triangle is ignored.
        common_axis: Enforce myx = mzx = mzy = 0.
        max_iter: Levenberg-Marquardt iteration cap.
        tol: Convergence tolerance on the parameter step.
    """

    def __init__(
        self,
        bias: np.ndarray,
        gravity_norm: float,
        initial_ma: Optional[np.ndarray] = None,
        common_axis: bool = False,
        max_iter: int = MINIMAL_MAX_ITERATIONS,
        tol: float = MINIMAL_TOLERANCE,
    ):
        self.bias = validate_bias(bias)
        self.gravity_norm = float(gravity_norm)
        self.initial_ma = validate_ma(np.zeros((3, 3)) if initial_ma is None else initial_ma)
        self.common_axis = common_axis
        self.max_iter = max_iter
        self.tol = tol

    @property
    def num_unknowns(self) -> int:
        return num_unknowns(self.common_axis)

    def solve(
        self,
        specific_forces: np.ndarray,
        stds: Optional[np.ndarray] = None,
        keep_covariance: bool = False,
    ) -> Optional[CandidateModel]:
        """
        Solve the subset problem.

        Args:
            specific_forces: Subset of measured specific forces (s, 3). m/s².
            stds: Residual standard deviations (s,). Used as weights 1/σ².
                  Unweighted if None.
            keep_covariance: Compute (J'WJ)⁻¹ at the solution.

        Returns:
            CandidateModel, or None when the iteration does not converge,
            produces non-finite values or reaches a singular I + M_a.
        """
        specific_forces = np.atleast_2d(np.asarray(specific_forces, dtype=float))
        if specific_forces.shape[1] != 3:
            raise ValueError(
                f"specific_forces must have shape (s, 3), got {specific_forces.shape}"
            )
        s = specific_forces.shape[0]
        weights = None if stds is None else 1.0 / np.asarray(stds, dtype=float) ** 2

        common_axis = self.common_axis
        bias = self.bias

        def h(x: np.ndarray) -> np.ndarray:
            f_true = undistorted_specific_force(
                specific_forces, bias, ma_from_params(x, common_axis)
            )
            return np.linalg.norm(f_true, axis=1)

        def jac(x: np.ndarray) -> np.ndarray:
            return norm_jacobian(
                specific_forces, bias, ma_from_params(x, common_axis), common_axis
            )

        x0 = params_from_ma(self.initial_ma, common_axis)
        y = np.full(s, self.gravity_norm)

        try:
            result = levenberg_marquardt(
                h,
                jac,
                y,
                x0,
                weights=weights,
                max_iter=self.max_iter,
                tol=self.tol,
                return_covariance=keep_covariance,
                scale_covariance=False,
            )
        except np.linalg.LinAlgError:
            return None

        if not result.converged or not np.all(np.isfinite(result.x)):
            return None

        ma = ma_from_params(result.x, common_axis)
        try:
            residuals = norm_residual(specific_forces, bias, ma, self.gravity_norm)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(residuals)):
            return None

        if keep_covariance and not np.all(np.isfinite(result.covariance)):
            return None
        return CandidateModel(ma=ma, residuals=residuals, covariance=result.covariance)
