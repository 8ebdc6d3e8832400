"""
Inlier refinement and the final calibration result.

Once the consensus search has identified the inliers, M_a is re-estimated
from all of them by weighted nonlinear least squares:

    x̂ = argmin Σ_k w_k (‖(I + M_a(x))⁻¹ (f̃_k - b_a)‖ - g)²,   w_k = 1/σ_k²

The parameter covariance is the measurement covariance propagated through
the linearized residual model at the solution:

    P = (JᵀWJ)⁻¹

Goodness of fit:
    MSE  = (1/n) Σ r_k²
    χ²   = Σ (r_k/σ_k)²,   with n - p degrees of freedom
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import stats

from imucal.errors import RefinementError
from imucal.estimators.nonlinear_least_squares import levenberg_marquardt
from imucal.sensors.accelerometer_model import (
    covariance_to_general,
    ma_from_params,
    norm_jacobian,
    norm_residual,
    num_unknowns,
    params_from_ma,
    undistorted_specific_force,
)

REFINEMENT_MAX_ITERATIONS = 100
REFINEMENT_TOLERANCE = 1e-12


@dataclass(frozen=True, eq=False)
class EstimatedResult:
    """Final calibration estimate.

    Attributes:
        ma: Estimated M_a (3, 3).
        covariance: Parameter covariance (9, 9) in the order
            (sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy), or None if it was not
            computed. Rows/cols of myx, mzx, mzy are exactly zero in
            common-axis mode.
        mse: Mean squared norm residual over the inliers. Units: (m/s²)².
        chi_sq: Σ (r/σ)² over the inliers.
        num_measurements: Number of measurements used (inliers).
        num_parameters: Number of estimated parameters (9 or 6).
        refined: Whether the estimate comes from the refinement stage.
    """

    ma: np.ndarray
    covariance: Optional[np.ndarray]
    mse: float
    chi_sq: float
    num_measurements: int
    num_parameters: int
    refined: bool = True

    def __post_init__(self):
        ma = np.array(self.ma, dtype=float, copy=True)
        ma.setflags(write=False)
        object.__setattr__(self, "ma", ma)
        if self.covariance is not None:
            cov = np.array(self.covariance, dtype=float, copy=True)
            cov.setflags(write=False)
            object.__setattr__(self, "covariance", cov)

    @property
    def degrees_of_freedom(self) -> int:
        return self.num_measurements - self.num_parameters

    @property
    def chi_sq_p_value(self) -> Optional[float]:
        """
        Probability of a χ² at least this large if the noise model holds.

        Returns None when there are no degrees of freedom left.
        """
        dof = self.degrees_of_freedom
        if dof <= 0:
            return None
        return float(stats.chi2.sf(self.chi_sq, dof))


def _fit_statistics(residuals: np.ndarray, stds: np.ndarray):
    mse = float(np.mean(residuals ** 2))
    chi_sq = float(np.sum((residuals / stds) ** 2))
    return mse, chi_sq


def refine(
    specific_forces: np.ndarray,
    stds: np.ndarray,
    bias: np.ndarray,
    gravity_norm: float,
    initial_ma: np.ndarray,
    common_axis: bool = False,
    keep_covariance: bool = True,
    max_iter: int = REFINEMENT_MAX_ITERATIONS,
    tol: float = REFINEMENT_TOLERANCE,
) -> EstimatedResult:
    """
    Weighted Levenberg-Marquardt refinement over the inlier measurements.

    Args:
        specific_forces: Inlier specific forces (n, 3). Units: m/s².
        stds: Residual standard deviations (n,). Units: m/s².
        bias: Known bias (3,). Units: m/s².
        gravity_norm: Known gravity norm. Units: m/s².
        initial_ma: Starting M_a, normally the best consensus candidate.
        common_axis: Keep myx = mzx = mzy = 0.
        keep_covariance: Compute the 9×9 covariance.
        max_iter: Iteration cap.
        tol: Convergence tolerance on the parameter step.

    Returns:
        EstimatedResult with refined=True.

    Raises:
        RefinementError: If the solver does not converge, the solution is
            not finite, or I + M_a becomes singular.

    Note:
        Without the common-axis constraint only (I + M_a)(I + M_a)ᵀ is
        observable from norms, so JᵀWJ has rank 6 and the covariance is
        computed with a pseudo-inverse (a UserWarning is issued).
    """
    specific_forces = np.atleast_2d(np.asarray(specific_forces, dtype=float))
    stds = np.asarray(stds, dtype=float)
    n = specific_forces.shape[0]
    p = num_unknowns(common_axis)
    if stds.shape != (n,):
        raise ValueError(f"stds must have shape ({n},), got {stds.shape}")

    def h(x):
        f_true = undistorted_specific_force(
            specific_forces, bias, ma_from_params(x, common_axis)
        )
        return np.linalg.norm(f_true, axis=1)

    def jac(x):
        return norm_jacobian(
            specific_forces, bias, ma_from_params(x, common_axis), common_axis
        )

    try:
        result = levenberg_marquardt(
            h,
            jac,
            np.full(n, float(gravity_norm)),
            params_from_ma(initial_ma, common_axis),
            weights=1.0 / stds ** 2,
            max_iter=max_iter,
            tol=tol,
            return_covariance=keep_covariance,
            scale_covariance=False,
        )
    except np.linalg.LinAlgError as exc:
        raise RefinementError(f"Singular model during refinement: {exc}") from exc

    if not result.converged:
        raise RefinementError(
            f"Refinement did not converge after {result.iterations} iterations"
        )
    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.cost):
        raise RefinementError("Refinement produced non-finite parameters")

    ma = ma_from_params(result.x, common_axis)

    covariance = None
    if keep_covariance:
        if not np.all(np.isfinite(result.covariance)):
            raise RefinementError("Refinement produced a non-finite covariance")
        covariance = (
            covariance_to_general(result.covariance) if common_axis else result.covariance
        )

    mse, chi_sq = _fit_statistics(result.residuals, stds)
    return EstimatedResult(
        ma=ma,
        covariance=covariance,
        mse=mse,
        chi_sq=chi_sq,
        num_measurements=n,
        num_parameters=p,
        refined=True,
    )


def result_from_candidate(
    ma: np.ndarray,
    specific_forces: np.ndarray,
    stds: np.ndarray,
    bias: np.ndarray,
    gravity_norm: float,
    common_axis: bool = False,
    covariance: Optional[np.ndarray] = None,
) -> EstimatedResult:
    """
    Wrap an unrefined consensus candidate as the final result.

    MSE and χ² are evaluated over the given (inlier) measurements.
    `covariance` is the candidate's subset covariance in the solver layout
    (6×6 is embedded into 9×9 in common-axis mode), or None.
    """
    if covariance is not None and common_axis:
        covariance = covariance_to_general(covariance)
    specific_forces = np.atleast_2d(np.asarray(specific_forces, dtype=float))
    residuals = norm_residual(specific_forces, bias, ma, gravity_norm)
    mse, chi_sq = _fit_statistics(residuals, np.asarray(stds, dtype=float))
    return EstimatedResult(
        ma=ma,
        covariance=covariance,
        mse=mse,
        chi_sq=chi_sq,
        num_measurements=specific_forces.shape[0],
        num_parameters=num_unknowns(common_axis),
        refined=False,
    )
