"""
Weighted Levenberg-Marquardt for small parameter vectors and many observations.

Used twice per calibration: by the minimal-sample solver (a handful of
measurements, once per consensus iteration) and by the refinement stage
(every inlier, weighted by 1/σ²).

Problem:
    x̂ = argmin ½ Σ_i w_i (y_i - h_i(x))²

Damped normal equations solved at every iteration:
    (JᵀWJ + μI) Δx = JᵀW (y - h(x))

Weights stay a vector and scale the rows of J, so an m × m weight matrix is
never formed. The number of parameters n is small (≤ 9), so the n × n normal
matrix is solved densely.
"""

import warnings
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

# relative singular value below which J'WJ is treated as rank deficient
RANK_RTOL = 1e-10


@dataclass
class NonlinearLSResult:
    """Outcome of a Levenberg-Marquardt run.

    Attributes:
        x: Parameters at the last accepted step (n,).
        covariance: Parameter covariance (n, n), or None if not requested.
        iterations: Outer iterations executed.
        residuals: y - h(x) at the returned parameters (m,).
        cost: ½ Σ w_i r_i² at the returned parameters.
        converged: False only when max_iter was exhausted.
        weights: The (m,) weights used, or None for an unweighted run.
        rank_deficient: JᵀWJ was numerically singular at the solution.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    weights: Optional[np.ndarray] = None
    rank_deficient: bool = False

    @property
    def chi_square(self) -> float:
        """Weighted sum of squared residuals rᵀWr (= 2 × cost)."""
        return 2.0 * self.cost


def _check_inputs(y: np.ndarray, x0: np.ndarray, weights: Optional[np.ndarray]) -> np.ndarray:
    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")
    if weights is None:
        return np.ones(len(y))
    w = np.asarray(weights, dtype=float)
    if w.ndim != 1 or len(w) != len(y):
        raise ValueError(f"weights must be 1D array of length {len(y)}")
    if np.any(w < 0):
        raise ValueError("weights must be non-negative")
    return w


def _solve_damped(normal: np.ndarray, rhs: np.ndarray, mu: float) -> np.ndarray:
    damped = normal + mu * np.eye(len(rhs))
    try:
        return np.linalg.solve(damped, rhs)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(damped, rhs, rcond=None)[0]


def _normal_covariance(normal: np.ndarray, scale: float) -> Tuple[np.ndarray, bool]:
    """Return (scale · (JᵀWJ)⁻¹, rank_deficient), pseudo-inverting if needed."""
    s = np.linalg.svd(normal, compute_uv=False)
    deficient = bool(s[-1] <= RANK_RTOL * max(s[0], np.finfo(float).tiny))
    if deficient:
        warnings.warn(
            f"Normal matrix J'WJ is rank deficient ({len(normal)} parameters); "
            "covariance computed with pseudo-inverse.",
            UserWarning,
            stacklevel=3,
        )
        inverse = np.linalg.pinv(normal, rcond=RANK_RTOL)
    else:
        try:
            inverse = np.linalg.inv(normal)
        except np.linalg.LinAlgError:
            inverse = np.linalg.pinv(normal)
    cov = scale * inverse
    return 0.5 * (cov + cov.T), deficient


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-8,
    mu0: float = 1e-3,
    max_mu: float = 1e10,
    return_covariance: bool = True,
    scale_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Minimise ½ Σ w_i (y_i - h_i(x))² starting from x0.

    A trial step is accepted when the gain ratio ρ (actual over predicted
    cost decrease) is positive; μ is then multiplied by
    max(1/3, 1 - (2ρ - 1)³). A rejected step multiplies μ by ν and doubles ν.
    The run stops when ‖Δx‖ < tol, or when μ exceeds max_mu without an
    accepted step (no descent left at working precision). Both count as
    converged.

    Args:
        h: Model, R^n → R^m.
        jacobian: ∂h/∂x evaluated at x, shape (m, n).
        y: Observations (m,).
        x0: Starting parameters (n,).
        weights: Per-observation weights (m,), normally 1/σ². None means 1.
        max_iter: Outer iteration cap.
        tol: Step-norm stopping tolerance.
        mu0: Starting damping.
        max_mu: Damping ceiling.
        return_covariance: Evaluate the covariance at the solution.
        scale_covariance: Scale (JᵀWJ)⁻¹ by rᵀWr/(m - n). Pass False when
            the weights are 1/σ² of known noise, giving the propagated
            measurement covariance (JᵀWJ)⁻¹ itself.

    Returns:
        NonlinearLSResult.

    Raises:
        ValueError: On inconsistent dimensions or negative weights.
        numpy.linalg.LinAlgError: Propagated from h or jacobian.

    Example:
        >>> import numpy as np
        >>> points = np.array([[3.0, 0, 0], [0, -3.0, 0], [0, 0, 3.0], [2.0, 2.0, 1.0]])
        >>> result = levenberg_marquardt(
        ...     lambda x: np.full(4, x[0]),
        ...     lambda x: np.ones((4, 1)),
        ...     np.linalg.norm(points, axis=1),
        ...     x0=np.array([1.0]),
        ... )
        >>> round(float(result.x[0]), 6), bool(result.converged)
        (3.0, True)
    """
    y = np.asarray(y, dtype=float)
    x = np.array(x0, dtype=float, copy=True)
    w = _check_inputs(y, x, weights)
    m, n = len(y), len(x)

    def cost_of(r: np.ndarray) -> float:
        return 0.5 * float(np.sum(w * r * r))

    mu = mu0
    nu = 2.0
    converged = False
    iteration = 0

    for iteration in range(max_iter):
        hx = h(x)
        if len(hx) != m:
            raise ValueError(f"h(x) returned {len(hx)} elements, expected {m}")
        J = jacobian(x)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        r = y - hx
        cost = cost_of(r)
        Jw = J.T * w
        normal = Jw @ J
        gradient = Jw @ r

        step = None
        while mu <= max_mu:
            trial = _solve_damped(normal, gradient, mu)
            trial_cost = cost_of(y - h(x + trial))

            predicted = 0.5 * trial @ (mu * trial + gradient)
            rho = 0.0
            if predicted > 0.0 and predicted > 1e-15 * cost:
                rho = (cost - trial_cost) / predicted

            if rho > 0.0 and np.isfinite(trial_cost):
                step = trial
                mu *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                break
            mu *= nu
            nu *= 2.0

        if step is None:
            converged = True
            break

        x = x + step
        if np.linalg.norm(step) < tol:
            converged = True
            break

    r = y - h(x)
    cost = cost_of(r)

    covariance = None
    rank_deficient = False
    if return_covariance:
        J = jacobian(x)
        scale = 2.0 * cost / (m - n) if scale_covariance and m > n else 1.0
        covariance, rank_deficient = _normal_covariance((J.T * w) @ J, scale)

    return NonlinearLSResult(
        x=x,
        covariance=covariance,
        iterations=iteration + 1,
        residuals=r,
        cost=cost,
        converged=converged,
        weights=None if weights is None else w,
        rank_deficient=rank_deficient,
    )
