"""
Accelerometer scale-factor / cross-coupling error model.

The accelerometer measurement model is:
    f̃ = b_a + (I + M_a) f

where:
    f̃ (fmeas): measured specific force in body frame B [m/s²]
    b_a: accelerometer bias (known) [m/s²]
    M_a: scale factors (diagonal) and cross-coupling errors (off-diagonal)
    f (ftrue): true specific force [m/s²]

         [sx   mxy  mxz]
    M_a = [myx  sy   myz]
         [mzx  mzy  sz ]

At rest the true specific force is the reaction to gravity, so ‖f‖ = g. The
model is inverted as f = (I + M_a)⁻¹ (f̃ - b_a) and compared against the known
gravity norm. Residuals and their Jacobian are pure functions of
(measurements, bias, M_a, g).

Parameter ordering (9-vectors and 9×9 covariances):
    (sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy)

Common-axis assumption: the accelerometer z-axis coincides with the body
z-axis, so myx = mzx = mzy = 0 (M_a upper triangular) and the unknown vector
reduces to (sx, sy, sz, mxy, mxz, myz).
"""

from typing import Tuple

import numpy as np

GENERAL_UNKNOWNS = 9
COMMON_AXIS_UNKNOWNS = 6

PARAMETER_NAMES: Tuple[str, ...] = (
    "sx", "sy", "sz", "mxy", "mxz", "myx", "myz", "mzx", "mzy",
)

# (row, col) of every parameter inside M_a, in PARAMETER_NAMES order
_PARAMETER_INDICES: Tuple[Tuple[int, int], ...] = (
    (0, 0), (1, 1), (2, 2), (0, 1), (0, 2), (1, 0), (1, 2), (2, 0), (2, 1),
)

# positions of the common-axis unknowns inside the general parameter vector
COMMON_AXIS_SELECTION: Tuple[int, ...] = (0, 1, 2, 3, 4, 6)

# structurally-zero entries under the common-axis assumption (myx, mzx, mzy)
COMMON_AXIS_ZERO_INDICES: Tuple[Tuple[int, int], ...] = ((1, 0), (2, 0), (2, 1))

_ROWS = np.array([ij[0] for ij in _PARAMETER_INDICES])
_COLS = np.array([ij[1] for ij in _PARAMETER_INDICES])


def num_unknowns(common_axis: bool) -> int:
    return COMMON_AXIS_UNKNOWNS if common_axis else GENERAL_UNKNOWNS


def parameter_names(common_axis: bool = False) -> Tuple[str, ...]:
    if common_axis:
        return tuple(PARAMETER_NAMES[i] for i in COMMON_AXIS_SELECTION)
    return PARAMETER_NAMES


def common_axis_mask() -> np.ndarray:
    """Boolean 3×3 mask, True at the entries forced to zero in common-axis mode."""
    mask = np.zeros((3, 3), dtype=bool)
    for i, j in COMMON_AXIS_ZERO_INDICES:
        mask[i, j] = True
    return mask


def validate_ma(ma: np.ndarray) -> np.ndarray:
    """
    Validate and copy a scale-factor / cross-coupling matrix.

    Raises:
        ValueError: If ma is not 3×3 or contains non-finite values.
    """
    ma = np.array(ma, dtype=float, copy=True)
    if ma.shape != (3, 3):
        raise ValueError(f"Ma must be (3, 3), got {ma.shape}")
    if not np.all(np.isfinite(ma)):
        raise ValueError("Ma must be finite")
    return ma


def validate_bias(bias: np.ndarray) -> np.ndarray:
    """
    Validate and copy a bias given as a 3-vector or a 3×1 column matrix.

    Raises:
        ValueError: If bias does not have 3 elements laid out as (3,) or (3, 1).
    """
    bias = np.array(bias, dtype=float, copy=True)
    if bias.shape == (3, 1):
        bias = bias.reshape(3)
    if bias.shape != (3,):
        raise ValueError(f"bias must be (3,) or (3, 1), got {bias.shape}")
    if not np.all(np.isfinite(bias)):
        raise ValueError("bias must be finite")
    return bias


def ma_from_params(params: np.ndarray, common_axis: bool = False) -> np.ndarray:
    """
    Build M_a from an unknown vector.

    Args:
        params: (9,) general or (6,) common-axis parameter vector.
        common_axis: Whether params follows the common-axis layout.

    Returns:
        M_a of shape (3, 3). In common-axis mode myx, mzx, mzy are exactly 0.0.
    """
    params = np.asarray(params, dtype=float)
    expected = num_unknowns(common_axis)
    if params.shape != (expected,):
        raise ValueError(f"params must have shape ({expected},), got {params.shape}")

    full = np.zeros(GENERAL_UNKNOWNS)
    if common_axis:
        full[list(COMMON_AXIS_SELECTION)] = params
    else:
        full[:] = params

    ma = np.zeros((3, 3))
    ma[_ROWS, _COLS] = full
    return ma


def params_from_ma(ma: np.ndarray, common_axis: bool = False) -> np.ndarray:
    """Extract the unknown vector from M_a (lower triangle ignored in common-axis mode)."""
    ma = np.asarray(ma, dtype=float)
    full = ma[_ROWS, _COLS]
    if common_axis:
        return full[list(COMMON_AXIS_SELECTION)].copy()
    return full.copy()


def covariance_to_general(cov: np.ndarray) -> np.ndarray:
    """
    Embed a 6×6 common-axis covariance into the 9×9 general layout.

    Rows and columns of myx, mzx and mzy are exactly zero.
    """
    cov = np.asarray(cov, dtype=float)
    if cov.shape != (COMMON_AXIS_UNKNOWNS, COMMON_AXIS_UNKNOWNS):
        raise ValueError(f"cov must be (6, 6), got {cov.shape}")
    full = np.zeros((GENERAL_UNKNOWNS, GENERAL_UNKNOWNS))
    idx = np.array(COMMON_AXIS_SELECTION)
    full[np.ix_(idx, idx)] = cov
    return full


def distort_specific_force(
    f_true: np.ndarray, bias: np.ndarray, ma: np.ndarray
) -> np.ndarray:
    """
    Apply the forward error model f̃ = b_a + (I + M_a) f.

    Args:
        f_true: True specific force. Shape (3,) or (N, 3). Units: m/s².
        bias: Accelerometer bias. Shape (3,). Units: m/s².
        ma: Scale / cross-coupling matrix. Shape (3, 3).

    Returns:
        Measured specific force with the same shape as f_true.
    """
    m = np.eye(3) + ma
    return f_true @ m.T + bias


def undistorted_specific_force(
    f_meas: np.ndarray, bias: np.ndarray, ma: np.ndarray
) -> np.ndarray:
    """
    Invert the error model: f = (I + M_a)⁻¹ (f̃ - b_a).

    Args:
        f_meas: Measured specific force. Shape (3,) or (N, 3). Units: m/s².
        bias: Known bias. Shape (3,). Units: m/s².
        ma: Scale / cross-coupling matrix. Shape (3, 3).

    Returns:
        True specific force estimate with the same shape as f_meas.

    Raises:
        numpy.linalg.LinAlgError: If I + M_a is singular.
    """
    m = np.eye(3) + ma
    centered = np.atleast_2d(f_meas) - bias
    f_true = np.linalg.solve(m, centered.T).T
    return f_true.reshape(np.shape(f_meas))


def norm_residual(
    f_meas: np.ndarray, bias: np.ndarray, ma: np.ndarray, gravity_norm: float
) -> np.ndarray:
    """
    Signed norm residual r = ‖(I + M_a)⁻¹ (f̃ - b_a)‖ - g for every sample.

    Args:
        f_meas: Measured specific forces. Shape (N, 3). Units: m/s².
        bias: Known bias (3,).
        ma: Candidate M_a (3, 3).
        gravity_norm: Ground-truth gravity norm g. Units: m/s².

    Returns:
        Residuals of shape (N,). Units: m/s².
    """
    f_true = undistorted_specific_force(np.atleast_2d(f_meas), bias, ma)
    return np.linalg.norm(f_true, axis=1) - gravity_norm


def squared_norm_error(
    f_meas: np.ndarray, bias: np.ndarray, ma: np.ndarray, gravity_norm: float
) -> np.ndarray:
    """
    Consensus residual (‖f‖ - g)² for every sample.

    A singular I + M_a yields +inf for every sample instead of raising, so a
    degenerate candidate simply gathers no support.

    Returns:
        Non-negative residuals of shape (N,). Units: (m/s²)².
    """
    f_meas = np.atleast_2d(f_meas)
    try:
        r = norm_residual(f_meas, bias, ma, gravity_norm)
    except np.linalg.LinAlgError:
        return np.full(f_meas.shape[0], np.inf)
    return r * r


def norm_jacobian(
    f_meas: np.ndarray, bias: np.ndarray, ma: np.ndarray, common_axis: bool = False
) -> np.ndarray:
    """
    Analytic Jacobian of ‖f‖ with respect to the unknown parameters.

    With M = I + M_a, y = M⁻¹ (f̃ - b_a) and u = y / ‖y‖:
        ∂‖y‖/∂M_ij = -(M⁻ᵀ u)_i · y_j

    Since M_a enters M additively, the same expression holds for ∂/∂M_a.

    Args:
        f_meas: Measured specific forces. Shape (N, 3).
        bias: Known bias (3,).
        ma: M_a at which the Jacobian is evaluated (3, 3).
        common_axis: If True return only the 6 common-axis columns.

    Returns:
        Jacobian of shape (N, 9) or (N, 6).
    """
    f_meas = np.atleast_2d(f_meas)
    m = np.eye(3) + ma
    y = np.linalg.solve(m, (f_meas - bias).T).T
    norms = np.linalg.norm(y, axis=1, keepdims=True)
    u = np.divide(y, norms, out=np.zeros_like(y), where=norms > 0.0)
    v = np.linalg.solve(m.T, u.T).T

    # G[k, i, j] = -v[k, i] * y[k, j]
    grad = -np.einsum("ki,kj->kij", v, y)
    jac = grad[:, _ROWS, _COLS]
    if common_axis:
        return jac[:, list(COMMON_AXIS_SELECTION)]
    return jac
