"""
Robust accelerometer calibration with known bias and known gravity norm.

The calibrator estimates the scale-factor / cross-coupling matrix M_a of
    f̃ = b_a + (I + M_a) f
from static measurements taken in many orientations, using the fact that at
rest ‖f‖ equals the local gravity norm g. Some measurements may be gross
outliers, so the estimate is obtained in two stages:

    1. RANSAC: minimal subsets are solved for candidate M_a and scored by the
       squared norm error (‖f‖ - g)² of every measurement.
    2. Refinement: weighted Levenberg-Marquardt over the inliers of the best
       candidate, with covariance (JᵀWJ)⁻¹, MSE and χ².

Session life cycle:
    NOT_READY --configure--> READY --calibrate()--> RUNNING --> READY

While RUNNING every setter and calibrate() itself raise LockedError. The
state always leaves RUNNING, whether the run succeeds or fails; on failure
the previous estimate is preserved and inliers_data is None.

Usage:
    calibrator = RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator(
        bias=np.array([0.02, -0.01, 0.03]),
        measurements=measurements,
        ground_truth_gravity_norm=9.81,
        common_axis_used=True,
        rng=42,
    )
    calibrator.calibrate()
    ma = calibrator.estimated_ma
"""

import functools
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from imucal.calibration.listener import CalibratorListener
from imucal.calibration.minimal_solver import CandidateModel, MinimalSampleSolver
from imucal.calibration.refinement import EstimatedResult, refine, result_from_candidate
from imucal.errors import InvalidArgumentError, LockedError, NotReadyError
from imucal.estimators.consensus import (
    DEFAULT_CONFIDENCE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROGRESS_DELTA,
    DEFAULT_THRESHOLD,
    ConsensusEstimator,
    InliersData,
    RansacConfig,
    RobustMethod,
    strategy_for,
)
from imucal.sensors.accelerometer_model import (
    COMMON_AXIS_ZERO_INDICES,
    ma_from_params,
    num_unknowns,
    squared_norm_error,
    validate_bias,
    validate_ma,
)
from imucal.sensors.gravity import check_gravity_norm
from imucal.sensors.types import AccelerometerMeasurement, stack_measurements
from imucal.sensors.units import Acceleration, as_mps2

AccelerationLike = Union[float, Acceleration]
RngLike = Union[None, int, np.random.Generator]

DEFAULT_RESULT_REFINED = True
DEFAULT_COVARIANCE_KEPT = True
DEFAULT_USE_COMMON_AXIS = False

# unknowns + 1 so the minimal problem is over-determined
GENERAL_MINIMUM_MEASUREMENTS = num_unknowns(common_axis=False) + 1
COMMON_AXIS_MINIMUM_MEASUREMENTS = num_unknowns(common_axis=True) + 1


class SessionState(Enum):
    """Life-cycle state of a calibrator."""

    NOT_READY = "not_ready"
    READY = "ready"
    RUNNING = "running"


def minimum_required_measurements(common_axis: bool) -> int:
    if common_axis:
        return COMMON_AXIS_MINIMUM_MEASUREMENTS
    return GENERAL_MINIMUM_MEASUREMENTS


def _unlocked(method):
    """Reject the call with LockedError while a calibration is running."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._running:
            raise LockedError(
                f"{method.__name__} is not allowed while the calibrator is running"
            )
        return method(self, *args, **kwargs)

    return wrapper


def _as_acceleration(value: AccelerationLike, name: str) -> float:
    try:
        value = as_mps2(value)
    except TypeError as exc:
        raise InvalidArgumentError(f"{name}: {exc}") from exc
    if not np.isfinite(value):
        raise InvalidArgumentError(f"{name} must be finite, got {value}")
    return value


def _as_finite_float(value: float, name: str) -> float:
    if isinstance(value, (bool, np.bool_)):
        raise InvalidArgumentError(f"{name} must be a number, got {value!r}")
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"{name} must be a number, got {value!r}") from exc
    if not np.isfinite(value):
        raise InvalidArgumentError(f"{name} must be finite, got {value}")
    return value


def _as_int(value: int, name: str) -> int:
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise InvalidArgumentError(f"{name} must be an integer, got {value!r}")
    return int(value)


def _bias_property(index: int, axis: str):
    def getter(self) -> float:
        return float(self._bias[index])

    @_unlocked
    def setter(self, value: AccelerationLike) -> None:
        self._bias[index] = _as_acceleration(value, f"bias_{axis}")

    setter.__name__ = f"bias_{axis}"
    return property(getter, setter, doc=f"Known bias along {axis} (m/s²).")


def _initial_ma_property(i: int, j: int, name: str):
    def getter(self) -> float:
        return float(self._initial_ma[i, j])

    @_unlocked
    def setter(self, value: float) -> None:
        self._initial_ma[i, j] = _as_finite_float(value, f"initial_{name}")

    setter.__name__ = f"initial_{name}"
    return property(getter, setter, doc=f"Initial guess of {name}.")


def _estimated_ma_property(i: int, j: int, name: str):
    def getter(self) -> Optional[float]:
        if self._estimated_result is None:
            return None
        return float(self._estimated_result.ma[i, j])

    return property(getter, doc=f"Estimated {name}, or None before a successful run.")


class RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator:
    """
    RANSAC calibrator of accelerometer scale factors and cross couplings.

    Args:
        bias: Known bias b_a, shape (3,) or (3, 1). Units: m/s². Default zero.
        initial_ma: Initial guess of M_a (3, 3). Default zero.
        common_axis_used: Assume myx = mzx = mzy = 0.
        measurements: Sequence of AccelerometerMeasurement.
        ground_truth_gravity_norm: Local gravity norm g (m/s² or Acceleration).
        threshold: Inlier threshold on (‖f‖ - g)². Units: (m/s²)².
        confidence: RANSAC confidence in [0, 1].
        max_iterations: Iteration cap (> 0).
        progress_delta: Minimum progress change between notifications.
        preliminary_subset_size: Measurements per RANSAC subset. Defaults to
            the minimum for the axis mode (10 general, 7 common-axis).
        compute_and_keep_inliers: Keep the inlier mask in inliers_data.
        compute_and_keep_residuals: Keep the residuals in inliers_data.
        result_refined: Refine the best candidate over its inliers.
        covariance_kept: Compute the estimated covariance. Without refinement
            it is the covariance of the best subset solution.
        listener: CalibratorListener notified during calibrate().
        quality_scores: Accepted for interface compatibility with
            quality-guided methods; RANSAC never uses them.
        rng: Seed or numpy Generator for subset sampling.

    Raises:
        InvalidArgumentError: On any invalid argument.
    """

    def __init__(
        self,
        bias: Optional[np.ndarray] = None,
        initial_ma: Optional[np.ndarray] = None,
        common_axis_used: bool = DEFAULT_USE_COMMON_AXIS,
        measurements: Optional[Sequence[AccelerometerMeasurement]] = None,
        ground_truth_gravity_norm: Optional[AccelerationLike] = None,
        threshold: float = DEFAULT_THRESHOLD,
        confidence: float = DEFAULT_CONFIDENCE,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        progress_delta: float = DEFAULT_PROGRESS_DELTA,
        preliminary_subset_size: Optional[int] = None,
        compute_and_keep_inliers: bool = False,
        compute_and_keep_residuals: bool = False,
        result_refined: bool = DEFAULT_RESULT_REFINED,
        covariance_kept: bool = DEFAULT_COVARIANCE_KEPT,
        listener: Optional[CalibratorListener] = None,
        quality_scores: Optional[Sequence[float]] = None,
        rng: RngLike = None,
    ):
        self._running = False
        self._strategy = strategy_for(RobustMethod.RANSAC)

        self._bias = np.zeros(3)
        self._initial_ma = np.zeros((3, 3))
        self._common_axis_used = bool(common_axis_used)
        self._measurements: Optional[Tuple[AccelerometerMeasurement, ...]] = None
        self._ground_truth_gravity_norm: Optional[float] = None
        self._preliminary_subset_size = minimum_required_measurements(
            self._common_axis_used
        )

        self._estimated_result: Optional[EstimatedResult] = None
        self._inliers_data: Optional[InliersData] = None

        if bias is not None:
            self.bias = bias
        if initial_ma is not None:
            self.initial_ma = initial_ma
        if measurements is not None:
            self.measurements = measurements
        if ground_truth_gravity_norm is not None:
            self.ground_truth_gravity_norm = ground_truth_gravity_norm
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        if preliminary_subset_size is not None:
            self.preliminary_subset_size = preliminary_subset_size
        self.compute_and_keep_inliers = compute_and_keep_inliers
        self.compute_and_keep_residuals = compute_and_keep_residuals
        self.result_refined = result_refined
        self.covariance_kept = covariance_kept
        self.listener = listener
        if quality_scores is not None:
            self.quality_scores = quality_scores
        self.rng = rng

    # =========================================================================
    # State
    # =========================================================================

    @property
    def method(self) -> RobustMethod:
        return self._strategy.method

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def minimum_required_measurements(self) -> int:
        return minimum_required_measurements(self._common_axis_used)

    @property
    def is_ready(self) -> bool:
        """True when calibrate() can run with the current configuration."""
        minimum = self.minimum_required_measurements
        return (
            self._measurements is not None
            and len(self._measurements) >= minimum
            and len(self._measurements) >= self._preliminary_subset_size
            and self._ground_truth_gravity_norm is not None
            and self._preliminary_subset_size >= minimum
        )

    @property
    def state(self) -> SessionState:
        if self._running:
            return SessionState.RUNNING
        return SessionState.READY if self.is_ready else SessionState.NOT_READY

    # =========================================================================
    # Bias
    # =========================================================================

    @property
    def bias(self) -> np.ndarray:
        """Known bias (3,). Units: m/s²."""
        return self._bias.copy()

    @bias.setter
    @_unlocked
    def bias(self, value: np.ndarray) -> None:
        try:
            self._bias = validate_bias(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(str(exc)) from exc

    bias_x = _bias_property(0, "x")
    bias_y = _bias_property(1, "y")
    bias_z = _bias_property(2, "z")

    @property
    def bias_as_accelerations(self) -> Tuple[Acceleration, Acceleration, Acceleration]:
        return tuple(Acceleration.from_mps2(b) for b in self._bias)

    @_unlocked
    def set_bias_coordinates(
        self, bias_x: AccelerationLike, bias_y: AccelerationLike, bias_z: AccelerationLike
    ) -> None:
        self._bias = np.array(
            [
                _as_acceleration(bias_x, "bias_x"),
                _as_acceleration(bias_y, "bias_y"),
                _as_acceleration(bias_z, "bias_z"),
            ]
        )

    # =========================================================================
    # Initial M_a
    # =========================================================================

    @property
    def initial_ma(self) -> np.ndarray:
        """Initial guess of M_a (3, 3)."""
        return self._initial_ma.copy()

    @initial_ma.setter
    @_unlocked
    def initial_ma(self, value: np.ndarray) -> None:
        try:
            self._initial_ma = validate_ma(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(str(exc)) from exc

    initial_sx = _initial_ma_property(0, 0, "sx")
    initial_sy = _initial_ma_property(1, 1, "sy")
    initial_sz = _initial_ma_property(2, 2, "sz")
    initial_mxy = _initial_ma_property(0, 1, "mxy")
    initial_mxz = _initial_ma_property(0, 2, "mxz")
    initial_myx = _initial_ma_property(1, 0, "myx")
    initial_myz = _initial_ma_property(1, 2, "myz")
    initial_mzx = _initial_ma_property(2, 0, "mzx")
    initial_mzy = _initial_ma_property(2, 1, "mzy")

    @_unlocked
    def set_initial_scaling_factors(self, sx: float, sy: float, sz: float) -> None:
        values = [_as_finite_float(v, "scaling factor") for v in (sx, sy, sz)]
        self._initial_ma[[0, 1, 2], [0, 1, 2]] = values

    @_unlocked
    def set_initial_cross_coupling_errors(
        self, mxy: float, mxz: float, myx: float, myz: float, mzx: float, mzy: float
    ) -> None:
        values = [
            _as_finite_float(v, "cross coupling error")
            for v in (mxy, mxz, myx, myz, mzx, mzy)
        ]
        self._initial_ma[[0, 0, 1, 1, 2, 2], [1, 2, 0, 2, 0, 1]] = values

    @_unlocked
    def set_initial_scaling_factors_and_cross_coupling_errors(
        self,
        sx: float,
        sy: float,
        sz: float,
        mxy: float,
        mxz: float,
        myx: float,
        myz: float,
        mzx: float,
        mzy: float,
    ) -> None:
        values = [
            _as_finite_float(v, "initial M_a element")
            for v in (sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy)
        ]
        self._initial_ma = ma_from_params(np.array(values))

    # =========================================================================
    # Measurements and reference
    # =========================================================================

    @property
    def common_axis_used(self) -> bool:
        return self._common_axis_used

    @common_axis_used.setter
    @_unlocked
    def common_axis_used(self, value: bool) -> None:
        self._common_axis_used = bool(value)
        minimum = self.minimum_required_measurements
        if self._preliminary_subset_size < minimum:
            self._preliminary_subset_size = minimum

    @property
    def measurements(self) -> Optional[Tuple[AccelerometerMeasurement, ...]]:
        return self._measurements

    @measurements.setter
    @_unlocked
    def measurements(self, value: Optional[Sequence[AccelerometerMeasurement]]) -> None:
        if value is None:
            self._measurements = None
            return
        measurements = tuple(value)
        for k, m in enumerate(measurements):
            if not isinstance(m, AccelerometerMeasurement):
                raise InvalidArgumentError(
                    f"measurements[{k}] must be an AccelerometerMeasurement, got {type(m)}"
                )
        self._measurements = measurements

    @property
    def ground_truth_gravity_norm(self) -> Optional[float]:
        """Known gravity norm g (m/s²), or None if not set."""
        return self._ground_truth_gravity_norm

    @ground_truth_gravity_norm.setter
    @_unlocked
    def ground_truth_gravity_norm(self, value: Optional[AccelerationLike]) -> None:
        if value is None:
            self._ground_truth_gravity_norm = None
            return
        g = _as_acceleration(value, "ground_truth_gravity_norm")
        try:
            self._ground_truth_gravity_norm = check_gravity_norm(g)
        except ValueError as exc:
            raise InvalidArgumentError(str(exc)) from exc

    @property
    def ground_truth_gravity_norm_as_acceleration(self) -> Optional[Acceleration]:
        if self._ground_truth_gravity_norm is None:
            return None
        return Acceleration.from_mps2(self._ground_truth_gravity_norm)

    # =========================================================================
    # Robust estimation parameters
    # =========================================================================

    @property
    def threshold(self) -> float:
        """Inlier threshold on the squared norm error. Units: (m/s²)²."""
        return self._threshold

    @threshold.setter
    @_unlocked
    def threshold(self, value: float) -> None:
        value = _as_finite_float(value, "threshold")
        if value <= 0.0:
            raise InvalidArgumentError(f"threshold must be positive, got {value}")
        self._threshold = value

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    @_unlocked
    def confidence(self, value: float) -> None:
        value = _as_finite_float(value, "confidence")
        if not 0.0 <= value <= 1.0:
            raise InvalidArgumentError(f"confidence must be in [0, 1], got {value}")
        self._confidence = value

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    @_unlocked
    def max_iterations(self, value: int) -> None:
        value = _as_int(value, "max_iterations")
        if value <= 0:
            raise InvalidArgumentError(f"max_iterations must be positive, got {value}")
        self._max_iterations = value

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    @_unlocked
    def progress_delta(self, value: float) -> None:
        value = _as_finite_float(value, "progress_delta")
        if not 0.0 <= value <= 1.0:
            raise InvalidArgumentError(f"progress_delta must be in [0, 1], got {value}")
        self._progress_delta = value

    @property
    def preliminary_subset_size(self) -> int:
        return self._preliminary_subset_size

    @preliminary_subset_size.setter
    @_unlocked
    def preliminary_subset_size(self, value: int) -> None:
        value = _as_int(value, "preliminary_subset_size")
        minimum = self.minimum_required_measurements
        if value < minimum:
            raise InvalidArgumentError(
                f"preliminary_subset_size must be at least {minimum}, got {value}"
            )
        self._preliminary_subset_size = value

    @property
    def compute_and_keep_inliers(self) -> bool:
        return self._compute_and_keep_inliers

    @compute_and_keep_inliers.setter
    @_unlocked
    def compute_and_keep_inliers(self, value: bool) -> None:
        self._compute_and_keep_inliers = bool(value)

    @property
    def compute_and_keep_residuals(self) -> bool:
        return self._compute_and_keep_residuals

    @compute_and_keep_residuals.setter
    @_unlocked
    def compute_and_keep_residuals(self, value: bool) -> None:
        self._compute_and_keep_residuals = bool(value)

    @property
    def result_refined(self) -> bool:
        return self._result_refined

    @result_refined.setter
    @_unlocked
    def result_refined(self, value: bool) -> None:
        self._result_refined = bool(value)

    @property
    def covariance_kept(self) -> bool:
        return self._covariance_kept

    @covariance_kept.setter
    @_unlocked
    def covariance_kept(self, value: bool) -> None:
        self._covariance_kept = bool(value)

    @property
    def listener(self) -> Optional[CalibratorListener]:
        return self._listener

    @listener.setter
    @_unlocked
    def listener(self, value: Optional[CalibratorListener]) -> None:
        self._listener = value

    @property
    def rng(self) -> np.random.Generator:
        return self._rng

    @rng.setter
    @_unlocked
    def rng(self, value: RngLike) -> None:
        try:
            self._rng = np.random.default_rng(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(f"rng: {exc}") from exc

    # =========================================================================
    # Quality scores (not applicable to RANSAC)
    # =========================================================================

    @property
    def quality_scores_required(self) -> bool:
        """RANSAC samples uniformly and never needs quality scores."""
        return False

    @property
    def quality_scores(self) -> None:
        """Always None: RANSAC neither uses nor stores quality scores."""
        return None

    @quality_scores.setter
    @_unlocked
    def quality_scores(self, value: Optional[Sequence[float]]) -> None:
        # validated for interface compatibility, then discarded
        if value is None:
            return
        try:
            count = len(value)
        except TypeError as exc:
            raise InvalidArgumentError(
                f"quality_scores must be a sequence, got {type(value)}"
            ) from exc
        minimum = self.minimum_required_measurements
        if count < minimum:
            raise InvalidArgumentError(
                f"quality_scores must have at least {minimum} elements, got {count}"
            )

    # =========================================================================
    # Results
    # =========================================================================

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    @property
    def estimated_result(self) -> Optional[EstimatedResult]:
        return self._estimated_result

    @property
    def estimated_ma(self) -> Optional[np.ndarray]:
        if self._estimated_result is None:
            return None
        return self._estimated_result.ma

    estimated_sx = _estimated_ma_property(0, 0, "sx")
    estimated_sy = _estimated_ma_property(1, 1, "sy")
    estimated_sz = _estimated_ma_property(2, 2, "sz")
    estimated_mxy = _estimated_ma_property(0, 1, "mxy")
    estimated_mxz = _estimated_ma_property(0, 2, "mxz")
    estimated_myx = _estimated_ma_property(1, 0, "myx")
    estimated_myz = _estimated_ma_property(1, 2, "myz")
    estimated_mzx = _estimated_ma_property(2, 0, "mzx")
    estimated_mzy = _estimated_ma_property(2, 1, "mzy")

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        if self._estimated_result is None:
            return None
        return self._estimated_result.covariance

    @property
    def estimated_mse(self) -> Optional[float]:
        if self._estimated_result is None:
            return None
        return self._estimated_result.mse

    @property
    def estimated_chi_sq(self) -> Optional[float]:
        if self._estimated_result is None:
            return None
        return self._estimated_result.chi_sq

    # =========================================================================
    # Calibration
    # =========================================================================

    @_unlocked
    def calibrate(self) -> None:
        """
        Estimate M_a.

        Raises:
            LockedError: If a calibration is already running.
            NotReadyError: If the configuration is incomplete.
            ConsensusError: If no candidate gathers enough inliers.
            RefinementError: If the inlier refinement fails.
        """
        if not self.is_ready:
            raise NotReadyError(
                "Calibrator not ready: needs a gravity norm and at least "
                f"{max(self.minimum_required_measurements, self._preliminary_subset_size)} "
                "measurements"
            )

        self._running = True
        self._inliers_data = None
        try:
            if self._listener is not None:
                self._listener.on_calibrate_start(self)

            result, inliers_data = self._run()

            self._estimated_result = result
            self._inliers_data = inliers_data

            if self._listener is not None:
                self._listener.on_calibrate_end(self)
        finally:
            self._running = False

    def _run(self) -> Tuple[EstimatedResult, InliersData]:
        forces, stds = stack_measurements(self._measurements)
        bias = self._bias.copy()
        g = self._ground_truth_gravity_norm
        common_axis = self._common_axis_used

        initial_ma = self._initial_ma.copy()
        if common_axis:
            for i, j in COMMON_AXIS_ZERO_INDICES:
                initial_ma[i, j] = 0.0

        solver = MinimalSampleSolver(bias, g, initial_ma, common_axis)

        def solve_subset(indices: np.ndarray) -> Optional[CandidateModel]:
            return solver.solve(forces[indices], stds[indices])

        def compute_residuals(candidate: CandidateModel) -> np.ndarray:
            return squared_norm_error(forces, bias, candidate.ma, g)

        config = RansacConfig(
            subset_size=self._preliminary_subset_size,
            threshold=self._threshold,
            confidence=self._confidence,
            max_iterations=self._max_iterations,
            progress_delta=self._progress_delta,
            compute_and_keep_inliers=self._compute_and_keep_inliers or self._result_refined,
            compute_and_keep_residuals=self._compute_and_keep_residuals
            or self._result_refined,
        )

        listener = self._listener
        on_iteration = None
        on_progress = None
        if listener is not None:
            def on_iteration(iteration: int) -> None:
                listener.on_calibrate_next_iteration(self, iteration)

            def on_progress(progress: float) -> None:
                listener.on_calibrate_progress_change(self, progress)

        consensus = ConsensusEstimator(
            config,
            total_samples=len(forces),
            solve_subset=solve_subset,
            compute_residuals=compute_residuals,
            strategy=self._strategy,
            rng=self._rng,
            on_iteration=on_iteration,
            on_progress=on_progress,
        ).estimate()

        inliers = consensus.score.inliers
        if self._result_refined:
            result = refine(
                forces[inliers],
                stds[inliers],
                bias,
                g,
                consensus.model.ma,
                common_axis=common_axis,
                keep_covariance=self._covariance_kept,
            )
        else:
            covariance = None
            if self._covariance_kept:
                subset = consensus.subset
                kept = solver.solve(forces[subset], stds[subset], keep_covariance=True)
                if kept is not None:
                    covariance = kept.covariance
            result = result_from_candidate(
                consensus.model.ma,
                forces[inliers],
                stds[inliers],
                bias,
                g,
                common_axis=common_axis,
                covariance=covariance,
            )
        return result, consensus.inliers_data
