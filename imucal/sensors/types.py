"""
Accelerometer measurement data structures.

A calibration run consumes an ordered sequence of static specific-force samples,
each one taken with the sensor at rest in a different (unknown) orientation.
Only the specific force and its uncertainty are needed: the orientation is not
observed, the known gravity norm provides the reference.

Design principles:
    - Measurements are frozen dataclasses; array fields are copied and made
      read-only so a measurement cannot change once added to a calibrator
    - All values in SI units (m/s²)
    - Validation happens at construction time in __post_init__
"""

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np

StdLike = Union[float, np.ndarray]


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=float, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class AccelerometerMeasurement:
    """Static specific-force sample with its standard deviation.

    Attributes:
        specific_force: Measured specific force in body frame B.
                        Shape: (3,). Units: m/s².
        specific_force_std: Standard deviation of the measurement. Either a
                            scalar shared by the three axes or a per-axis
                            array of shape (3,). Units: m/s². Must be > 0.

    Example:
        >>> m = AccelerometerMeasurement(
        ...     specific_force=np.array([0.02, -0.01, -9.80]),
        ...     specific_force_std=0.007,
        ... )
        >>> m.residual_std()
        0.007
    """

    specific_force: np.ndarray
    specific_force_std: StdLike = 1.0

    def __post_init__(self) -> None:
        f = np.asarray(self.specific_force, dtype=float)
        if f.shape == (3, 1) or f.shape == (1, 3):
            f = f.reshape(3)
        if f.shape != (3,):
            raise ValueError(f"specific_force must have shape (3,), got {f.shape}")
        if not np.all(np.isfinite(f)):
            raise ValueError("specific_force must be finite")
        object.__setattr__(self, "specific_force", _readonly(f))

        std = np.asarray(self.specific_force_std, dtype=float)
        if std.ndim == 0:
            std_value: StdLike = float(std)
        elif std.shape == (3,):
            std_value = _readonly(std)
        else:
            raise ValueError(
                f"specific_force_std must be scalar or shape (3,), got {std.shape}"
            )
        if not np.all(np.isfinite(std)) or np.any(std <= 0.0):
            raise ValueError(
                f"specific_force_std must be positive and finite, got {self.specific_force_std}"
            )
        object.__setattr__(self, "specific_force_std", std_value)

    @property
    def has_per_axis_std(self) -> bool:
        return isinstance(self.specific_force_std, np.ndarray)

    def residual_std(self) -> float:
        """
        Standard deviation of the scalar specific-force norm residual.

        A scalar standard deviation applies unchanged. A per-axis standard
        deviation is projected onto the measured specific-force direction u:
            σ_r = sqrt(Σ (u_i σ_i)²)
        which is the first-order uncertainty of ‖f‖.

        Returns:
            Residual standard deviation in m/s².
        """
        if not self.has_per_axis_std:
            return float(self.specific_force_std)

        norm = np.linalg.norm(self.specific_force)
        if norm == 0.0:
            return float(np.sqrt(np.mean(self.specific_force_std ** 2)))
        u = self.specific_force / norm
        return float(np.sqrt(np.sum((u * self.specific_force_std) ** 2)))

    @classmethod
    def from_components(
        cls, fx: float, fy: float, fz: float, std: StdLike = 1.0
    ) -> "AccelerometerMeasurement":
        return cls(np.array([fx, fy, fz], dtype=float), std)


def stack_measurements(
    measurements: Sequence[AccelerometerMeasurement],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stack a measurement sequence into arrays for vectorised evaluation.

    Args:
        measurements: Ordered sequence of AccelerometerMeasurement.

    Returns:
        Tuple of (specific_forces, residual_stds):
            specific_forces: Shape (N, 3). Units: m/s².
            residual_stds: Shape (N,). Units: m/s².
    """
    n = len(measurements)
    forces = np.empty((n, 3))
    stds = np.empty(n)
    for i, measurement in enumerate(measurements):
        forces[i] = measurement.specific_force
        stds[i] = measurement.residual_std()
    return forces, stds
