"""
Accelerometer measurement and error models.

Modules:
    types: AccelerometerMeasurement (static specific-force sample + std)
    accelerometer_model: f̃ = b_a + (I + M_a) f, its inverse, residuals and Jacobian
    units: Typed accelerations and unit conversions
    gravity: Ground-truth gravity norm at a calibration site

Design principles:
    - Measurements are frozen (immutable) dataclasses
    - Model functions are pure and vectorised over (N, 3) arrays
    - All values in SI units (m/s²) unless an Acceleration carries its unit

Example:
    >>> import numpy as np
    >>> from imucal.sensors import AccelerometerMeasurement, norm_residual
    >>> m = AccelerometerMeasurement(np.array([0.0, 0.0, -9.81]), 0.01)
    >>> norm_residual(m.specific_force[np.newaxis, :], np.zeros(3), np.zeros((3, 3)), 9.81)
    array([0.])
"""

from imucal.sensors.types import AccelerometerMeasurement, stack_measurements

from imucal.sensors.accelerometer_model import (
    COMMON_AXIS_UNKNOWNS,
    GENERAL_UNKNOWNS,
    PARAMETER_NAMES,
    common_axis_mask,
    covariance_to_general,
    distort_specific_force,
    ma_from_params,
    norm_jacobian,
    norm_residual,
    params_from_ma,
    squared_norm_error,
    undistorted_specific_force,
)

from imucal.sensors.units import (
    Acceleration,
    AccelerationUnit,
    STANDARD_GRAVITY,
    convert_acceleration,
    mg_to_mps2,
    ug_to_mps2,
)

from imucal.sensors.gravity import gravity_norm, gravity_norm_from_lat_deg

__all__ = [
    # Data types
    "AccelerometerMeasurement",
    "stack_measurements",
    # Error model
    "COMMON_AXIS_UNKNOWNS",
    "GENERAL_UNKNOWNS",
    "PARAMETER_NAMES",
    "common_axis_mask",
    "covariance_to_general",
    "distort_specific_force",
    "ma_from_params",
    "norm_jacobian",
    "norm_residual",
    "params_from_ma",
    "squared_norm_error",
    "undistorted_specific_force",
    # Units
    "Acceleration",
    "AccelerationUnit",
    "STANDARD_GRAVITY",
    "convert_acceleration",
    "mg_to_mps2",
    "ug_to_mps2",
    # Gravity
    "gravity_norm",
    "gravity_norm_from_lat_deg",
]
