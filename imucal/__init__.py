"""Robust accelerometer calibration from static specific-force measurements.

This package estimates the scale-factor and cross-coupling matrix of a
triaxial accelerometer when its bias and the local gravity norm are known:
- sensors: measurement type, accelerometer error model, units, gravity norm
- estimators: Levenberg-Marquardt least squares and the RANSAC consensus engine
- calibration: minimal-sample solver, refinement and the calibration session
"""

__version__ = "0.1.0"
