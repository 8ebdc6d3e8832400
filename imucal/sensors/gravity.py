"""
Ground-truth gravity norm at a calibration site.

The calibrator consumes the local gravity magnitude as a plain scalar; this
module is the boundary where that scalar is produced from a site description
(latitude and height). Any other gravity model can be used instead as long as
it yields a magnitude in m/s².

The normal-gravity formula accounts for:
    - Earth's oblate spheroid shape (equatorial bulge)
    - Centrifugal force from Earth's rotation
    - Free-air decrease of gravity with height above the ellipsoid
"""

import warnings

import numpy as np

from imucal.sensors.units import STANDARD_GRAVITY

# Plausible range of |g| anywhere on or near the Earth's surface (m/s²).
EARTH_GRAVITY_MIN = 9.76
EARTH_GRAVITY_MAX = 9.84

# Free-air gradient (m/s² per metre of height).
FREE_AIR_GRADIENT = 3.086e-6


def gravity_norm(lat_rad: float, height_m: float = 0.0) -> float:
    """
    Compute gravity magnitude at a site.

    Implements the WGS-84 latitude formula with a linear free-air correction:
        g(φ, h) = 9.7803 * (1 + 0.0053024·sin²(φ) - 0.000005·sin²(2φ)) - 3.086e-6·h

    Args:
        lat_rad: Geodetic latitude in radians, in [-π/2, +π/2].
        height_m: Height above the ellipsoid in metres (default 0).

    Returns:
        Gravity magnitude g in m/s².

    Raises:
        ValueError: If latitude is outside [-π/2, π/2].

    Example:
        >>> import numpy as np
        >>> g = gravity_norm(np.deg2rad(41.38), height_m=120.0)
        >>> 9.80 < g < 9.81
        True
    """
    if not -np.pi / 2 - 1e-12 <= lat_rad <= np.pi / 2 + 1e-12:
        raise ValueError(f"lat_rad must be in [-pi/2, pi/2], got {lat_rad}")

    sin_lat_sq = np.sin(lat_rad) ** 2
    sin_2lat_sq = np.sin(2.0 * lat_rad) ** 2
    g0 = 9.7803 * (1.0 + 0.0053024 * sin_lat_sq - 0.000005 * sin_2lat_sq)

    return float(g0 - FREE_AIR_GRADIENT * height_m)


def gravity_norm_from_lat_deg(lat_deg: float, height_m: float = 0.0) -> float:
    """Convenience wrapper of gravity_norm taking latitude in degrees."""
    return gravity_norm(np.deg2rad(lat_deg), height_m)


def check_gravity_norm(g: float) -> float:
    """
    Validate a ground-truth gravity norm.

    Non-positive or non-finite values are rejected. Values outside the range
    found on Earth are accepted (e.g. centrifuge or synthetic data) but raise
    a UserWarning since they usually indicate a unit mistake.

    Returns:
        The validated gravity norm as float.
    """
    if not np.isfinite(g) or g <= 0.0:
        raise ValueError(f"Gravity norm must be positive and finite, got {g}")

    if not EARTH_GRAVITY_MIN <= g <= EARTH_GRAVITY_MAX:
        warnings.warn(
            f"Gravity norm {g:.4f} m/s² is outside the terrestrial range "
            f"[{EARTH_GRAVITY_MIN}, {EARTH_GRAVITY_MAX}] "
            f"(standard gravity is {STANDARD_GRAVITY} m/s²). Check units.",
            UserWarning,
            stacklevel=3,
        )

    return float(g)
