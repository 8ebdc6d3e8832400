"""
Acceleration unit conversion utilities.

Bias components and the ground-truth gravity norm can be given either as plain
floats (m/s²) or as typed ``Acceleration`` values carrying their own unit. All
calibration computations are carried out in m/s²; this module is the single
place where other units are converted.

Datasheets quote bias in mg or µg; local gravity surveys quote the norm in
m/s² or Gal (cm/s²).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

import numpy as np

Numeric = Union[float, np.ndarray]

STANDARD_GRAVITY = 9.80665  # m/s² (ISO 80000-3:2006)
FEET_TO_METERS = 0.3048


class AccelerationUnit(Enum):
    """Supported acceleration units and their factor to m/s²."""

    METERS_PER_SQUARED_SECOND = "m/s²"
    STANDARD_GRAVITY = "g"
    MILLI_G = "mg"
    MICRO_G = "µg"
    CENTIMETERS_PER_SQUARED_SECOND = "cm/s²"
    FEET_PER_SQUARED_SECOND = "ft/s²"

    @property
    def to_mps2_factor(self) -> float:
        """Multiplicative factor converting a value in this unit to m/s²."""
        return _FACTORS_TO_MPS2[self]


_FACTORS_TO_MPS2 = {
    AccelerationUnit.METERS_PER_SQUARED_SECOND: 1.0,
    AccelerationUnit.STANDARD_GRAVITY: STANDARD_GRAVITY,
    AccelerationUnit.MILLI_G: 1e-3 * STANDARD_GRAVITY,
    AccelerationUnit.MICRO_G: 1e-6 * STANDARD_GRAVITY,
    AccelerationUnit.CENTIMETERS_PER_SQUARED_SECOND: 1e-2,
    AccelerationUnit.FEET_PER_SQUARED_SECOND: FEET_TO_METERS,
}


# ============================================================================
# Datasheet units
# ============================================================================

def mg_to_mps2(mg: Numeric) -> Numeric:
    """
    Milli-g to m/s². Bias is usually specified in mg on datasheets.

    Example:
        >>> print(f"{mg_to_mps2(10.0):.6f} m/s²")
        0.098067 m/s²
    """
    return mg * _FACTORS_TO_MPS2[AccelerationUnit.MILLI_G]


def ug_to_mps2(ug: Numeric) -> Numeric:
    """Micro-g to m/s² (navigation-grade bias stability)."""
    return ug * _FACTORS_TO_MPS2[AccelerationUnit.MICRO_G]


def g_to_mps2(g: Numeric) -> Numeric:
    return g * STANDARD_GRAVITY


def mps2_to_mg(mps2: Numeric) -> Numeric:
    return mps2 / _FACTORS_TO_MPS2[AccelerationUnit.MILLI_G]


def convert_acceleration(
    value: Numeric,
    from_unit: AccelerationUnit,
    to_unit: AccelerationUnit,
) -> Numeric:
    """
    Convert an acceleration value between two units.

    Args:
        value: Acceleration value(s) expressed in ``from_unit``.
        from_unit: Unit of the provided value.
        to_unit: Desired output unit.

    Returns:
        Acceleration value(s) expressed in ``to_unit``.

    Example:
        >>> convert_acceleration(1.0, AccelerationUnit.STANDARD_GRAVITY,
        ...                      AccelerationUnit.CENTIMETERS_PER_SQUARED_SECOND)
        980.665
    """
    if from_unit is to_unit:
        return value
    return value * from_unit.to_mps2_factor / to_unit.to_mps2_factor


@dataclass(frozen=True)
class Acceleration:
    """Acceleration value tagged with its unit.

    Attributes:
        value: Numeric value expressed in ``unit``.
        unit: Unit of ``value`` (default m/s²).

    Example:
        >>> bias_x = Acceleration(2.5, AccelerationUnit.MILLI_G)
        >>> round(bias_x.to_mps2(), 8)
        0.02451663
    """

    value: float
    unit: AccelerationUnit = AccelerationUnit.METERS_PER_SQUARED_SECOND

    def __post_init__(self) -> None:
        if not isinstance(self.unit, AccelerationUnit):
            raise TypeError(f"unit must be an AccelerationUnit, got {type(self.unit)}")
        if not np.isfinite(self.value):
            raise ValueError(f"Acceleration value must be finite, got {self.value}")

    def to_mps2(self) -> float:
        """Return the value converted to m/s²."""
        return float(self.value * self.unit.to_mps2_factor)

    def to(self, unit: AccelerationUnit) -> "Acceleration":
        """Return an equivalent acceleration expressed in ``unit``."""
        return Acceleration(float(convert_acceleration(self.value, self.unit, unit)), unit)

    @classmethod
    def from_mps2(cls, value: float) -> "Acceleration":
        return cls(float(value), AccelerationUnit.METERS_PER_SQUARED_SECOND)


def as_mps2(value: Union[float, Acceleration]) -> float:
    """
    Normalise a scalar acceleration (plain float in m/s² or typed) to m/s².

    Raises:
        TypeError: If value is neither numeric nor an Acceleration.
    """
    if isinstance(value, Acceleration):
        return value.to_mps2()
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, float, np.number)):
        raise TypeError(f"Expected float or Acceleration, got {type(value)}")
    return float(value)


def format_accel_bias(bias_mps2: float) -> str:
    """
    Bias as "<mg> mg (<m/s²> m/s²)" for reports.

    Example:
        >>> format_accel_bias(mg_to_mps2(10.0))
        '10.00 mg (0.0981 m/s²)'
    """
    return f"{mps2_to_mg(bias_mps2):.2f} mg ({bias_mps2:.4f} m/s²)"
