"""
Example: Robust Accelerometer Calibration with RANSAC

Estimates the scale-factor / cross-coupling matrix M_a of a static
accelerometer whose bias and local gravity norm are known beforehand:

    f̃ = b_a + (I + M_a) f,    ‖f‖ = g at rest

A fraction of the static samples is corrupted by gross errors (e.g. the
device was bumped while "static"). RANSAC finds the consensus set, then a
weighted Levenberg-Marquardt refinement over the inliers produces the final
estimate and its covariance.

Demonstrates:
    - Synthetic static data in many orientations, with noise and outliers
    - Common-axis calibration (myx = mzx = mzy = 0)
    - Progress reporting through a CalibratorListener (tqdm)
    - Residual histogram and estimation errors (matplotlib)

Usage:
    python examples/example_ransac_calibration.py
"""

import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from imucal.calibration import (
    CalibratorListener,
    RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator,
)
from imucal.sensors import (
    AccelerometerMeasurement,
    PARAMETER_NAMES,
    distort_specific_force,
    gravity_norm_from_lat_deg,
    norm_residual,
    params_from_ma,
    stack_measurements,
)
from imucal.sensors.units import format_accel_bias, mg_to_mps2


class TqdmListener(CalibratorListener):
    """Shows RANSAC progress as a tqdm bar."""

    def __init__(self):
        self.bar = None
        self.iterations = 0

    def on_calibrate_start(self, calibrator):
        self.iterations = 0
        self.bar = tqdm(total=100, desc="RANSAC", unit="%")

    def on_calibrate_next_iteration(self, calibrator, iteration):
        self.iterations = iteration

    def on_calibrate_progress_change(self, calibrator, progress):
        self.bar.update(int(round(100 * progress)) - self.bar.n)

    def on_calibrate_end(self, calibrator):
        self.bar.close()


def generate_static_measurements(
    n, bias, ma, g, noise_std=mg_to_mps2(1.0), outlier_ratio=0.1, seed=0
):
    """
    Generate static accelerometer samples in uniformly random orientations.

    Args:
        n: Number of samples.
        bias: Accelerometer bias (3,) [m/s²].
        ma: Scale-factor / cross-coupling matrix (3, 3).
        g: Gravity norm [m/s²].
        noise_std: White noise per axis [m/s²].
        outlier_ratio: Fraction of samples with a gross error.
        seed: Random seed.

    Returns:
        Tuple of (measurements, outlier_mask).
    """
    rng = np.random.default_rng(seed)

    directions = rng.standard_normal((n, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    f_true = g * directions

    f_meas = distort_specific_force(f_true, bias, ma)
    f_meas += noise_std * rng.standard_normal((n, 3))

    outliers = np.zeros(n, dtype=bool)
    idx = rng.choice(n, size=int(outlier_ratio * n), replace=False)
    outliers[idx] = True
    f_meas[idx] += 100.0 * noise_std * rng.standard_normal((idx.size, 3))

    measurements = [AccelerometerMeasurement(f, noise_std) for f in f_meas]
    return measurements, outliers


def plot_results(measurements, outliers, calibrator, true_params, bias, g, figs_dir):
    forces, _ = stack_measurements(measurements)
    residuals = norm_residual(forces, bias, calibrator.estimated_ma, g)
    inliers = calibrator.inliers_data.inliers

    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    # Plot 1: norm residuals of inliers vs rejected samples
    ax = axes[0]
    bins = np.linspace(-0.1, 0.1, 81)
    ax.hist(residuals[inliers], bins=bins, color="b", alpha=0.7, label="Inliers")
    ax.hist(residuals[~inliers], bins=bins, color="r", alpha=0.7, label="Rejected")
    ax.set_xlabel("‖f‖ - g [m/s²]", fontsize=12)
    ax.set_ylabel("Count", fontsize=12)
    ax.set_title("Norm Residuals After Calibration", fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)

    # Plot 2: estimated parameters with 3-sigma bounds
    ax = axes[1]
    names = list(PARAMETER_NAMES)
    estimated = params_from_ma(calibrator.estimated_ma) * 1e6
    sigma = np.sqrt(np.diag(calibrator.estimated_covariance)) * 1e6
    x = np.arange(len(names))
    ax.errorbar(x, estimated, yerr=3.0 * sigma, fmt="bo", capsize=4, label="Estimate ± 3σ")
    ax.plot(x, true_params * 1e6, "kx", markersize=10, label="Ground truth")
    ax.set_xticks(x)
    ax.set_xticklabels(names)
    ax.set_ylabel("Value [ppm]", fontsize=12)
    ax.set_title("Estimated M_a", fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    fig.savefig(figs_dir / "ransac_accelerometer_calibration.svg", dpi=300, bbox_inches="tight")
    print(f"  [OK] Saved: {figs_dir / 'ransac_accelerometer_calibration.svg'}")
    plt.close(fig)

    detected = np.sum(~inliers & outliers)
    print(f"  Outliers rejected: {detected}/{np.sum(outliers)}")


def main():
    """Main execution."""
    print("\n" + "=" * 70)
    print("RANSAC Accelerometer Calibration (known bias and gravity norm)")
    print("=" * 70)

    # Configuration
    n = 5000
    g = gravity_norm_from_lat_deg(41.3825, 120.0)
    bias = mg_to_mps2(np.array([0.9, -1.3, 0.8]))
    ma = np.array(
        [
            [500e-6, -300e-6, 200e-6],
            [0.0, -600e-6, 250e-6],
            [0.0, 0.0, 450e-6],
        ]
    )

    print("\nConfiguration:")
    print(f"  Samples:        {n}")
    print(f"  Gravity norm:   {g:.6f} m/s²")
    for axis, b in zip("xyz", bias):
        print(f"  Bias {axis}:         {format_accel_bias(b)}")

    print("\nGenerating synthetic static data...")
    measurements, outliers = generate_static_measurements(n, bias, ma, g)
    print(f"  Outliers:       {np.sum(outliers)}")

    listener = TqdmListener()
    calibrator = RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator(
        bias=bias,
        common_axis_used=True,
        measurements=measurements,
        ground_truth_gravity_norm=g,
        listener=listener,
        rng=42,
    )

    start = time.time()
    calibrator.calibrate()
    elapsed = time.time() - start

    print("\n" + "=" * 70)
    print("RESULTS")
    print("=" * 70)
    print(f"  RANSAC iterations: {listener.iterations}")
    print(f"  Inliers:           {calibrator.inliers_data.num_inliers}")
    print(f"  MSE:               {calibrator.estimated_mse:.3e} (m/s²)²")
    print(f"  Chi-square:        {calibrator.estimated_chi_sq:.1f}")
    print(f"  p-value:           {calibrator.estimated_result.chi_sq_p_value:.3f}")
    print(f"  Time:              {elapsed:.2f} s")

    true_params = params_from_ma(ma)
    sigma = np.sqrt(np.diag(calibrator.estimated_covariance))
    print(f"\n  {'':4s} {'true [ppm]':>12s} {'est [ppm]':>12s} {'sigma [ppm]':>12s}")
    for name, t, e, s in zip(
        PARAMETER_NAMES, true_params, params_from_ma(calibrator.estimated_ma), sigma
    ):
        print(f"  {name:4s} {t * 1e6:12.2f} {e * 1e6:12.2f} {s * 1e6:12.2f}")

    figs_dir = Path(__file__).parent / "figs"
    figs_dir.mkdir(exist_ok=True)

    print("\nGenerating plots...")
    plot_results(measurements, outliers, calibrator, true_params, bias, g, figs_dir)
    print()


if __name__ == "__main__":
    main()
