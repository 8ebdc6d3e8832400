"""
End-to-end tests of RANSAC calibration on synthetic static data.

Tests cover:
    - Exact recovery of a common-axis M_a with 10% outliers (no noise)
    - General mode: observable part (I + M_a)(I + M_a)ᵀ and corrected norms
    - Noisy measurements
    - Unrefined results and kept inliers / residuals
    - Failure: ConsensusError leaves the previous estimate intact
    - Typed acceleration inputs and reproducibility with a seed

Run with: pytest tests/imucal/calibration/test_calibrator_robust_estimation.py -v
"""

import unittest
import warnings

import numpy as np
import pytest
from numpy.testing import assert_allclose

from imucal.calibration import (
    CalibratorListener,
    ConsensusError,
    RANSACRobustKnownBiasAndGravityNormAccelerometerCalibrator as Calibrator,
    SessionState,
)
from imucal.sensors import (
    Acceleration,
    AccelerationUnit,
    norm_residual,
    stack_measurements,
)

from tests.imucal.synthetic import (
    ACCEL_NOISE_STD,
    BIAS,
    GRAVITY_NORM,
    MA_COMMON_AXIS,
    MA_GENERAL,
    generate_measurements,
)

ZERO_INDICES = (5, 7, 8)  # myx, mzx, mzy in parameter order


class RecordingListener(CalibratorListener):
    def __init__(self):
        self.start = 0
        self.end = 0
        self.iterations = []
        self.progress = []

    def on_calibrate_start(self, calibrator):
        self.start += 1

    def on_calibrate_end(self, calibrator):
        self.end += 1

    def on_calibrate_next_iteration(self, calibrator, iteration):
        self.iterations.append(iteration)

    def on_calibrate_progress_change(self, calibrator, progress):
        self.progress.append(progress)


class TestCommonAxisRecovery(unittest.TestCase):
    def setUp(self):
        self.measurements, self.outliers = generate_measurements(
            1000, MA_COMMON_AXIS, outlier_ratio=0.1, rng=np.random.default_rng(10)
        )
        self.listener = RecordingListener()
        self.calibrator = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=self.measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            listener=self.listener,
            rng=0,
        )

    def test_recovers_ma(self):
        c = self.calibrator
        c.calibrate()

        assert_allclose(c.estimated_ma, MA_COMMON_AXIS, atol=1e-8)
        self.assertAlmostEqual(c.estimated_sx, MA_COMMON_AXIS[0, 0], delta=1e-8)
        self.assertAlmostEqual(c.estimated_myz, MA_COMMON_AXIS[1, 2], delta=1e-8)
        self.assertTrue(c.estimated_result.refined)
        self.assertGreaterEqual(c.estimated_mse, 0.0)
        self.assertGreaterEqual(c.estimated_chi_sq, 0.0)

    def test_lower_triangle_exactly_zero(self):
        c = self.calibrator
        c.initial_ma = np.full((3, 3), 1e-4)
        c.calibrate()

        self.assertEqual(c.estimated_myx, 0.0)
        self.assertEqual(c.estimated_mzx, 0.0)
        self.assertEqual(c.estimated_mzy, 0.0)

        cov = c.estimated_covariance
        self.assertEqual(cov.shape, (9, 9))
        for k in ZERO_INDICES:
            self.assertTrue(np.all(cov[k, :] == 0.0))
            self.assertTrue(np.all(cov[:, k] == 0.0))

    def test_inliers_match_outlier_mask(self):
        c = self.calibrator
        c.calibrate()

        data = c.inliers_data
        # refinement needs the consensus set, so it is kept even when not asked for
        np.testing.assert_array_equal(data.inliers, ~self.outliers)
        self.assertEqual(data.num_inliers, 900)
        self.assertEqual(data.residuals.shape, (1000,))
        self.assertEqual(c.estimated_result.num_measurements, 900)

    def test_listener_notifications(self):
        self.calibrator.calibrate()

        listener = self.listener
        self.assertEqual(listener.start, 1)
        self.assertEqual(listener.end, 1)
        self.assertEqual(listener.iterations, list(range(1, len(listener.iterations) + 1)))
        self.assertLessEqual(len(listener.iterations), self.calibrator.max_iterations)
        self.assertEqual(listener.progress[-1], 1.0)
        self.assertEqual(listener.progress, sorted(listener.progress))

    def test_recalibration_gives_same_answer(self):
        c = self.calibrator
        c.calibrate()
        first = c.estimated_ma
        c.calibrate()
        assert_allclose(c.estimated_ma, first, atol=1e-10)
        self.assertEqual(self.listener.start, 2)
        self.assertIs(c.state, SessionState.READY)


class TestGeneralRecovery(unittest.TestCase):
    def test_observable_part_recovered(self):
        measurements, outliers = generate_measurements(
            1000, MA_GENERAL, outlier_ratio=0.1, rng=np.random.default_rng(11)
        )
        c = Calibrator(
            bias=BIAS,
            measurements=measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            rng=1,
        )
        # rotations of M_a leave every norm unchanged
        with pytest.warns(UserWarning, match="rank deficient"):
            c.calibrate()

        m_est = np.eye(3) + c.estimated_ma
        m_true = np.eye(3) + MA_GENERAL
        assert_allclose(m_est @ m_est.T, m_true @ m_true.T, atol=1e-8)

        forces, _ = stack_measurements(measurements)
        r = norm_residual(forces[~outliers], BIAS, c.estimated_ma, GRAVITY_NORM)
        assert_allclose(r, 0.0, atol=1e-7)

        self.assertEqual(c.estimated_covariance.shape, (9, 9))
        self.assertTrue(np.all(np.isfinite(c.estimated_covariance)))

    def test_no_covariance_no_warning(self):
        measurements, _ = generate_measurements(
            300, MA_GENERAL, outlier_ratio=0.1, rng=np.random.default_rng(12)
        )
        c = Calibrator(
            bias=BIAS,
            measurements=measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            covariance_kept=False,
            rng=2,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            c.calibrate()
        self.assertIsNone(c.estimated_covariance)
        self.assertIsNotNone(c.estimated_ma)


class TestNoisyRecovery(unittest.TestCase):
    def test_noisy_common_axis(self):
        measurements, _ = generate_measurements(
            100_000,
            MA_COMMON_AXIS,
            noise_std=ACCEL_NOISE_STD,
            outlier_ratio=0.1,
            rng=np.random.default_rng(13),
        )
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-2,
            rng=3,
        )
        c.calibrate()

        assert_allclose(c.estimated_ma, MA_COMMON_AXIS, atol=1e-3)
        self.assertGreater(c.estimated_mse, 0.0)
        self.assertGreater(c.estimated_chi_sq, 0.0)

        # the covariance reflects the measurement noise
        std = np.sqrt(np.diag(c.estimated_covariance)[[0, 1, 2, 3, 4, 6]])
        self.assertTrue(np.all(std > 0.0))
        self.assertTrue(np.all(std < 1e-3))


class TestUnrefinedResult(unittest.TestCase):
    def setUp(self):
        self.measurements, self.outliers = generate_measurements(
            500, MA_COMMON_AXIS, outlier_ratio=0.1, rng=np.random.default_rng(14)
        )

    def test_unrefined(self):
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=self.measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            result_refined=False,
            rng=4,
        )
        c.calibrate()

        self.assertFalse(c.estimated_result.refined)
        cov = c.estimated_covariance
        self.assertEqual(cov.shape, (9, 9))
        assert_allclose(cov, cov.T)
        self.assertTrue(np.all(np.diag(cov)[[0, 1, 2, 3, 4, 6]] > 0.0))
        self.assertTrue(np.all(cov[[5, 7, 8], :] == 0.0))
        self.assertTrue(np.all(cov[:, [5, 7, 8]] == 0.0))
        assert_allclose(c.estimated_ma, MA_COMMON_AXIS, atol=1e-8)
        self.assertGreaterEqual(c.estimated_mse, 0.0)
        self.assertIsNone(c.inliers_data.inliers)
        self.assertIsNone(c.inliers_data.residuals)
        self.assertEqual(c.inliers_data.num_inliers, 450)

    def test_unrefined_without_covariance(self):
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=self.measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            result_refined=False,
            covariance_kept=False,
            rng=4,
        )
        c.calibrate()

        self.assertIsNone(c.estimated_covariance)
        assert_allclose(c.estimated_ma, MA_COMMON_AXIS, atol=1e-8)

    def test_kept_inliers_without_residuals(self):
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=self.measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            result_refined=False,
            compute_and_keep_inliers=True,
            rng=4,
        )
        c.calibrate()

        np.testing.assert_array_equal(c.inliers_data.inliers, ~self.outliers)
        self.assertIsNone(c.inliers_data.residuals)

    def test_kept_residuals(self):
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=self.measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            threshold=1e-10,
            result_refined=False,
            compute_and_keep_residuals=True,
            rng=4,
        )
        c.calibrate()

        residuals = c.inliers_data.residuals
        self.assertEqual(residuals.shape, (500,))
        self.assertTrue(np.all(residuals >= 0.0))
        self.assertTrue(np.all(residuals[~self.outliers] <= 1e-10))


class TestCalibrationFailure(unittest.TestCase):
    def test_previous_estimate_preserved(self):
        measurements, _ = generate_measurements(
            300,
            MA_COMMON_AXIS,
            noise_std=ACCEL_NOISE_STD,
            rng=np.random.default_rng(15),
        )
        listener = RecordingListener()
        c = Calibrator(
            bias=BIAS,
            common_axis_used=True,
            measurements=measurements,
            ground_truth_gravity_norm=GRAVITY_NORM,
            listener=listener,
            rng=5,
        )
        c.calibrate()
        previous = c.estimated_result
        self.assertIsNotNone(c.inliers_data)

        # noisy subsets never fit another measurement this tightly
        c.threshold = 1e-14
        c.max_iterations = 20
        with pytest.raises(ConsensusError):
            c.calibrate()

        self.assertIs(c.estimated_result, previous)
        self.assertIsNone(c.inliers_data)
        self.assertFalse(c.is_running)
        self.assertIs(c.state, SessionState.READY)
        self.assertEqual(listener.start, 2)
        self.assertEqual(listener.end, 1)

        # the session stays usable
        c.threshold = 1e-2
        c.calibrate()
        self.assertIsNotNone(c.inliers_data)


class TestTypedAndSeededInputs(unittest.TestCase):
    def test_accelerations_in_mg(self):
        bias_mg = BIAS / 9.80665 * 1e3
        measurements, _ = generate_measurements(
            200, MA_COMMON_AXIS, outlier_ratio=0.05, rng=np.random.default_rng(16)
        )
        c = Calibrator(common_axis_used=True, measurements=measurements, threshold=1e-10)
        c.set_bias_coordinates(
            *(Acceleration(float(b), AccelerationUnit.MILLI_G) for b in bias_mg)
        )
        c.ground_truth_gravity_norm = Acceleration(
            GRAVITY_NORM * 100.0, AccelerationUnit.CENTIMETERS_PER_SQUARED_SECOND
        )

        assert_allclose(c.bias, BIAS, rtol=1e-12)
        c.calibrate()
        assert_allclose(c.estimated_ma, MA_COMMON_AXIS, atol=1e-8)

    def test_same_seed_same_result(self):
        measurements, _ = generate_measurements(
            300,
            MA_COMMON_AXIS,
            noise_std=ACCEL_NOISE_STD,
            outlier_ratio=0.2,
            rng=np.random.default_rng(17),
        )
        results = []
        for _ in range(2):
            listener = RecordingListener()
            c = Calibrator(
                bias=BIAS,
                common_axis_used=True,
                measurements=measurements,
                ground_truth_gravity_norm=GRAVITY_NORM,
                listener=listener,
                rng=42,
            )
            c.calibrate()
            results.append((c.estimated_ma, len(listener.iterations)))

        np.testing.assert_array_equal(results[0][0], results[1][0])
        self.assertEqual(results[0][1], results[1][1])


if __name__ == "__main__":
    unittest.main()
