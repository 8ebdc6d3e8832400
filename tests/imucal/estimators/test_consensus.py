"""
Unit tests for the RANSAC consensus engine.

Tests cover:
    - RansacConfig validation
    - RansacStrategy scoring, tie-break and iteration bound
    - Line fitting with gross outliers
    - Iteration / progress callbacks
    - Kept inliers / residuals according to flags
    - ConsensusError when no candidate gathers enough support

Run with: pytest tests/imucal/estimators/test_consensus.py -v
"""

import math
import unittest

import numpy as np
import pytest
from numpy.testing import assert_allclose

from imucal.errors import CalibrationFailure, ConsensusError
from imucal.estimators.consensus import (
    ConsensusEstimator,
    ConsensusScore,
    RansacConfig,
    RansacStrategy,
    RobustMethod,
    strategy_for,
)


def make_line_data(n=200, outlier_ratio=0.3, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-10.0, 10.0, n)
    y = 2.0 * x - 1.0
    outliers = np.zeros(n, dtype=bool)
    idx = rng.choice(n, size=int(outlier_ratio * n), replace=False)
    outliers[idx] = True
    y[idx] += rng.uniform(5.0, 50.0, idx.size) * rng.choice([-1.0, 1.0], idx.size)
    return x, y, outliers


def line_through(x, y, indices):
    x0, x1 = x[indices]
    y0, y1 = y[indices]
    if abs(x1 - x0) < 1e-12:
        return None
    slope = (y1 - y0) / (x1 - x0)
    return np.array([slope, y0 - slope * x0])


class TestRansacConfig(unittest.TestCase):
    def test_defaults(self):
        cfg = RansacConfig(subset_size=7)
        self.assertEqual(cfg.threshold, 1e-2)
        self.assertEqual(cfg.confidence, 0.99)
        self.assertEqual(cfg.max_iterations, 5000)
        self.assertEqual(cfg.progress_delta, 0.05)
        self.assertFalse(cfg.compute_and_keep_inliers)
        self.assertFalse(cfg.compute_and_keep_residuals)

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="threshold"):
            RansacConfig(subset_size=2, threshold=0.0)
        with pytest.raises(ValueError, match="confidence"):
            RansacConfig(subset_size=2, confidence=1.5)
        with pytest.raises(ValueError, match="max_iterations"):
            RansacConfig(subset_size=2, max_iterations=0)
        with pytest.raises(ValueError, match="progress_delta"):
            RansacConfig(subset_size=2, progress_delta=-0.1)
        with pytest.raises(ValueError, match="subset_size"):
            RansacConfig(subset_size=0)

    def test_frozen(self):
        cfg = RansacConfig(subset_size=2)
        with pytest.raises(Exception):
            cfg.threshold = 1.0


class TestRansacStrategy(unittest.TestCase):
    def setUp(self):
        self.strategy = RansacStrategy()

    def test_method(self):
        self.assertIs(self.strategy.method, RobustMethod.RANSAC)
        self.assertIsInstance(strategy_for(RobustMethod.RANSAC), RansacStrategy)

    def test_score_inclusive_threshold(self):
        score = self.strategy.score_candidate(np.array([0.1, 0.5, 0.6, 0.0]), 0.5)
        assert_allclose(score.inliers, [True, True, False, True])
        self.assertEqual(score.num_inliers, 3)
        self.assertAlmostEqual(score.support, 0.6)

    def test_score_no_inliers(self):
        score = self.strategy.score_candidate(np.array([2.0, 3.0]), 1.0)
        self.assertEqual(score.num_inliers, 0)
        self.assertEqual(score.support, float("inf"))

    def test_more_inliers_wins(self):
        a = ConsensusScore(np.ones(3, dtype=bool), 3, 10.0)
        b = ConsensusScore(np.ones(2, dtype=bool), 2, 0.0)
        self.assertTrue(self.strategy.is_better(a, b))
        self.assertFalse(self.strategy.is_better(b, a))
        self.assertTrue(self.strategy.is_better(b, None))

    def test_tie_broken_by_lower_support(self):
        a = ConsensusScore(np.ones(3, dtype=bool), 3, 0.5)
        b = ConsensusScore(np.ones(3, dtype=bool), 3, 0.7)
        self.assertTrue(self.strategy.is_better(a, b))
        self.assertFalse(self.strategy.is_better(b, a))
        # equal support keeps the incumbent
        self.assertFalse(self.strategy.is_better(a, a))

    def test_required_iterations_formula(self):
        k = self.strategy.required_iterations(90, 100, 7, 0.99, 5000)
        expected = math.ceil(math.log(0.01) / math.log(1.0 - 0.9 ** 7))
        self.assertEqual(k, expected)

    def test_required_iterations_limits(self):
        s = self.strategy
        self.assertEqual(s.required_iterations(100, 100, 7, 0.99, 5000), 1)
        self.assertEqual(s.required_iterations(0, 100, 7, 0.99, 5000), 5000)
        self.assertEqual(s.required_iterations(50, 100, 7, 1.0, 5000), 5000)
        self.assertEqual(s.required_iterations(1, 1000, 10, 0.99, 300), 300)
        self.assertEqual(s.required_iterations(50, 100, 7, 0.0, 5000), 1)


class TestConsensusEstimatorLineFit(unittest.TestCase):
    def setUp(self):
        self.x, self.y, self.outliers = make_line_data()

    def _estimator(self, **kwargs):
        config_kwargs = dict(subset_size=2, threshold=1e-6)
        config_kwargs.update(kwargs.pop("config", {}))
        x, y = self.x, self.y
        return ConsensusEstimator(
            RansacConfig(**config_kwargs),
            total_samples=len(x),
            solve_subset=lambda idx: line_through(x, y, idx),
            compute_residuals=lambda m: np.abs(y - (m[0] * x + m[1])),
            rng=kwargs.pop("rng", np.random.default_rng(1)),
            **kwargs,
        )

    def test_recovers_line(self):
        result = self._estimator().estimate()

        assert_allclose(result.model, [2.0, -1.0], atol=1e-9)
        self.assertEqual(result.inliers_data.num_inliers, int((~self.outliers).sum()))
        assert_allclose(result.score.inliers, ~self.outliers)

    def test_iterations_follow_dynamic_bound(self):
        result = self._estimator().estimate()
        bound = RansacStrategy().required_iterations(140, 200, 2, 0.99, 5000)
        self.assertLessEqual(result.iterations, max(bound, 1) + 50)
        self.assertLess(result.iterations, 5000)

    def test_inliers_not_kept_by_default(self):
        result = self._estimator().estimate()
        self.assertIsNone(result.inliers_data.inliers)
        self.assertIsNone(result.inliers_data.residuals)

    def test_inliers_and_residuals_kept(self):
        result = self._estimator(
            config=dict(compute_and_keep_inliers=True, compute_and_keep_residuals=True)
        ).estimate()
        data = result.inliers_data
        assert_allclose(data.inliers, ~self.outliers)
        self.assertEqual(data.residuals.shape, (200,))
        self.assertTrue(np.all(data.residuals[~self.outliers] <= 1e-6))

    def test_kept_arrays_are_read_only(self):
        result = self._estimator(
            config=dict(compute_and_keep_inliers=True, compute_and_keep_residuals=True)
        ).estimate()
        data = result.inliers_data
        with pytest.raises(ValueError, match="read-only"):
            data.inliers[0] = not data.inliers[0]
        with pytest.raises(ValueError, match="read-only"):
            data.residuals[0] = 1.0

    def test_best_subset_reproduces_model(self):
        result = self._estimator().estimate()
        self.assertEqual(result.subset.shape, (2,))
        self.assertTrue(np.all(np.diff(result.subset) > 0))
        assert_allclose(line_through(self.x, self.y, result.subset), result.model)

    def test_reproducible_with_seed(self):
        a = self._estimator(rng=np.random.default_rng(123)).estimate()
        b = self._estimator(rng=np.random.default_rng(123)).estimate()
        self.assertEqual(a.iterations, b.iterations)
        assert_allclose(a.model, b.model)

    def test_callbacks(self):
        iterations = []
        progress = []
        result = self._estimator(
            on_iteration=iterations.append, on_progress=progress.append
        ).estimate()

        self.assertEqual(iterations, list(range(1, result.iterations + 1)))
        self.assertEqual(progress[-1], 1.0)
        self.assertTrue(all(0.0 < p <= 1.0 for p in progress))
        self.assertEqual(progress, sorted(progress))

    def test_max_iterations_caps_loop(self):
        iterations = []
        result = self._estimator(
            config=dict(confidence=1.0, max_iterations=25),
            on_iteration=iterations.append,
        ).estimate()
        self.assertEqual(result.iterations, 25)
        self.assertEqual(len(iterations), 25)


class TestConsensusFailure(unittest.TestCase):
    def test_no_candidate(self):
        estimator = ConsensusEstimator(
            RansacConfig(subset_size=2, max_iterations=10),
            total_samples=20,
            solve_subset=lambda idx: None,
            compute_residuals=lambda m: np.zeros(20),
            rng=np.random.default_rng(0),
        )
        with pytest.raises(ConsensusError, match="No model reached 2 inliers"):
            estimator.estimate()

    def test_not_enough_support(self):
        """Every candidate explains only one sample."""
        estimator = ConsensusEstimator(
            RansacConfig(subset_size=2, threshold=1e-3, max_iterations=20),
            total_samples=20,
            solve_subset=lambda idx: int(idx[0]),
            compute_residuals=lambda m: np.where(np.arange(20) == m, 0.0, 1.0),
            rng=np.random.default_rng(0),
        )
        with pytest.raises(CalibrationFailure):
            estimator.estimate()

    def test_too_few_samples(self):
        with pytest.raises(ValueError, match="at least 5 samples"):
            ConsensusEstimator(
                RansacConfig(subset_size=5),
                total_samples=4,
                solve_subset=lambda idx: None,
                compute_residuals=lambda m: np.zeros(4),
            )

    def test_residual_shape_checked(self):
        estimator = ConsensusEstimator(
            RansacConfig(subset_size=1),
            total_samples=3,
            solve_subset=lambda idx: 0.0,
            compute_residuals=lambda m: np.zeros(2),
            rng=np.random.default_rng(0),
        )
        with pytest.raises(ValueError, match="compute_residuals"):
            estimator.estimate()


if __name__ == "__main__":
    unittest.main()
