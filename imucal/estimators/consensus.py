"""
Random sample consensus (RANSAC) engine.

The engine is independent of what is being estimated: it only needs
    - solve_subset(indices) -> model or None   (minimal-sample solver)
    - compute_residuals(model) -> (N,) array   (per-sample residual)

Algorithm:
    1. Draw, without replacement, a subset of `subset_size` samples.
    2. Solve the minimal problem; discard the candidate if it fails.
    3. Score the candidate over all samples with the robust-method strategy.
    4. Keep the best candidate and shrink the iteration bound:
           k = log(1 - c) / log(1 - wˢ)
       where c is the confidence, w the inlier ratio and s the subset size.
    5. Stop when the iteration count reaches the bound (capped at
       max_iterations).

The scoring rule lives in a ConsensusStrategy so alternative robust methods
can reuse the same loop; RansacStrategy is the classic inlier-count rule.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

import numpy as np

from imucal.errors import ConsensusError

ModelT = TypeVar("ModelT")

DEFAULT_THRESHOLD = 1e-2
DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05


class RobustMethod(Enum):
    """Robust estimation methods available to the consensus engine."""

    RANSAC = "ransac"


@dataclass(frozen=True, eq=False)
class ConsensusScore:
    """Support gathered by one candidate model.

    Attributes:
        inliers: Boolean inlier mask over all samples. Shape (N,).
        num_inliers: Number of True entries in `inliers`.
        support: Sum of the residuals of the inliers (lower is better).
    """

    inliers: np.ndarray
    num_inliers: int
    support: float


@dataclass(frozen=True, eq=False)
class InliersData:
    """Inlier support of the best model.

    Attributes:
        inliers: Boolean inlier mask (N,), or None if not kept.
        residuals: Residual of every sample under the best model (N,), or None
            if not kept.
        num_inliers: Number of inliers of the best model.
    """

    inliers: Optional[np.ndarray]
    residuals: Optional[np.ndarray]
    num_inliers: int

    def __post_init__(self):
        for name in ("inliers", "residuals"):
            value = getattr(self, name)
            if value is not None:
                value = np.array(value, copy=True)
                value.setflags(write=False)
                object.__setattr__(self, name, value)


class ConsensusStrategy(ABC):
    """Scoring rule of a robust method."""

    method: RobustMethod

    @abstractmethod
    def score_candidate(self, residuals: np.ndarray, threshold: float) -> ConsensusScore:
        """Classify samples and aggregate the support of a candidate."""

    @abstractmethod
    def is_better(self, score: ConsensusScore, best: Optional[ConsensusScore]) -> bool:
        """Whether `score` should replace the current best (None if no best yet)."""

    @abstractmethod
    def required_iterations(
        self,
        num_inliers: int,
        total: int,
        subset_size: int,
        confidence: float,
        max_iterations: int,
    ) -> int:
        """Iteration bound implied by the current best support."""


class RansacStrategy(ConsensusStrategy):
    """Classic RANSAC scoring.

    A sample is an inlier iff its residual is ≤ threshold. The best candidate
    has the most inliers; equal counts are resolved in favour of the lower
    summed inlier residual, so the choice is deterministic for a given
    sampling sequence.
    """

    method = RobustMethod.RANSAC

    def score_candidate(self, residuals: np.ndarray, threshold: float) -> ConsensusScore:
        residuals = np.asarray(residuals, dtype=float)
        inliers = residuals <= threshold
        num_inliers = int(np.count_nonzero(inliers))
        support = float(np.sum(residuals[inliers])) if num_inliers > 0 else float("inf")
        return ConsensusScore(inliers=inliers, num_inliers=num_inliers, support=support)

    def is_better(self, score: ConsensusScore, best: Optional[ConsensusScore]) -> bool:
        if best is None:
            return True
        if score.num_inliers != best.num_inliers:
            return score.num_inliers > best.num_inliers
        return score.support < best.support

    def required_iterations(
        self,
        num_inliers: int,
        total: int,
        subset_size: int,
        confidence: float,
        max_iterations: int,
    ) -> int:
        """
        Number of draws needed to pick an all-inlier subset with probability c.

            k = log(1 - c) / log(1 - wˢ)

        Returns max_iterations when no bound can be derived (w = 0 or c = 1)
        and at least one iteration otherwise.

        Example:
            >>> RansacStrategy().required_iterations(90, 100, 7, 0.99, 5000)
            8
        """
        if total <= 0 or num_inliers <= 0:
            return max_iterations

        inlier_ratio = min(1.0, num_inliers / total)
        all_inliers_prob = inlier_ratio ** subset_size
        if all_inliers_prob >= 1.0:
            return 1
        if all_inliers_prob <= 0.0 or confidence >= 1.0:
            return max_iterations
        if confidence <= 0.0:
            return 1

        k = math.log(1.0 - confidence) / math.log1p(-all_inliers_prob)
        if not math.isfinite(k):
            return max_iterations
        return int(min(max_iterations, max(1, math.ceil(k))))


def strategy_for(method: RobustMethod) -> ConsensusStrategy:
    """Instantiate the scoring strategy of a robust method."""
    if method == RobustMethod.RANSAC:
        return RansacStrategy()
    raise ValueError(f"Unsupported robust method: {method}")


@dataclass(frozen=True)
class RansacConfig:
    """Validated consensus parameters.

    Attributes:
        subset_size: Samples drawn per iteration (≥ 1).
        threshold: Inlier residual threshold (> 0).
        confidence: Probability of drawing at least one all-inlier subset,
            in [0, 1].
        max_iterations: Hard cap on the number of iterations (> 0).
        progress_delta: Minimum progress change between two progress
            notifications, in [0, 1].
        compute_and_keep_inliers: Keep the inlier mask of the best model.
        compute_and_keep_residuals: Keep the residuals of the best model.
    """

    subset_size: int
    threshold: float = DEFAULT_THRESHOLD
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    compute_and_keep_inliers: bool = False
    compute_and_keep_residuals: bool = False

    def __post_init__(self):
        if self.subset_size < 1:
            raise ValueError(f"subset_size must be at least 1, got {self.subset_size}")
        if not self.threshold > 0.0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if self.max_iterations < 1:
            raise ValueError(
                f"max_iterations must be at least 1, got {self.max_iterations}"
            )
        if not 0.0 <= self.progress_delta <= 1.0:
            raise ValueError(
                f"progress_delta must be in [0, 1], got {self.progress_delta}"
            )


@dataclass(frozen=True, eq=False)
class ConsensusResult(Generic[ModelT]):
    """Outcome of a consensus search.

    Attributes:
        model: Best candidate model.
        inliers_data: Support of the best model (mask/residuals as configured).
        iterations: Number of iterations performed.
        score: Full support of the best model, regardless of what
            inliers_data keeps.
        subset: Sorted sample indices the best model was solved from.
    """

    model: ModelT
    inliers_data: InliersData
    iterations: int
    score: Optional[ConsensusScore] = None
    subset: Optional[np.ndarray] = None


class ConsensusEstimator(Generic[ModelT]):
    """
    Hypothesize-and-test search for the model with the largest support.

    Args:
        config: Consensus parameters.
        total_samples: Number of samples N (≥ subset_size).
        solve_subset: Minimal solver; receives the sorted subset indices and
            returns a model, or None when the subset yields no model.
        compute_residuals: Returns the (N,) residual vector of a model.
        strategy: Scoring rule (default RansacStrategy()).
        rng: numpy Generator used to draw subsets. A new unseeded generator
            is created if None.
        on_iteration: Called with the 1-based iteration number after every
            iteration.
        on_progress: Called with progress in [0, 1] whenever it advanced by
            at least config.progress_delta, and with 1.0 on completion.

    Example:
        >>> import numpy as np
        >>> data = np.r_[np.full(20, 3.0), 50.0, -40.0]
        >>> estimator = ConsensusEstimator(
        ...     RansacConfig(subset_size=1, threshold=0.5),
        ...     total_samples=len(data),
        ...     solve_subset=lambda idx: float(data[idx].mean()),
        ...     compute_residuals=lambda m: np.abs(data - m),
        ...     rng=np.random.default_rng(0),
        ... )
        >>> estimator.estimate().model
        3.0
    """

    def __init__(
        self,
        config: RansacConfig,
        total_samples: int,
        solve_subset: Callable[[np.ndarray], Optional[ModelT]],
        compute_residuals: Callable[[ModelT], np.ndarray],
        strategy: Optional[ConsensusStrategy] = None,
        rng: Optional[np.random.Generator] = None,
        on_iteration: Optional[Callable[[int], Any]] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
    ):
        if total_samples < config.subset_size:
            raise ValueError(
                f"Need at least {config.subset_size} samples, got {total_samples}"
            )
        self.config = config
        self.total_samples = total_samples
        self.solve_subset = solve_subset
        self.compute_residuals = compute_residuals
        self.strategy = strategy if strategy is not None else RansacStrategy()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.on_iteration = on_iteration
        self.on_progress = on_progress

    def estimate(self) -> ConsensusResult[ModelT]:
        """
        Run the consensus search.

        Returns:
            ConsensusResult with the best model and its inlier support.

        Raises:
            ConsensusError: If no candidate reaches subset_size inliers.
        """
        cfg = self.config
        n = self.total_samples

        best_model: Optional[ModelT] = None
        best_score: Optional[ConsensusScore] = None
        best_residuals: Optional[np.ndarray] = None
        best_subset: Optional[np.ndarray] = None

        bound = cfg.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < bound:
            indices = np.sort(self.rng.choice(n, size=cfg.subset_size, replace=False))
            candidate = self.solve_subset(indices)
            iteration += 1

            if candidate is not None:
                residuals = np.asarray(self.compute_residuals(candidate), dtype=float)
                if residuals.shape != (n,):
                    raise ValueError(
                        f"compute_residuals returned shape {residuals.shape}, expected ({n},)"
                    )
                score = self.strategy.score_candidate(residuals, cfg.threshold)
                if self.strategy.is_better(score, best_score):
                    best_model = candidate
                    best_score = score
                    best_residuals = residuals
                    best_subset = indices
                    bound = self.strategy.required_iterations(
                        score.num_inliers,
                        n,
                        cfg.subset_size,
                        cfg.confidence,
                        cfg.max_iterations,
                    )

            if self.on_iteration is not None:
                self.on_iteration(iteration)

            progress = min(1.0, iteration / max(bound, 1))
            if (
                self.on_progress is not None
                and progress < 1.0
                and progress - last_progress >= cfg.progress_delta
            ):
                last_progress = progress
                self.on_progress(progress)

        if self.on_progress is not None:
            self.on_progress(1.0)

        if best_score is None or best_score.num_inliers < cfg.subset_size:
            found = 0 if best_score is None else best_score.num_inliers
            raise ConsensusError(
                f"No model reached {cfg.subset_size} inliers after {iteration} "
                f"iterations (best support: {found}); try a larger threshold "
                "or more iterations"
            )

        inliers_data = InliersData(
            inliers=best_score.inliers if cfg.compute_and_keep_inliers else None,
            residuals=best_residuals if cfg.compute_and_keep_residuals else None,
            num_inliers=best_score.num_inliers,
        )
        return ConsensusResult(
            model=best_model,
            inliers_data=inliers_data,
            iterations=iteration,
            score=best_score,
            subset=best_subset,
        )
