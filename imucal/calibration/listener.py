"""
Observer interface for calibration progress.

Callbacks are invoked synchronously from within calibrate() while the
calibrator is locked. They may read any property of the calibrator; any
attempt to modify it (or to start another calibration) raises LockedError.
"""


class CalibratorListener:
    """No-op base class; override the callbacks of interest."""

    def on_calibrate_start(self, calibrator) -> None:
        pass

    def on_calibrate_end(self, calibrator) -> None:
        pass

    def on_calibrate_next_iteration(self, calibrator, iteration: int) -> None:
        """Called after every consensus iteration (1-based)."""
        pass

    def on_calibrate_progress_change(self, calibrator, progress: float) -> None:
        """Called when the consensus progress, in [0, 1], changed significantly."""
        pass
