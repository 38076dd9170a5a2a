"""
Progress reporting and cancellation for pipeline operations.

The worker pushes ProgressSample values into a ProgressChannel; the owner
reads the most recent one whenever it wants. The channel is bounded and never
blocks the worker: when it is full the oldest sample is dropped.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import OperationCancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSample:
    """Two-tier progress: overall stage fraction and current stage fraction."""

    stage_fraction: float = 0.0
    sub_stage_fraction: float = 0.0

    def to_dict(self) -> dict:
        return {
            'stage_fraction': round(self.stage_fraction, 4),
            'sub_stage_fraction': round(self.sub_stage_fraction, 4),
        }


ProgressObserver = Callable[[ProgressSample], None]


class ProgressChannel:
    """
    Bounded latest-value-wins channel from worker to owner.

    Acts as a progress observer: calling the channel publishes a sample.
    """

    def __init__(self, maxsize: int = 16):
        if maxsize < 1:
            raise ValueError("Channel size must be at least 1")
        self._queue = queue.Queue(maxsize=maxsize)
        self._latest = ProgressSample()

    def publish(self, sample: ProgressSample):
        """
        Publish a sample without blocking.

        Args:
            sample: Sample to publish
        """
        while True:
            try:
                self._queue.put_nowait(sample)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    __call__ = publish

    def latest(self) -> ProgressSample:
        """
        Drain pending samples and return the newest one seen so far.

        Returns:
            Latest ProgressSample (zeroes before the first publish)
        """
        while True:
            try:
                self._latest = self._queue.get_nowait()
            except queue.Empty:
                return self._latest


class ProgressTracker:
    """
    Turns per-stage unit counts into monotonic ProgressSample values.

    stage_fraction = (completed_stages + current_stage_fraction) / total_stages
    """

    def __init__(self, total_stages: int, observer: Optional[ProgressObserver] = None):
        if total_stages < 1:
            raise ValueError("An operation needs at least one stage")
        self.total_stages = total_stages
        self.observer = observer
        self.completed_stages = 0
        self._stage_fraction = 0.0
        self._sub_fraction = 0.0
        self._in_stage = False

    def begin_stage(self):
        """Start the next stage; its own fraction restarts at zero."""
        self._in_stage = True
        self._sub_fraction = 0.0
        self._emit()

    def update(self, done: int, total: int):
        """
        Report progress inside the current stage.

        Args:
            done: Units processed so far (entries or bytes)
            total: Total units in this stage (0 means nothing to do)
        """
        fraction = 1.0 if total <= 0 else min(max(done / total, 0.0), 1.0)
        # Codec totals are estimates on decompress; never step backwards
        self._sub_fraction = max(self._sub_fraction, fraction)
        self._emit()

    def finish_stage(self):
        """Mark the current stage complete."""
        self._in_stage = False
        self._sub_fraction = 1.0
        self.completed_stages = min(self.completed_stages + 1, self.total_stages)
        self._emit()

    def complete(self):
        """Mark the whole operation complete (stage fraction 1.0)."""
        self.completed_stages = self.total_stages
        self._sub_fraction = 1.0
        self._emit()

    @property
    def sample(self) -> ProgressSample:
        return ProgressSample(self._stage_fraction, self._sub_fraction)

    def _emit(self):
        if self.completed_stages >= self.total_stages:
            current = 1.0
        else:
            stage_part = self._sub_fraction if self._in_stage else 0.0
            current = (self.completed_stages + stage_part) / self.total_stages
        self._stage_fraction = max(self._stage_fraction, min(current, 1.0))

        if self.observer is None:
            return
        try:
            self.observer(self.sample)
        except Exception:
            logger.exception("Progress observer raised; sample dropped")


class CancellationToken:
    """Cooperative cancellation flag shared by the owner and one worker."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        """
        Raise if cancellation was requested.

        Raises:
            OperationCancelled: If cancel() has been called
        """
        if self._event.is_set():
            raise OperationCancelled()
