"""
Step status tracking for the progress UI.

Each named step moves pending → loading → (success | error). At most one step
is loading at a time, and a step that succeeded is never touched again until
the tracker is reset.
"""

import logging
from typing import Callable, Iterable, Optional

from .models import ProcessingStep, StepStatus, STEP_LABELS

logger = logging.getLogger(__name__)

StepListener = Callable[[ProcessingStep], None]


class StepTransitionError(RuntimeError):
    """Raised on an illegal step transition. Always a programming error."""


class StepTracker:
    def __init__(self, step_ids: Iterable[str]):
        self._steps: list[ProcessingStep] = []
        self._listeners: list[StepListener] = []
        self.reset(step_ids)

    def reset(self, step_ids: Optional[Iterable[str]] = None):
        """Re-initialize every step to pending, optionally with a new step list."""
        ids = list(step_ids) if step_ids is not None else [s.id for s in self._steps]
        self._steps = [
            ProcessingStep(id=step_id, label=STEP_LABELS.get(step_id, step_id))
            for step_id in ids
        ]
        for step in self._steps:
            self._emit(step)

    def add_listener(self, listener: StepListener):
        self._listeners.append(listener)

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self._steps]

    def get(self, step_id: str) -> ProcessingStep:
        for step in self._steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def loading(self) -> Optional[str]:
        for step in self._steps:
            if step.status == StepStatus.LOADING:
                return step.id
        return None

    def snapshot(self) -> list[ProcessingStep]:
        return [s.model_copy() for s in self._steps]

    # ── Transitions ──────────────────────────────────────────────────────

    def start(self, step_id: str):
        current = self.loading()
        if current is not None:
            raise StepTransitionError(
                f"Cannot start '{step_id}' while '{current}' is loading"
            )
        self._transition(step_id, StepStatus.PENDING, StepStatus.LOADING)

    def succeed(self, step_id: str):
        self._transition(step_id, StepStatus.LOADING, StepStatus.SUCCESS)

    def fail(self, step_id: str):
        self._transition(step_id, StepStatus.LOADING, StepStatus.ERROR)

    def fail_loading(self) -> Optional[str]:
        """Mark the loading step (if any) as failed and return its id."""
        step_id = self.loading()
        if step_id is not None:
            self.fail(step_id)
        return step_id

    def _transition(self, step_id: str, expected: StepStatus, new: StepStatus):
        step = self.get(step_id)
        if step.status != expected:
            raise StepTransitionError(
                f"Step '{step_id}' is {step.status.value}, expected {expected.value}"
            )
        step.status = new
        logger.debug(f"Step {step_id}: {expected.value} → {new.value}")
        self._emit(step)

    def _emit(self, step: ProcessingStep):
        for listener in self._listeners:
            listener(step.model_copy())
