from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

logger = logging.getLogger("concierge.runtime")


@dataclass
class PipelineStep:
    """Step descriptor for the turn runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None
    tolerate: Tuple[Type[BaseException], ...] = ()


class TurnRunner:
    """Ordered, blocking step runner for one inbound message."""

    def __init__(self, steps: list[PipelineStep]) -> None:
        self._steps = steps

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> None:
        """Purpose: Execute steps in order, honoring skip_if and tolerate.
        Inputs/Outputs: Input is a mutable context object; no return value.
        Side Effects / State: Step functions mutate the context; each executed step
            name is appended to context.trace when present.
        Dependencies: PipelineStep.fn, skip_if, and tolerate.
        Failure Modes: Exceptions listed in a step's `tolerate` are logged and the
            run continues; anything else propagates to the caller.
        If Removed: The orchestrator cannot sequence a turn.
        Testing Notes: A tolerated PersistenceFailure in a late step must not stop
            the following steps.
        """
        # Tolerated errors are logged and recorded, not raised.
        for step in self._steps:
            if step.skip_if and step.skip_if(context):
                continue
            try:
                step.fn(context)
            except step.tolerate as exc:
                logger.exception("step=%s status=failed error=%s", step.name, type(exc).__name__)
                _record(context, f"{step.name}:failed")
                continue
            _record(context, step.name)


def _record(context: object, entry: str) -> None:
    trace = getattr(context, "trace", None)
    if isinstance(trace, list):
        trace.append(entry)
