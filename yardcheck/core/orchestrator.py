#!/usr/bin/env python3
"""Phase sequencer.

Runs the pre-flight cleanup, then every phase of the phase table in order,
stopping at the first failure.
"""

import logging
import time
from typing import Callable, List, Optional

from yardcheck.core.phases import (
    Phase,
    PhaseFailure,
    RunContext,
    build_phase_table,
    preflight_cleanup,
)
from yardcheck.core.poller import ReadinessTimeout
from yardcheck.core.recorder import ResultRecorder, RunSummary, format_duration
from yardcheck.remote.base import RemoteConnectionError


logger = logging.getLogger(__name__)


class PhaseSequencer:
    """Fail-fast runner for an ordered phase table.

    Attributes:
        ctx: Run context handed to every phase
        recorder: Recorder receiving one result per executed phase
        phases: Ordered phase table; its length is the declared total
        budget: Advisory run budget in seconds (None for unlimited)
        halted: Set once a phase fails; later phases never run
    """

    def __init__(
        self,
        ctx: RunContext,
        recorder: ResultRecorder,
        phases: Optional[List[Phase]] = None,
        budget: Optional[float] = None,
        preflight: Callable[[RunContext], None] = preflight_cleanup,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize sequencer.

        Args:
            ctx: Run context
            recorder: Result recorder
            phases: Phase table (defaults to the table for the configured instances)
            budget: Advisory run budget in seconds, checked before each phase
            preflight: Cleanup run before the first phase
            clock: Monotonic clock for phase durations and the budget
        """
        self.ctx = ctx
        self.recorder = recorder
        self.phases = phases if phases is not None else build_phase_table(ctx.instances)
        self.budget = budget
        self.halted = False
        self._preflight = preflight
        self._clock = clock
        self._start: Optional[float] = None

    @property
    def declared_total(self) -> int:
        return len(self.phases)

    def _budget_exhausted(self) -> bool:
        if self.budget is None or self._start is None:
            return False
        return self._clock() - self._start >= self.budget

    def _execute(self, number: int, phase: Phase) -> bool:
        start = self._clock()
        try:
            phase.run(self.ctx)
        except (PhaseFailure, ReadinessTimeout) as exc:
            message = str(exc)
        except RemoteConnectionError as exc:
            logger.error(f"Phase {number:02d} lost the remote channel: {exc}")
            message = str(exc)
        except Exception as exc:
            logger.error(f"Phase {number:02d} raised an unexpected error: {exc}", exc_info=True)
            message = f"unexpected error: {exc}"
        else:
            self.recorder.record_pass(number, phase.name, self._clock() - start)
            return True

        self.recorder.record_fail(number, phase.name, message or "failed", self._clock() - start)
        return False

    def run(self) -> bool:
        """Run the pre-flight cleanup and the phase table.

        Returns:
            True if every recorded phase passed
        """
        self._start = self._clock()
        logger.info("Pre-flight cleanup (removing any leftover state)...")
        self._preflight(self.ctx)

        try:
            for number, phase in enumerate(self.phases, start=1):
                if self._budget_exhausted():
                    self.recorder.record_fail(
                        number,
                        phase.name,
                        f"run budget of {format_duration(self.budget)} exhausted before phase started",
                        0.0,
                    )
                    self.halted = True
                    break

                passed = self._execute(number, phase)
                if phase.cleanup_point:
                    self.ctx.run_deferred()
                if not passed:
                    self.halted = True
                    break
        finally:
            self.ctx.run_deferred()

        return not self.recorder.failed

    def summary(self) -> RunSummary:
        return self.recorder.summary(self.declared_total)
