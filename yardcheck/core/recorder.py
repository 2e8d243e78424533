#!/usr/bin/env python3
"""Phase result recording and run summary rendering."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of one executed phase.

    Attributes:
        number: 1-based phase number
        name: Phase name
        passed: Whether the phase passed
        message: Failure detail (empty on success)
        duration: Seconds spent in the phase
    """

    number: int
    name: str
    passed: bool
    message: str
    duration: float


@dataclass(frozen=True)
class RunSummary:
    """Aggregate view of a run.

    Attributes:
        declared_total: Number of phases in the phase table
        recorded: Number of phases that executed
        passed: Number of executed phases that passed
        skipped: Phases never reached because of an earlier failure
        elapsed: Seconds since the recorder was created
    """

    declared_total: int
    recorded: int
    passed: int
    skipped: int
    elapsed: float

    @property
    def failed(self) -> int:
        return self.recorded - self.passed

    @property
    def success(self) -> bool:
        """True when every recorded phase passed."""
        return self.passed == self.recorded


def format_duration(seconds: float) -> str:
    """Format a duration as ``NNNms`` below one second, ``N.Ns`` above."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    return f"{seconds:.1f}s"


class ResultRecorder:
    """Accumulates phase outcomes and prints one line per phase.

    The recorder is only mutated from the sequencer's thread.

    Attributes:
        results: Recorded phase results in execution order
    """

    def __init__(
        self,
        echo: Callable[[str], None] = print,
        sink: Optional[Callable[[PhaseResult], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize recorder.

        Args:
            echo: Output function for the per-phase lines
            sink: Optional callback receiving every recorded result
            clock: Monotonic clock used for the total elapsed time
        """
        self.results: List[PhaseResult] = []
        self._echo = echo
        self._sink = sink
        self._clock = clock
        self._start = clock()

    def _append(self, result: PhaseResult) -> None:
        if self.results and result.number <= self.results[-1].number:
            raise ValueError(
                f"phase {result.number} recorded after phase {self.results[-1].number}"
            )
        self.results.append(result)
        if self._sink is not None:
            try:
                self._sink(result)
            except Exception as exc:
                logger.warning(f"Failed to persist phase {result.number}: {exc}")

    def record_pass(self, number: int, name: str, duration: float) -> PhaseResult:
        result = PhaseResult(number, name, True, "", duration)
        self._append(result)
        self._echo(f"[PASS] {number:02d} {name} ({format_duration(duration)})")
        return result

    def record_fail(self, number: int, name: str, message: str, duration: float) -> PhaseResult:
        result = PhaseResult(number, name, False, message, duration)
        self._append(result)
        self._echo(f"[FAIL] {number:02d} {name} ({format_duration(duration)}) — {message}")
        return result

    @property
    def failed(self) -> bool:
        return any(not r.passed for r in self.results)

    def summary(self, declared_total: int) -> RunSummary:
        """Summarize the run against the declared phase count."""
        recorded = len(self.results)
        return RunSummary(
            declared_total=declared_total,
            recorded=recorded,
            passed=sum(1 for r in self.results if r.passed),
            skipped=max(declared_total - recorded, 0),
            elapsed=self._clock() - self._start,
        )

    def render_summary(self, declared_total: int) -> str:
        """Render the final results line."""
        summary = self.summary(declared_total)
        line = f"=== Results: {summary.passed}/{summary.declared_total} passed"
        if summary.skipped:
            line += f", {summary.skipped} skipped (earlier failure)"
        return line + f" — total {format_duration(summary.elapsed)} ==="
