"""Core orchestration components for end-to-end verification runs."""

from yardcheck.core.dispatcher import ProbeResult, all_ok, dispatch, failure_summary
from yardcheck.core.isolation import check_isolation
from yardcheck.core.orchestrator import PhaseSequencer
from yardcheck.core.phases import Phase, PhaseFailure, RunContext, build_phase_table
from yardcheck.core.poller import ReadinessPoller, ReadinessTimeout, poll_until, poll_until_deadline
from yardcheck.core.recorder import PhaseResult, ResultRecorder, RunSummary


__all__ = [
    "Phase",
    "PhaseFailure",
    "PhaseResult",
    "PhaseSequencer",
    "ProbeResult",
    "ReadinessPoller",
    "ReadinessTimeout",
    "ResultRecorder",
    "RunContext",
    "RunSummary",
    "all_ok",
    "build_phase_table",
    "check_isolation",
    "dispatch",
    "failure_summary",
    "poll_until",
    "poll_until_deadline",
]
