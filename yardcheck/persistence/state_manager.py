#!/usr/bin/env python3
"""State Manager - Run history storage using SQLAlchemy ORM.

Records every verification run and its phase results, and renders reports
of past runs.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import scoped_session, sessionmaker

from yardcheck.core.recorder import PhaseResult, RunSummary, format_duration
from yardcheck.persistence.models import Base, PhaseRecord, Run


logger = logging.getLogger(__name__)

# Constants
DEFAULT_DB_PATH = "yardcheck.db"


class DatabaseError(Exception):
    """Base exception for database-related errors."""


@dataclass
class RunInfo:
    """Run history entry.

    Attributes:
        run_id: Unique run identifier
        host: Target host
        ssh_user: Remote user
        start_time: ISO timestamp of run start
        end_time: ISO timestamp of run end (None while running)
        status: running, passed or failed
        declared_total: Number of phases in the phase table
        passed: Phases passed
        skipped: Phases never reached
        total_duration: Seconds from pre-flight cleanup to summary
        error_message: Startup error that prevented the run, if any
    """

    run_id: int
    host: str
    ssh_user: str
    start_time: str
    end_time: Optional[str] = None
    status: str = "running"
    declared_total: int = 0
    passed: Optional[int] = None
    skipped: Optional[int] = None
    total_duration: Optional[float] = None
    error_message: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_info(run: Run) -> RunInfo:
    return RunInfo(
        run_id=run.run_id,
        host=run.host,
        ssh_user=run.ssh_user,
        start_time=run.start_time,
        end_time=run.end_time,
        status=run.status,
        declared_total=run.declared_total,
        passed=run.passed,
        skipped=run.skipped,
        total_duration=run.total_duration,
        error_message=run.error_message,
    )


class StateManager:
    """Manage run history using SQLAlchemy ORM.

    Attributes:
        db_path: Path to SQLite database file
        engine: SQLAlchemy engine
        Session: Scoped session factory
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH) -> None:
        """Initialize state manager.

        Args:
            db_path: Path to SQLite database file

        Raises:
            DatabaseError: If the schema cannot be created
        """
        self.db_path = db_path

        db_parent = Path(db_path).parent
        if db_parent != Path():
            db_parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        self.Session = scoped_session(sessionmaker(bind=self.engine))

        try:
            Base.metadata.create_all(self.engine)
        except Exception as exc:
            msg = f"Failed to initialize database: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        logger.debug(f"Database initialized at {self.db_path}")

    def create_run(self, host: str, ssh_user: str, declared_total: int) -> int:
        """Create a new run record.

        Returns:
            Run ID

        Raises:
            DatabaseError: If the run cannot be created
        """
        session = self.Session()
        try:
            run = Run(
                host=host,
                ssh_user=ssh_user,
                start_time=_now(),
                status="running",
                declared_total=declared_total,
            )
            session.add(run)
            session.commit()
            logger.debug(f"Created run {run.run_id}")
            return run.run_id
        except Exception as exc:
            session.rollback()
            msg = f"Failed to create run: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def record_phase(self, run_id: int, result: PhaseResult) -> None:
        """Store one phase result.

        Raises:
            DatabaseError: If the result cannot be stored
        """
        session = self.Session()
        try:
            session.add(
                PhaseRecord(
                    run_id=run_id,
                    number=result.number,
                    name=result.name,
                    passed=result.passed,
                    message=result.message or None,
                    duration=result.duration,
                    timestamp=_now(),
                )
            )
            session.commit()
        except Exception as exc:
            session.rollback()
            msg = f"Failed to record phase {result.number}: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def finish_run(
        self,
        run_id: int,
        summary: Optional[RunSummary] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Close a run with its summary or the error that aborted it.

        Raises:
            DatabaseError: If the update fails
        """
        session = self.Session()
        try:
            run = session.execute(select(Run).where(Run.run_id == run_id)).scalar_one_or_none()
            if run is None:
                logger.warning(f"Run {run_id} not found for update")
                return

            run.end_time = _now()
            run.error_message = error_message
            if summary is not None:
                run.passed = summary.passed
                run.skipped = summary.skipped
                run.total_duration = summary.elapsed
                run.status = "passed" if summary.success and not error_message else "failed"
            else:
                run.status = "failed"
            session.commit()
        except Exception as exc:
            session.rollback()
            msg = f"Failed to finish run {run_id}: {exc}"
            logger.error(msg)
            raise DatabaseError(msg) from exc
        finally:
            session.close()

    def get_run(self, run_id: int) -> Optional[RunInfo]:
        session = self.Session()
        try:
            run = session.execute(select(Run).where(Run.run_id == run_id)).scalar_one_or_none()
            return _run_info(run) if run else None
        finally:
            session.close()

    def list_runs(self, limit: int = 20) -> List[RunInfo]:
        """Return the most recent runs, newest first."""
        session = self.Session()
        try:
            stmt = select(Run).order_by(Run.run_id.desc()).limit(limit)
            return [_run_info(run) for run in session.execute(stmt).scalars()]
        finally:
            session.close()

    def get_phases(self, run_id: int) -> List[PhaseResult]:
        """Return the recorded phases of a run in phase order."""
        session = self.Session()
        try:
            stmt = (
                select(PhaseRecord)
                .where(PhaseRecord.run_id == run_id)
                .order_by(PhaseRecord.number)
            )
            return [
                PhaseResult(r.number, r.name, r.passed, r.message or "", r.duration)
                for r in session.execute(stmt).scalars()
            ]
        finally:
            session.close()

    def generate_summary(self, run_id: int) -> Dict[str, Any]:
        run = self.get_run(run_id)
        if not run:
            return {}
        summary = asdict(run)
        summary["phases"] = [asdict(p) for p in self.get_phases(run_id)]
        return summary

    def export_report(self, run_id: int, format: str = "text") -> str:
        """Render a stored run.

        Args:
            run_id: Run ID
            format: ``json`` or ``text``

        Returns:
            Report string (empty if the run does not exist)
        """
        summary = self.generate_summary(run_id)
        if not summary:
            return ""

        if format == "json":
            return json.dumps(summary, indent=2)

        lines = [
            "=" * 70,
            f"RUN {summary['run_id']}: {summary['ssh_user']}@{summary['host']}",
            "=" * 70,
            f"Started:  {summary['start_time']}",
            f"Finished: {summary['end_time'] or '-'}",
            f"Status:   {summary['status']}",
        ]
        if summary["error_message"]:
            lines.append(f"Error:    {summary['error_message']}")
        lines.append("-" * 70)
        for phase in summary["phases"]:
            tag = "PASS" if phase["passed"] else "FAIL"
            line = f"[{tag}] {phase['number']:02d} {phase['name']} ({format_duration(phase['duration'])})"
            if phase["message"]:
                line += f" — {phase['message']}"
            lines.append(line)
        lines.append("-" * 70)
        passed = summary["passed"] if summary["passed"] is not None else 0
        lines.append(f"{passed}/{summary['declared_total']} passed, {summary['skipped'] or 0} skipped")
        return "\n".join(lines)

    def close(self) -> None:
        """Close database connection and cleanup."""
        try:
            self.Session.remove()
            self.engine.dispose()
            logger.debug("Database connections closed")
        except Exception as exc:
            logger.error(f"Error closing database: {exc}")
