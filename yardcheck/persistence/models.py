#!/usr/bin/env python3
"""SQLAlchemy ORM models for the run history database."""

from typing import List, Optional

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Run(Base):
    """One verification run against a target host."""

    __tablename__ = "runs"

    run_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host: Mapped[str] = mapped_column(String, nullable=False)
    ssh_user: Mapped[str] = mapped_column(String, nullable=False)
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="running")
    declared_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    passed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    skipped: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    phases: Mapped[List["PhaseRecord"]] = relationship(
        "PhaseRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="PhaseRecord.number",
    )

    def __repr__(self) -> str:
        return f"<Run(id={self.run_id}, host={self.host}, status={self.status})>"


class PhaseRecord(Base):
    """Outcome of one executed phase within a run."""

    __tablename__ = "phase_results"

    result_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("runs.run_id"), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[str] = mapped_column(String, nullable=False)

    run: Mapped["Run"] = relationship("Run", back_populates="phases")

    def __repr__(self) -> str:
        status = "pass" if self.passed else "fail"
        return f"<PhaseRecord(run={self.run_id}, number={self.number}, {status})>"
