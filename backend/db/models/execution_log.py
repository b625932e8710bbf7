"""ExecutionLog model for the workflow engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base


class ExecutionLog(Base):
    """Append-only audit entry for one step of an execution.

    Rows are never updated; a correction is a new row. The integer key
    records append order and breaks ties between equal ``started_at`` values.

    Attributes:
        id: Autoincrement sequence
        execution_id: Foreign key to Execution
        step_id: Step the entry refers to (None for execution-level entries)
        step_name: Human-readable step name
        status: completed, failed, scheduled, cancelled
        input: Payload handed to the step (context, or scheduling metadata)
        output: Handler result payload
        error_detail: Failure detail when status is failed
        started_at: When the step started, or when it was scheduled
        completed_at: When it finished (None while scheduled)
    """

    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        ForeignKey("executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    input: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    execution: Mapped["Execution"] = relationship(
        "Execution", back_populates="logs", lazy="noload"
    )
