"""Batch run model for scheduled refresh jobs."""

from sqlalchemy import Column, String, Integer, DateTime, Text
from sqlalchemy.sql import func
from dockwatch.db import Base


class BatchRun(Base):
    """One execution of the scheduled forced refresh."""

    __tablename__ = "batch_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String, nullable=False, default="container_check")
    status = Column(String, nullable=False, default="running")  # running, completed, failed
    containers_checked = Column(Integer, default=0)
    updates_found = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<BatchRun(id={self.id}, {self.job_type}, {self.status})>"
