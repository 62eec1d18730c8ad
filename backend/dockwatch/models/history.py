"""Upgrade history model for audit trail."""

from sqlalchemy import Column, String, Integer, DateTime, Text
from sqlalchemy.sql import func
from dockwatch.db import Base


class UpgradeHistory(Base):
    """Audit trail of container upgrades, written for both success and failure."""

    __tablename__ = "upgrade_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, index=True)
    portainer_instance_id = Column(Integer, nullable=True, index=True)
    portainer_url = Column(String, nullable=False)
    endpoint_id = Column(String, nullable=False)

    container_id = Column(String, nullable=False)
    container_name = Column(String, nullable=False, index=True)
    new_container_id = Column(String, nullable=True)
    old_image = Column(String, nullable=True)
    new_image = Column(String, nullable=True)
    old_digest = Column(String, nullable=True)
    new_digest = Column(String, nullable=True)

    status = Column(String, nullable=False, index=True)  # in_progress, success, failed
    failed_step = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    triggered_by = Column(String, default="user")  # user, batch

    started_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<UpgradeHistory({self.container_name}: {self.old_image} → {self.new_image}, {self.status})>"
