"""Portainer instance model."""

from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from dockwatch.db import Base


class PortainerInstance(Base):
    """A Portainer server polled for containers, owned by one user."""

    __tablename__ = "portainer_instances"
    __table_args__ = (UniqueConstraint("user_id", "url", name="uq_portainer_user_url"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)  # e.g. "https://portainer.example.com"
    username = Column(String, nullable=False)
    password = Column(String, nullable=False)  # Fernet-encrypted when a key is configured
    ip_address = Column(String, nullable=True)  # Operator-confirmed IP for the proxy self-upgrade
    display_order = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<PortainerInstance(id={self.id}, name={self.name}, url={self.url})>"
