"""Container snapshot model, one row per physical Portainer container."""

from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, UniqueConstraint
from sqlalchemy.sql import func
from dockwatch.db import Base


class ContainerSnapshot(Base):
    """Last known state of a container and its update status.

    Rows are keyed by (portainer_instance_id, container_id) but diffed across
    refreshes by (container_name, portainer_url, endpoint_id) because the
    container ID changes on every recreate.
    """

    __tablename__ = "container_snapshots"
    __table_args__ = (
        UniqueConstraint("portainer_instance_id", "container_id", name="uq_snapshot_instance_container"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    portainer_instance_id = Column(Integer, nullable=False, index=True)
    portainer_url = Column(String, nullable=False)
    endpoint_id = Column(String, nullable=False)

    container_id = Column(String, nullable=False)
    container_name = Column(String, nullable=False, index=True)
    image_name = Column(String, nullable=False)  # as configured, e.g. "nginx:1.25"
    image_repo = Column(String, nullable=False)  # e.g. "library/nginx"

    # Digests are stored in full "sha256:<hex>" form
    current_digest = Column(String, nullable=True)
    current_tag = Column(String, nullable=True)
    latest_digest = Column(String, nullable=True)
    latest_tag = Column(String, nullable=True)
    latest_version = Column(String, nullable=True)
    latest_publish_date = Column(String, nullable=True)
    has_update = Column(Boolean, default=False, index=True)
    exists_in_docker_hub = Column(Boolean, default=False)
    check_error = Column(Text, nullable=True)  # Set when the last update check failed

    stack_name = Column(String, nullable=True)
    uses_network_mode = Column(Boolean, default=False)
    provides_network = Column(Boolean, default=False)
    state = Column(String, nullable=True)  # running, exited, ...
    status = Column(String, nullable=True)  # "Up 3 hours"
    image_created_date = Column(String, nullable=True)

    last_seen_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def identity(self) -> str:
        """Stable identity that survives recreate/upgrade."""
        return f"{self.container_name}-{self.portainer_url}-{self.endpoint_id}"

    def __repr__(self):
        return f"<ContainerSnapshot({self.container_name}@{self.portainer_url}, update={self.has_update})>"
