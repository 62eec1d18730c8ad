"""Registry-side version info cached per user, repository and tag."""

from sqlalchemy import Column, String, Integer, DateTime, Boolean, UniqueConstraint
from sqlalchemy.sql import func
from dockwatch.db import Base


class ImageVersion(Base):
    """Latest known digest/version for an image tag, shared by every container using it."""

    __tablename__ = "image_versions"
    __table_args__ = (
        UniqueConstraint("user_id", "image_repo", "current_tag", name="uq_image_version"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    image_repo = Column(String, nullable=False)
    current_tag = Column(String, nullable=False)
    registry_host = Column("registry", String, nullable=True)

    latest_digest = Column(String, nullable=True)
    latest_tag = Column(String, nullable=True)
    latest_version = Column(String, nullable=True)
    latest_publish_date = Column(String, nullable=True)
    has_update = Column(Boolean, default=False)
    exists_in_docker_hub = Column(Boolean, default=False)

    last_checked = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<ImageVersion({self.image_repo}:{self.current_tag} -> {self.latest_version})>"
