import enum
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, Index, String

from courseport.database import Base
from courseport.models.content import new_id


class BuildAction(str, enum.Enum):
    PREVIEW = "preview"
    PUBLISH = "publish"
    EXPORT = "export"


class BuildAttempt(Base):
    """A completed build whose output lives at location until expires_at."""

    __tablename__ = "build_attempts"

    id = Column(String(32), primary_key=True, default=new_id)
    action = Column(Enum(BuildAction), nullable=False)
    course_id = Column(String(32), nullable=False, index=True)
    location = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_by = Column(String, nullable=True)
    # Plugin name -> version, plus the framework under "adapt_framework"
    versions = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("idx_build_action_creator", "action", "created_by"),)
