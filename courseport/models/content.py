import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String

from courseport.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


class ContentItem(Base):
    """One node of a course tree: course, config, menu, page, article, block or component."""

    __tablename__ = "content_items"

    id = Column(String(32), primary_key=True, default=new_id)
    type = Column(String(32), nullable=False, index=True)
    parent_id = Column(String(32), nullable=True, index=True)
    course_id = Column(String(32), nullable=True, index=True)
    sort_order = Column(Integer, nullable=True)
    component = Column(String, nullable=True)
    local_id = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    # Everything that is not a structural key
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("idx_content_course_type", "course_id", "type"),)
