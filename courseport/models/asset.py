from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from courseport.database import Base
from courseport.models.content import new_id


class Asset(Base):
    __tablename__ = "assets"

    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    mime_type = Column(String, nullable=True)
    filename = Column(String, nullable=False)
    # Relative to the asset root; null for remote assets
    path = Column(String, nullable=True)
    url = Column(String, nullable=True)
    size = Column(Integer, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
