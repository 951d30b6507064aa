import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, String

from courseport.database import Base
from courseport.models.content import new_id


class PluginType(str, enum.Enum):
    COMPONENT = "component"
    EXTENSION = "extension"
    MENU = "menu"
    THEME = "theme"


class ContentPlugin(Base):
    __tablename__ = "content_plugins"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String, nullable=True)
    version = Column(String, nullable=False)
    type = Column(Enum(PluginType), nullable=False)
    target_attribute = Column(String, nullable=False)
    managed_externally = Column(Boolean, default=False, nullable=False)
    plugin_dependencies = Column(JSON, nullable=False, default=dict)
    path = Column(String, nullable=True)
    installed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
