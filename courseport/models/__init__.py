from .asset import Asset
from .build import BuildAction, BuildAttempt
from .content import ContentItem
from .plugin import ContentPlugin, PluginType

__all__ = [
    "Asset",
    "BuildAction",
    "BuildAttempt",
    "ContentItem",
    "ContentPlugin",
    "PluginType",
]
