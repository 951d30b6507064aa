from .job import BuildSummary, ImportSettings, ImportSummary, StatusReport
from .package import AssetDescriptor, PackageManifest, PluginDescriptor, PluginReference

__all__ = [
    "AssetDescriptor",
    "BuildSummary",
    "ImportSettings",
    "ImportSummary",
    "PackageManifest",
    "PluginDescriptor",
    "PluginReference",
    "StatusReport",
]
