"""Pydantic models describing package manifests, plugins and assets."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from courseport.utils.versions import is_valid_version

PLUGIN_TYPES = ("component", "extension", "menu", "theme")

# Source folder for each plugin type inside a framework/package tree
PLUGIN_TYPE_FOLDERS = {
    "component": "components",
    "extension": "extensions",
    "menu": "menu",
    "theme": "theme",
}


class PluginReference(BaseModel):
    """A plugin referenced by a package."""

    name: str
    version: str
    target_attribute: str | None = Field(default=None, alias="targetAttribute")

    model_config = ConfigDict(populate_by_name=True)


class PackageManifest(BaseModel):
    """The package.json at the root of a course package."""

    name: str = "adapt_framework"
    version: str
    plugins: list[PluginReference] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("version")
    @classmethod
    def check_version(cls, value: str) -> str:
        if not is_valid_version(value):
            raise ValueError(f"'{value}' is not a valid semantic version")
        return value


class PluginDescriptor(BaseModel):
    """
    One content plugin, normalised from any historical manifest shape.

    Attributes:
        name:               Package name, e.g. "adapt-contrib-text".
        version:            Semver string.
        target_attribute:   Key under which the plugin's settings nest, e.g. "_text".
        type:               component | extension | menu | theme.
        managed_externally: Installed by a path an import must not override.
        dependencies:       Plugin name -> npm-style version range.
    """

    name: str
    version: str
    target_attribute: str = Field(alias="targetAttribute")
    type: str
    managed_externally: bool = Field(default=False, alias="managedExternally")
    dependencies: dict[str, str] = Field(default_factory=dict)
    display_name: str | None = Field(default=None, alias="displayName")
    id: str | None = None
    path: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("plugin name must not be empty")
        return value.strip()

    @field_validator("version")
    @classmethod
    def check_version(cls, value: str) -> str:
        if not is_valid_version(value):
            raise ValueError(f"'{value}' is not a valid semantic version")
        return value

    @field_validator("type")
    @classmethod
    def check_type(cls, value: str) -> str:
        if value not in PLUGIN_TYPES:
            raise ValueError(f"unknown plugin type '{value}'")
        return value

    @field_validator("target_attribute")
    @classmethod
    def check_target_attribute(cls, value: str) -> str:
        return value if value.startswith("_") else f"_{value}"

    @property
    def public_key(self) -> str:
        """Key the compiled course uses for this plugin, e.g. "text"."""
        return self.target_attribute[1:]

    @property
    def globals_key(self) -> str:
        """Key under course _globals holding settings for this plugin type."""
        return f"_{self.type}s" if self.type in ("component", "extension") else f"_{self.type}"

    @classmethod
    def from_manifest(cls, data: dict[str, Any], path: Path | str | None = None, **overrides) -> PluginDescriptor:
        """
        Build a descriptor from a bower.json/package.json style manifest.

        The plugin type comes from an explicit "type"/"kind" key or from
        whichever of component/extension/menu/theme is present; a missing
        targetAttribute is inferred as "_" + that key's value.
        """
        plugin_type = data.get("type") or data.get("kind")
        type_value = None
        if plugin_type not in PLUGIN_TYPES:
            plugin_type = next((t for t in PLUGIN_TYPES if data.get(t)), None)
        if plugin_type:
            type_value = data.get(plugin_type)
        if plugin_type is None:
            keywords = data.get("keywords") or []
            plugin_type = next((t for t in PLUGIN_TYPES if f"adapt-{t}" in keywords), None)

        target_attribute = data.get("targetAttribute")
        if not target_attribute and isinstance(type_value, str):
            target_attribute = f"_{type_value}"
        if not target_attribute and data.get("name"):
            target_attribute = f"_{str(data['name']).rsplit('-', 1)[-1]}"

        values = {
            "name": data.get("name"),
            "version": data.get("version"),
            "targetAttribute": target_attribute,
            "type": plugin_type,
            "managedExternally": bool(data.get("managedExternally", False)),
            "dependencies": data.get("pluginDependencies") or {},
            "displayName": data.get("displayName"),
            "path": str(path) if path is not None else None,
        }
        values.update(overrides)
        return cls.model_validate(values)

    def to_reference(self) -> PluginReference:
        return PluginReference(name=self.name, version=self.version, targetAttribute=self.target_attribute)


class AssetDescriptor(BaseModel):
    """Metadata for one asset file in a package."""

    path: str  # package-relative, e.g. "course/en/assets/logo.png"
    filename: str
    title: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    mime_type: str | None = Field(default=None, alias="mimeType")
    url: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def apply_defaults(self) -> AssetDescriptor:
        if not self.title:
            self.title = self.filename
        if not self.description:
            self.description = self.title
        return self
