"""
Plugin Registry

Tracks the content plugins installed into the framework source tree
(``<framework>/src/<components|extensions|menu|theme>/<name>``), installs
plugins bundled with course packages, and keeps the schema registry in step
with what is installed.

Plugin manifests come in several historical shapes (bower.json or
package.json; the plugin type given as a "component"/"extension"/"menu"/
"theme" key; targetAttribute declared or implied). They are normalised into a
PluginDescriptor once, here. Old plugins describe their settings in a single
``properties.schema`` file; those are converted to ``schema/*.schema.json``
files in the $merge/$patch format on install.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseport.config import settings
from courseport.database import AsyncSessionLocal
from courseport.exceptions import InvalidPackageError, NotFoundError, PackageIOError
from courseport.models.plugin import ContentPlugin, PluginType
from courseport.schemas.package import PLUGIN_TYPE_FOLDERS, PluginDescriptor
from courseport.services.schema_service import SCHEMA_SUFFIX, SchemaRegistry

logger = logging.getLogger(__name__)

MANIFEST_FILES = ("bower.json", "package.json")
LEGACY_SCHEMA_FILE = "properties.schema"

# Content types an extension may attach settings to in a legacy schema
LEGACY_LOCATIONS = {
    "course": "course",
    "config": "config",
    "contentobject": "contentobject",
    "contentObject": "contentobject",
    "article": "article",
    "block": "block",
    "component": "component",
}


def read_plugin_manifest(plugin_dir: Path | str, **overrides) -> PluginDescriptor:
    """
    Read and normalise the manifest of the plugin in plugin_dir.

    Raises:
        InvalidPackageError: no manifest, or no manifest describing a plugin
    """
    plugin_dir = Path(plugin_dir)
    problems = []
    for filename in MANIFEST_FILES:
        path = plugin_dir / filename
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return PluginDescriptor.from_manifest(data, path=plugin_dir, **overrides)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            problems.append(f"{filename}: {e}")
    if problems:
        raise InvalidPackageError(f"Invalid plugin manifest in {plugin_dir.name}: {'; '.join(problems)}", path=str(plugin_dir))
    raise InvalidPackageError(f"Plugin {plugin_dir.name} has no bower.json or package.json", path=str(plugin_dir))


def _flag_legacy_assets(properties: dict[str, Any]) -> dict[str, Any]:
    """Translate legacy "inputType": "Asset:image" hints into _backboneForms flags."""
    for prop in properties.values():
        if not isinstance(prop, dict):
            continue
        input_type = prop.pop("inputType", None)
        if isinstance(input_type, dict):
            input_type = input_type.get("type")
        if isinstance(input_type, str) and input_type.startswith("Asset"):
            media = input_type.partition(":")[2] or None
            prop["_backboneForms"] = {"type": "Asset", "media": media} if media else {"type": "Asset"}
        if isinstance(prop.get("properties"), dict):
            _flag_legacy_assets(prop["properties"])
        items = prop.get("items")
        if isinstance(items, dict) and isinstance(items.get("properties"), dict):
            _flag_legacy_assets(items["properties"])
    return properties


def _object(properties: dict[str, Any]) -> dict[str, Any]:
    return {"type": "object", "properties": properties}


def convert_legacy_schema(plugin_dir: Path | str, descriptor: PluginDescriptor) -> list[Path]:
    """
    Write schema/*.schema.json files for a plugin that only has properties.schema.

    Returns the files written; nothing is written when the plugin already
    ships a schema/ directory or has no legacy schema.
    """
    plugin_dir = Path(plugin_dir)
    legacy = plugin_dir / LEGACY_SCHEMA_FILE
    schema_dir = plugin_dir / "schema"
    if not legacy.is_file() or schema_dir.is_dir():
        return []
    try:
        data = json.loads(legacy.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidPackageError(f"Invalid {LEGACY_SCHEMA_FILE} in {plugin_dir.name}: {e}", path=str(legacy)) from e

    properties = _flag_legacy_assets(dict(data.get("properties") or {}))
    target = descriptor.target_attribute
    documents: dict[str, dict[str, Any]] = {}

    locations = properties.pop("pluginLocations", None)
    if descriptor.type == "component":
        documents["component"] = {
            "$anchor": f"{descriptor.public_key}-component",
            "$merge": {"source": {"$ref": "component"}, "with": {"properties": properties}},
        }
    elif properties:
        documents["course"] = {
            "$anchor": f"{descriptor.public_key}-course",
            "$patch": {"source": {"$ref": "course"}, "with": {"properties": {target: _object(properties)}}},
        }

    for location, spec in ((locations or {}).get("properties") or {}).items():
        content_type = LEGACY_LOCATIONS.get(location)
        location_props = _flag_legacy_assets(dict((spec or {}).get("properties") or {}))
        if not content_type or not location_props:
            continue
        documents[content_type] = {
            "$anchor": f"{descriptor.public_key}-{content_type}",
            "$patch": {"source": {"$ref": content_type}, "with": {"properties": location_props}},
        }

    if data.get("globals"):
        globals_props = _object({descriptor.globals_key: _object({target: _object(data["globals"])})})
        documents["globals"] = {
            "$anchor": f"{descriptor.public_key}-globals",
            "$patch": {"source": {"$ref": "course"}, "with": {"properties": {"_globals": globals_props}}},
        }

    schema_dir.mkdir()
    written = []
    for suffix, document in documents.items():
        path = schema_dir / f"{suffix}{SCHEMA_SUFFIX}"
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        written.append(path)
    logger.info(f"Converted legacy schema for {descriptor.name} ({len(written)} file(s))")
    return written


def to_descriptor(plugin: ContentPlugin) -> PluginDescriptor:
    return PluginDescriptor(
        id=plugin.id,
        name=plugin.name,
        version=plugin.version,
        targetAttribute=plugin.target_attribute,
        type=plugin.type.value,
        managedExternally=plugin.managed_externally,
        dependencies=dict(plugin.plugin_dependencies or {}),
        displayName=plugin.display_name,
        path=plugin.path,
    )


class PluginRegistry:
    """Installed content plugins, backed by the content_plugins table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        plugin_dir: Path | None = None,
        schemas: SchemaRegistry | None = None,
    ):
        self.session_factory = session_factory
        self.plugin_dir = Path(plugin_dir or settings.framework_dir / "src")
        self.schemas = schemas or SchemaRegistry()

    # ── Lookup ────────────────────────────────────────────────────────────────

    async def find(self, filters: dict[str, Any] | None = None) -> list[PluginDescriptor]:
        filters = filters or {}
        query = select(ContentPlugin).order_by(ContentPlugin.name)
        if "name" in filters:
            names = filters["name"]
            query = query.where(
                ContentPlugin.name.in_(list(names)) if isinstance(names, (list, tuple, set)) else ContentPlugin.name == names
            )
        if "type" in filters:
            query = query.where(ContentPlugin.type == PluginType(filters["type"]))
        if "_id" in filters:
            query = query.where(ContentPlugin.id == filters["_id"])
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [to_descriptor(plugin) for plugin in result.scalars().all()]

    async def by_name(self) -> dict[str, PluginDescriptor]:
        return {plugin.name: plugin for plugin in await self.find()}

    async def load_schemas(self) -> None:
        """Register the schemas of every installed plugin."""
        for plugin in await self.find():
            if plugin.path:
                self.schemas.load_plugin(plugin.name, plugin.path)

    # ── Install / uninstall ───────────────────────────────────────────────────

    def install_location(self, descriptor: PluginDescriptor) -> Path:
        return self.plugin_dir / PLUGIN_TYPE_FOLDERS[descriptor.type] / descriptor.name

    async def install_plugin(self, source_dir: Path | str, managed_externally: bool = False) -> PluginDescriptor:
        """
        Install (or update) the plugin found in source_dir.

        The plugin directory is copied into the framework source tree unless it
        already lives there; a legacy schema is converted in the installed copy
        only. An existing record of the same name is updated.
        """
        source_dir = Path(source_dir)
        descriptor = read_plugin_manifest(source_dir)

        location = self.install_location(descriptor)
        if location.resolve() != source_dir.resolve():
            try:
                await asyncio.to_thread(self._copy_plugin, source_dir, location)
            except OSError as e:
                raise PackageIOError(f"Failed to install plugin {descriptor.name}: {e}", path=str(source_dir)) from e
        await asyncio.to_thread(convert_legacy_schema, location, descriptor)

        async with self.session_factory() as db:
            result = await db.execute(select(ContentPlugin).where(ContentPlugin.name == descriptor.name))
            plugin = result.scalar_one_or_none()
            if plugin is None:
                plugin = ContentPlugin(name=descriptor.name)
                db.add(plugin)
            plugin.display_name = descriptor.display_name
            plugin.version = descriptor.version
            plugin.type = PluginType(descriptor.type)
            plugin.target_attribute = descriptor.target_attribute
            plugin.managed_externally = managed_externally or descriptor.managed_externally
            plugin.plugin_dependencies = dict(descriptor.dependencies)
            plugin.path = str(location)
            await db.commit()
            await db.refresh(plugin)
            installed = to_descriptor(plugin)

        self.schemas.load_plugin(installed.name, location)
        logger.info(f"Installed plugin {installed.name}@{installed.version}")
        return installed

    @staticmethod
    def _copy_plugin(source: Path, target: Path) -> None:
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target, ignore=shutil.ignore_patterns(".git", "node_modules"))

    async def install(self, descriptors: list[PluginDescriptor]) -> list[PluginDescriptor]:
        """Install several plugins concurrently from their descriptor paths."""
        return list(await asyncio.gather(*(self.install_plugin(d.path) for d in descriptors)))

    async def register_framework_plugins(self) -> list[PluginDescriptor]:
        """Record every plugin already present in the framework source tree."""
        registered = []
        for folder in PLUGIN_TYPE_FOLDERS.values():
            type_dir = self.plugin_dir / folder
            if not type_dir.is_dir():
                continue
            for plugin_dir in sorted(p for p in type_dir.iterdir() if p.is_dir()):
                registered.append(await self.install_plugin(plugin_dir))
        return registered

    async def uninstall(self, plugin_id: str) -> None:
        async with self.session_factory() as db:
            plugin = await db.get(ContentPlugin, plugin_id)
            if plugin is None:
                raise NotFoundError("Plugin", plugin_id)
            descriptor = to_descriptor(plugin)
            await db.execute(delete(ContentPlugin).where(ContentPlugin.id == plugin_id))
            await db.commit()

        self.schemas.unload_plugin(descriptor.name)
        if descriptor.path and not descriptor.managed_externally:
            path = Path(descriptor.path)
            if self.plugin_dir.resolve() in path.resolve().parents:
                await asyncio.to_thread(shutil.rmtree, path, True)
        logger.info(f"Uninstalled plugin {descriptor.name}")
