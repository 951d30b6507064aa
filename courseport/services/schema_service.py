"""
Schema Registry

Loads the core content JSON schemas plus schemas shipped by plugins and
composes the effective schema for one content item. Plugin schema files use
two forms:

* ``{"$merge": {"source": {"$ref": "component"}, "with": {...}}}`` declares a
  component's own schema, used for items whose ``_component`` is that plugin.
* ``{"$patch": {"source": {"$ref": "course"}, "with": {...}}}`` extends a core
  schema for every course that has the plugin enabled.

The composed ContentSchema knows its defaults, strips undeclared keys,
validates against the composed JSON schema, and walks asset-typed fields.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from courseport.exceptions import PackageIOError, ValidationError

logger = logging.getLogger(__name__)

CORE_SCHEMA_DIR = Path(__file__).resolve().parent.parent / "content_schemas"
SCHEMA_SUFFIX = ".schema.json"

# Content types sharing one schema
TYPE_TO_SCHEMA = {"page": "contentobject", "menu": "contentobject"}


def schema_name_for(content_type: str) -> str:
    return TYPE_TO_SCHEMA.get(content_type, content_type)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return base deep-merged with override; override wins, "required" lists are combined."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        elif key == "required" and isinstance(value, list) and isinstance(merged.get(key), list):
            merged[key] = merged[key] + [v for v in value if v not in merged[key]]
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def is_asset_property(prop: dict[str, Any]) -> bool:
    """Whether a schema property holds an asset reference."""
    forms = prop.get("_backboneForms")
    if isinstance(forms, dict):
        forms = forms.get("type")
    return isinstance(forms, str) and (forms == "Asset" or forms.startswith("Asset:"))


class ContentSchema:
    """The effective JSON schema of one content item."""

    def __init__(self, name: str, schema: dict[str, Any]):
        self.name = name
        self.schema = schema
        self._validator: Draft202012Validator | None = None

    @property
    def properties(self) -> dict[str, Any]:
        return self.schema.get("properties", {})

    def defaults(self) -> dict[str, Any]:
        return _defaults(self.properties)

    def apply_defaults(self, data: dict[str, Any]) -> dict[str, Any]:
        """Deep-merge schema defaults under data; existing values win."""
        return deep_merge(self.defaults(), data)

    def sanitize(self, data: dict[str, Any]) -> dict[str, Any]:
        """Drop keys the schema does not declare when it disallows extras."""
        return _sanitize(self.schema, data)

    def validate(self, data: dict[str, Any], item_id: str | None = None) -> dict[str, Any]:
        if self._validator is None:
            self._validator = Draft202012Validator(self.schema, format_checker=Draft202012Validator.FORMAT_CHECKER)
        errors = [
            {"loc": ".".join(str(part) for part in error.absolute_path), "msg": error.message, "type": error.validator}
            for error in sorted(self._validator.iter_errors(data), key=lambda e: (e.json_path, e.message))
        ]
        if errors:
            raise ValidationError(
                f"Content item '{item_id}' does not match schema '{self.name}'",
                item_id=item_id,
                schema_name=self.name,
                errors=errors,
            )
        return data

    def walk_assets(self, data: dict[str, Any], fn: Callable[[Any], Any]) -> dict[str, Any]:
        """
        Replace every asset-typed value in data with fn(value), in place.

        A None result removes the field.
        """
        _walk_assets(self.properties, data, fn)
        return data


def _defaults(properties: dict[str, Any]) -> dict[str, Any]:
    defaults = {}
    for key, prop in properties.items():
        if "default" in prop:
            defaults[key] = copy.deepcopy(prop["default"])
        elif prop.get("type") == "object" and prop.get("properties"):
            nested = _defaults(prop["properties"])
            if nested:
                defaults[key] = nested
    return defaults


def _sanitize(schema: dict[str, Any], data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    properties = schema.get("properties", {})
    cleaned = {}
    for key, value in data.items():
        if key not in properties:
            if schema.get("additionalProperties") is False:
                continue
            cleaned[key] = value
            continue
        prop = properties[key]
        if prop.get("type") == "object" and isinstance(value, dict):
            value = _sanitize(prop, value)
        cleaned[key] = value
    return cleaned


def _walk_assets(properties: dict[str, Any], data: Any, fn: Callable[[Any], Any]) -> None:
    if not isinstance(data, dict):
        return
    for key, prop in properties.items():
        if key not in data:
            continue
        if prop.get("properties"):
            _walk_assets(prop["properties"], data[key], fn)
        elif (prop.get("items") or {}).get("properties") and isinstance(data[key], list):
            for entry in data[key]:
                _walk_assets(prop["items"]["properties"], entry, fn)
        elif is_asset_property(prop):
            value = fn(data[key])
            if value is None:
                del data[key]
            else:
                data[key] = value


class SchemaRegistry:
    """Holds raw core/plugin schemas and composes them per item."""

    def __init__(self, core_dir: Path | None = CORE_SCHEMA_DIR):
        self._schemas: dict[str, dict[str, Any]] = {}
        self._patches: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._components: dict[str, dict[str, Any]] = {}
        self._plugins: set[str] = set()
        self._cache: dict[tuple, ContentSchema] = {}
        if core_dir is not None:
            self.load_directory(core_dir)

    @property
    def names(self) -> list[str]:
        return sorted(self._schemas)

    def has_plugin(self, plugin_name: str) -> bool:
        return plugin_name in self._plugins

    def register(self, raw: dict[str, Any], plugin: str | None = None, anchor: str | None = None) -> None:
        """Register one raw schema document, optionally owned by a plugin."""
        self.invalidate()
        if "$patch" in raw:
            target = raw["$patch"]["source"]["$ref"]
            self._patches.setdefault(target, []).append((plugin, raw["$patch"].get("with", {})))
            return
        if plugin and "$merge" in raw and raw["$merge"]["source"]["$ref"] == "component":
            self._components[plugin] = raw["$merge"].get("with", {})
            return
        anchor = raw.get("$anchor") or anchor
        if not anchor:
            raise PackageIOError("Schema has no $anchor", path=plugin)
        self._schemas[anchor] = raw

    def load_directory(self, directory: Path | str, plugin: str | None = None) -> int:
        """Register every *.schema.json file found directly in directory."""
        directory = Path(directory)
        count = 0
        for path in sorted(directory.glob(f"*{SCHEMA_SUFFIX}")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise PackageIOError(f"Failed to read schema {path.name}: {e}", path=str(path)) from e
            self.register(raw, plugin=plugin, anchor=path.name[: -len(SCHEMA_SUFFIX)])
            count += 1
        if plugin:
            self._plugins.add(plugin)
        return count

    def load_plugin(self, plugin_name: str, plugin_dir: Path | str) -> int:
        """Register the schemas of a plugin installed at plugin_dir."""
        self.unload_plugin(plugin_name)
        schema_dir = Path(plugin_dir) / "schema"
        if not schema_dir.is_dir():
            self._plugins.add(plugin_name)
            return 0
        count = self.load_directory(schema_dir, plugin=plugin_name)
        logger.debug("Loaded %d schema(s) for plugin %s", count, plugin_name)
        return count

    def invalidate(self) -> None:
        """Forget composed schemas; the next get() recomposes them."""
        self._cache.clear()

    def unload_plugin(self, plugin_name: str) -> None:
        self.invalidate()
        self._plugins.discard(plugin_name)
        self._components.pop(plugin_name, None)
        for target, patches in self._patches.items():
            self._patches[target] = [p for p in patches if p[0] != plugin_name]

    def raw(self, name: str) -> dict[str, Any]:
        """Resolve a named schema's $merge chain into a plain JSON schema."""
        if name not in self._schemas:
            raise PackageIOError(f"Unknown content schema '{name}'")
        raw = self._schemas[name]
        if "$merge" in raw:
            source = self.raw(raw["$merge"]["source"]["$ref"])
            return deep_merge(source, raw["$merge"].get("with", {}))
        return {k: v for k, v in raw.items() if not k.startswith("$")}

    def get(
        self,
        content_type: str,
        enabled_plugins: Iterable[str] = (),
        component: str | None = None,
    ) -> ContentSchema:
        """
        Compose the schema for one item.

        Args:
            content_type: Item _type (page/menu map to contentobject)
            enabled_plugins: Plugins enabled for the item's course
            component: The item's _component plugin name, components only
        """
        name = schema_name_for(content_type)
        enabled = tuple(sorted(set(enabled_plugins)))
        key = (name, enabled, component)
        if key not in self._cache:
            schema = self.raw(name)
            if name == "component" and component in self._components:
                schema = deep_merge(schema, self._components[component])
            for plugin, patch in self._patches.get(name, []):
                if plugin is None or plugin in enabled:
                    schema = deep_merge(schema, patch)
            schema_name = f"{component}-component" if name == "component" and component else name
            self._cache[key] = ContentSchema(schema_name, schema)
        return self._cache[key]
