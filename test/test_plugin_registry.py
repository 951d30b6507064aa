"""
Tests for plugin manifests, legacy schema conversion and the plugin registry
"""

import json

import pytest

from courseport.exceptions import InvalidPackageError, NotFoundError
from courseport.schemas.package import PluginDescriptor
from courseport.services.plugin_registry import convert_legacy_schema, read_plugin_manifest
from courseport.services.plugin_resolver import DependencyResolver
from conftest import write_json


class TestManifests:
    """Test normalising historical manifest shapes"""

    def test_component_key_sets_type_and_target(self):
        descriptor = PluginDescriptor.from_manifest({"name": "adapt-contrib-text", "version": "5.0.0", "component": "text"})
        assert descriptor.type == "component"
        assert descriptor.target_attribute == "_text"
        assert descriptor.public_key == "text"
        assert descriptor.globals_key == "_components"

    def test_declared_target_attribute(self):
        descriptor = PluginDescriptor.from_manifest(
            {"name": "adapt-contrib-trickle", "version": "4.0.0", "extension": "trickle", "targetAttribute": "_trickle"}
        )
        assert descriptor.globals_key == "_extensions"

    def test_type_from_keywords(self):
        descriptor = PluginDescriptor.from_manifest(
            {"name": "adapt-contrib-boxMenu", "version": "6.0.0", "keywords": ["adapt-plugin", "adapt-menu"]}
        )
        assert descriptor.type == "menu"
        assert descriptor.target_attribute == "_boxMenu"
        assert descriptor.globals_key == "_menu"

    def test_npm_dependencies_are_not_plugin_dependencies(self, tmp_path):
        write_json(
            tmp_path / "package.json",
            {"name": "adapt-contrib-media", "version": "6.0.0", "component": "media", "dependencies": {"mediaelement": "^4.2.0"}},
        )
        assert read_plugin_manifest(tmp_path).dependencies == {}

    def test_invalid_version_rejected(self, tmp_path):
        write_json(tmp_path / "bower.json", {"name": "x", "version": "latest", "component": "x"})
        with pytest.raises(InvalidPackageError):
            read_plugin_manifest(tmp_path)

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(InvalidPackageError, match="no bower.json"):
            read_plugin_manifest(tmp_path)

    def test_package_json_fallback(self, tmp_path):
        write_json(tmp_path / "package.json", {"name": "adapt-contrib-graphic", "version": "5.1.0", "component": "graphic"})
        assert read_plugin_manifest(tmp_path).path == str(tmp_path)


class TestLegacySchemaConversion:
    def test_component_schema_written(self, tmp_path):
        write_json(
            tmp_path / "properties.schema",
            {
                "properties": {
                    "_graphic": {"type": "object", "properties": {"src": {"type": "string", "inputType": "Asset:image"}}},
                    "pluginLocations": {},
                },
                "globals": {"ariaRegion": {"type": "string", "default": "Image"}},
            },
        )
        descriptor = PluginDescriptor.from_manifest({"name": "adapt-contrib-graphic", "version": "5.1.0", "component": "graphic"})
        written = convert_legacy_schema(tmp_path, descriptor)
        assert sorted(p.name for p in written) == ["component.schema.json", "globals.schema.json"]

        component = json.loads((tmp_path / "schema" / "component.schema.json").read_text())
        src = component["$merge"]["with"]["properties"]["_graphic"]["properties"]["src"]
        assert src == {"type": "string", "_backboneForms": {"type": "Asset", "media": "image"}}

        globals_patch = json.loads((tmp_path / "schema" / "globals.schema.json").read_text())
        nested = globals_patch["$patch"]["with"]["properties"]["_globals"]["properties"]["_components"]
        assert nested["properties"]["_graphic"]["properties"]["ariaRegion"]["default"] == "Image"

    def test_extension_locations(self, tmp_path):
        write_json(
            tmp_path / "properties.schema",
            {
                "properties": {
                    "pluginLocations": {
                        "properties": {
                            "course": {"properties": {"_trickle": {"type": "object"}}},
                            "block": {"properties": {"_trickle": {"type": "object"}}},
                            "unknown": {"properties": {"_x": {"type": "object"}}},
                        }
                    }
                }
            },
        )
        descriptor = PluginDescriptor.from_manifest({"name": "adapt-contrib-trickle", "version": "4.0.0", "extension": "trickle"})
        written = convert_legacy_schema(tmp_path, descriptor)
        assert sorted(p.name for p in written) == ["block.schema.json", "course.schema.json"]

    def test_existing_schema_dir_untouched(self, tmp_path):
        write_json(tmp_path / "properties.schema", {"properties": {"x": {"type": "string"}}})
        (tmp_path / "schema").mkdir()
        descriptor = PluginDescriptor.from_manifest({"name": "adapt-contrib-x", "version": "1.0.0", "component": "x"})
        assert convert_legacy_schema(tmp_path, descriptor) == []


class TestPluginRegistry:
    """Test installing and removing plugins"""

    async def test_framework_plugins_registered(self, context):
        plugins = await context.plugins.by_name()
        assert sorted(plugins) == [
            "adapt-contrib-graphic",
            "adapt-contrib-pageLevelProgress",
            "adapt-contrib-text",
            "adapt-contrib-vanilla",
        ]
        assert plugins["adapt-contrib-pageLevelProgress"].dependencies == {"adapt-contrib-text": "^5.0.0"}
        assert plugins["adapt-contrib-vanilla"].type == "theme"

    async def test_legacy_plugin_schema_loaded(self, context):
        schema = context.schemas.get("component", component="adapt-contrib-graphic")
        assert "_graphic" in schema.properties
        assert context.schemas.has_plugin("adapt-contrib-graphic")

    async def test_find_by_type(self, context):
        components = await context.plugins.find({"type": "component"})
        assert [p.name for p in components] == ["adapt-contrib-graphic", "adapt-contrib-text"]

    async def test_install_copies_into_framework(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-accordion"
        write_json(source / "bower.json", {"name": "adapt-contrib-accordion", "version": "6.0.0", "component": "accordion"})
        installed = await context.plugins.install_plugin(source)
        location = context.framework_dir / "src" / "components" / "adapt-contrib-accordion"
        assert installed.path == str(location)
        assert (location / "bower.json").is_file()
        assert context.schemas.has_plugin("adapt-contrib-accordion")

    async def test_legacy_schema_converted_in_installed_copy(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-narrative"
        write_json(source / "bower.json", {"name": "adapt-contrib-narrative", "version": "7.0.0", "component": "narrative"})
        write_json(source / "properties.schema", {"properties": {"_hasNavigationInTextArea": {"type": "boolean"}}})
        installed = await context.plugins.install_plugin(source)
        assert not (source / "schema").exists()
        assert (context.framework_dir / "src" / "components" / "adapt-contrib-narrative" / "schema").is_dir()
        schema = context.schemas.get("component", component=installed.name)
        assert "_hasNavigationInTextArea" in schema.properties

    async def test_installed_npm_package_resolves(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-media"
        write_json(
            source / "package.json",
            {
                "name": "adapt-contrib-media",
                "version": "6.0.0",
                "component": "media",
                "dependencies": {"mediaelement": "^4.2.0"},
                "pluginDependencies": {"adapt-contrib-text": "^5.0.0"},
            },
        )
        await context.plugins.install_plugin(source)
        resolver = DependencyResolver(await context.plugins.by_name())
        assert resolver.resolve(["adapt-contrib-media"]).names == ["adapt-contrib-media", "adapt-contrib-text"]

    async def test_reinstall_updates_record(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-text"
        write_json(source / "bower.json", {"name": "adapt-contrib-text", "version": "5.2.0", "component": "text"})
        before = (await context.plugins.find({"name": "adapt-contrib-text"}))[0]
        after = await context.plugins.install_plugin(source)
        assert after.id == before.id
        assert after.version == "5.2.0"

    async def test_uninstall_removes_files(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-accordion"
        write_json(source / "bower.json", {"name": "adapt-contrib-accordion", "version": "6.0.0", "component": "accordion"})
        installed = await context.plugins.install_plugin(source)
        await context.plugins.uninstall(installed.id)
        assert not (context.framework_dir / "src" / "components" / "adapt-contrib-accordion").exists()
        assert not context.schemas.has_plugin("adapt-contrib-accordion")
        assert await context.plugins.find({"name": "adapt-contrib-accordion"}) == []

    async def test_uninstall_keeps_externally_managed_files(self, context, tmp_path):
        source = tmp_path / "bundle" / "adapt-contrib-accordion"
        write_json(source / "bower.json", {"name": "adapt-contrib-accordion", "version": "6.0.0", "component": "accordion"})
        installed = await context.plugins.install_plugin(source, managed_externally=True)
        await context.plugins.uninstall(installed.id)
        assert (context.framework_dir / "src" / "components" / "adapt-contrib-accordion").is_dir()

    async def test_uninstall_unknown(self, context):
        with pytest.raises(NotFoundError):
            await context.plugins.uninstall("missing")
