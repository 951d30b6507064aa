"""
Course Import

Loads a course package (zip or directory) into the content store:

    unpacked -> prepared -> assets_loaded -> plugins_resolved -> content_imported -> done

Every check that can reject a package runs before anything is written. Once
writing starts, a failure rolls back what this run created (course content,
assets and newly installed plugins) before the error is raised.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import shutil
from collections import Counter
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from courseport.exceptions import (
    ContentValidationError,
    CourseportError,
    IncompatiblePackageError,
    InvalidPackageError,
    JobFailedError,
    StructuralError,
    ValidationError,
)
from courseport.schemas.job import ImportSettings, ImportSummary, StatusReport
from courseport.schemas.package import PLUGIN_TYPE_FOLDERS, AssetDescriptor, PackageManifest, PluginDescriptor
from courseport.services.content_migrations import MigrationContext, run_migrations
from courseport.services.hierarchy import Hierarchy, sort_hierarchy
from courseport.services.job_context import JobContext
from courseport.services.plugin_registry import read_plugin_manifest
from courseport.services.plugin_resolver import DependencyResolver, Resolution
from courseport.utils.archive import extract_zip
from courseport.utils.versions import major

logger = logging.getLogger(__name__)

ASSET_FOLDERS = ("assets", "images", "video", "audio")
ASSET_MANIFEST = "assets.json"
CONTENT_FILES = ("contentObjects.json", "articles.json", "blocks.json", "components.json")
IGNORED_ENTRIES = {"__MACOSX", ".DS_Store", "Thumbs.db", "thumbs.db"}


class ImportStage(str, enum.Enum):
    PENDING = "pending"
    UNPACKED = "unpacked"
    PREPARED = "prepared"
    ASSETS_LOADED = "assets_loaded"
    PLUGINS_RESOLVED = "plugins_resolved"
    CONTENT_IMPORTED = "content_imported"
    DONE = "done"


def _is_remote(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://", "//"))


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidPackageError(f"Malformed JSON in {path.name}: {e}", path=str(path)) from e
    except OSError as e:
        raise InvalidPackageError(f"Cannot read {path.name}: {e}", path=str(path)) from e


class CourseImport:
    """One import of one course package."""

    def __init__(self, context: JobContext, path: Path | str, user_id: str | None, settings: ImportSettings | None = None):
        self.context = context
        self.path = Path(path)
        self.user_id = user_id
        self.settings = settings or ImportSettings()
        self.stage = ImportStage.PENDING
        self.report = StatusReport()

        self.root: Path | None = None
        # Directories this run created and must remove
        self.temp_dirs: list[Path] = []
        self.manifest: PackageManifest | None = None
        self.course_dir: Path | None = None
        self.language_dir: Path | None = None

        self.bundled_plugins: dict[str, PluginDescriptor] = {}
        self.course: dict[str, Any] = {}
        self.config: dict[str, Any] = {}
        self.items: list[dict[str, Any]] = []
        self.hierarchy: Hierarchy | None = None

        self.asset_files: list[tuple[AssetDescriptor, Path]] = []
        # Package-relative path -> new asset id
        self.asset_map: dict[str, str] = {}
        self.created_asset_ids: list[str] = []

        self.resolution: Resolution | None = None
        self.enabled_plugins: list[str] = []
        self.installed_plugins: list[PluginDescriptor] = []
        self.updated_plugins: list[PluginDescriptor] = []
        self.migration_context = MigrationContext()

        # Package-local id -> new store id
        self.id_map: dict[str, str] = {}
        self.course_id: str | None = None
        self.imported: Counter = Counter()

    @classmethod
    async def run(
        cls,
        context: JobContext,
        path: Path | str,
        user_id: str | None = None,
        settings: ImportSettings | None = None,
    ) -> CourseImport:
        """
        Import a course package.

        Raises:
            CourseportError: on any failure; details carry "stage" and "statusReport"
        """
        job = cls(context, path, user_id, settings)
        await job.execute()
        return job

    async def execute(self) -> None:
        logger.info(f"Starting import of {self.path.name}")
        try:
            await self._run_stages()
        except Exception as e:
            error = e if isinstance(e, CourseportError) else JobFailedError(f"Import failed: {e}", stage=self._failed_stage())
            error.details.setdefault("stage", self._failed_stage())
            self.report.error = {"kind": error.kind, "message": error.message, "details": dict(error.details)}
            error.details["statusReport"] = self.report.model_dump()
            if error is e:
                logger.error(f"Import of {self.path.name} failed at {self._failed_stage()}: {error.message}")
            else:
                logger.exception(f"Import of {self.path.name} failed unexpectedly")
            await self.clean_up(failed=True)
            if error is e:
                raise
            raise error from e
        await self.clean_up(failed=False)
        logger.info(f"Finished import of {self.path.name} (course {self.course_id})")

    async def _run_stages(self) -> None:
        await self.unpack()
        self._advance(ImportStage.UNPACKED)
        await self.prepare()
        self._advance(ImportStage.PREPARED)
        if self.settings.import_content and not self.settings.dry_run:
            await self.import_assets()
        self._advance(ImportStage.ASSETS_LOADED)
        await self.import_plugins()
        self._advance(ImportStage.PLUGINS_RESOLVED)
        if self.settings.dry_run:
            self._report_dry_run()
            return
        if self.settings.import_content:
            await self.import_content()
            self._advance(ImportStage.CONTENT_IMPORTED)
        self._advance(ImportStage.DONE)

    def _advance(self, stage: ImportStage) -> None:
        self.stage = stage
        logger.debug(f"Import {self.path.name}: {stage.value}")

    def _failed_stage(self) -> str:
        order = list(ImportStage)
        return order[min(order.index(self.stage) + 1, len(order) - 1)].value

    # ── Unpack & prepare ──────────────────────────────────────────────────────

    async def unpack(self) -> None:
        if self.path.is_dir():
            self.root = self.path
            return
        if not self.path.is_file() or self.path.suffix.lower() != ".zip":
            raise InvalidPackageError("Course package must be a .zip file or a directory", path=str(self.path))
        destination = self.path.with_name(f"{self.path.name}_unzip")
        self.temp_dirs.append(destination)
        self.root = await extract_zip(self.path, destination)

    def _entries(self, directory: Path) -> list[Path]:
        return [p for p in directory.iterdir() if p.name not in IGNORED_ENTRIES]

    async def prepare(self) -> None:
        await asyncio.to_thread(self._hoist_nested_root)

        manifest_path = self.root / "package.json"
        if not manifest_path.is_file():
            raise InvalidPackageError("Course package has no package.json", path=str(self.root))
        try:
            self.manifest = PackageManifest.model_validate(_read_json(manifest_path))
        except PydanticValidationError as e:
            raise InvalidPackageError(f"Invalid package.json: {e}", path=str(manifest_path)) from e

        framework_version = self.context.framework_version
        if major(self.manifest.version) != major(framework_version):
            raise IncompatiblePackageError(self.manifest.version, framework_version)

        for candidate in (self.root / "src" / "course", self.root / "course"):
            if candidate.is_dir():
                self.course_dir = candidate
                break
        else:
            raise InvalidPackageError("Course package has no course directory", path=str(self.root))

        self._discover_plugins()
        await asyncio.to_thread(self._load_content)
        self._check_unique_ids()
        self.hierarchy = sort_hierarchy(self.items, self.course["_id"])

    def _hoist_nested_root(self) -> None:
        entries = self._entries(self.root)
        if len(entries) != 1 or not entries[0].is_dir() or not (entries[0] / "package.json").is_file():
            return
        nested = entries[0]
        if self.root in self.temp_dirs:
            hoisted = self.root.with_name(f"{self.root.name}_2")
            shutil.move(str(nested), str(hoisted))
            self.temp_dirs.append(hoisted)
            self.root = hoisted
        else:
            # Never rearrange a caller's directory
            self.root = nested
        logger.debug(f"Using nested package root {self.root}")

    def _discover_plugins(self) -> None:
        for folder in PLUGIN_TYPE_FOLDERS.values():
            type_dir = self.root / "src" / folder
            if not type_dir.is_dir():
                continue
            for plugin_dir in sorted(p for p in type_dir.iterdir() if p.is_dir()):
                try:
                    descriptor = read_plugin_manifest(plugin_dir)
                except InvalidPackageError as e:
                    self.report.warnings.append(f"Skipping bundled plugin {plugin_dir.name}: {e.message}")
                    continue
                self.bundled_plugins[descriptor.name] = descriptor

    def _load_content(self) -> None:
        config_path = self.course_dir / "config.json"
        config = _read_json(config_path) if config_path.is_file() else {}
        self.config = {
            "_id": "config",
            "_type": "config",
            "_enabledPlugins": sorted(self.bundled_plugins),
            **config,
        }

        languages = sorted(p.name for p in self.course_dir.iterdir() if (p / "course.json").is_file())
        if not languages:
            raise InvalidPackageError("Course package has no course.json", path=str(self.course_dir))
        preferred = (self.config.get("_defaultLanguage"), self.context.language)
        language = next((lang for lang in preferred if lang in languages), languages[0])
        self.language_dir = self.course_dir / language

        self.course = _read_json(self.language_dir / "course.json")
        if not isinstance(self.course, dict) or not self.course.get("_id"):
            raise InvalidPackageError("course.json must be an object with an _id", path=str(self.language_dir))
        self.course["_type"] = "course"

        for filename in CONTENT_FILES:
            path = self.language_dir / filename
            if not path.is_file():
                continue
            data = _read_json(path)
            if not isinstance(data, list):
                raise InvalidPackageError(f"{filename} must contain a list", path=str(path))
            self.items.extend(data)

    def _check_unique_ids(self) -> None:
        counts = Counter(item.get("_id") for item in [self.course, *self.items])
        duplicates = sorted(str(item_id) for item_id, count in counts.items() if count > 1)
        if duplicates:
            raise StructuralError(f"Duplicate content ids in package: {', '.join(duplicates)}", item_ids=duplicates)

    # ── Assets ────────────────────────────────────────────────────────────────

    def _collect_assets(self) -> list[tuple[AssetDescriptor, Path]]:
        base = self.course_dir.parent
        manifest_path = self.language_dir / ASSET_MANIFEST
        found: list[tuple[AssetDescriptor, Path]] = []

        if manifest_path.is_file():
            manifest = _read_json(manifest_path)
            for relative, meta in sorted(manifest.items()):
                meta = meta or {}
                descriptor = AssetDescriptor(
                    path=relative,
                    filename=Path(relative).name,
                    title=meta.get("title"),
                    description=meta.get("description"),
                    tags=[*self.settings.tags, *(meta.get("tags") or [])],
                )
                found.append((descriptor, base / relative))
            return found

        for folder in ASSET_FOLDERS:
            asset_dir = self.language_dir / folder
            if not asset_dir.is_dir():
                continue
            for path in sorted(p for p in asset_dir.rglob("*") if p.is_file() and p.name not in IGNORED_ENTRIES):
                relative = path.relative_to(base).as_posix()
                found.append((AssetDescriptor(path=relative, filename=path.name, tags=list(self.settings.tags)), path))
        return found

    async def import_assets(self) -> None:
        self.asset_files = await asyncio.to_thread(self._collect_assets)
        results = await asyncio.gather(
            *(self.context.assets.insert(descriptor, source, self.user_id) for descriptor, source in self.asset_files),
            return_exceptions=True,
        )
        for (descriptor, _), result in zip(self.asset_files, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"Failed to import asset {descriptor.path}: {result}")
                self.report.warnings.append(f"Asset {descriptor.path} was not imported: {result}")
                continue
            self.asset_map[descriptor.path] = result["_id"]
            self.created_asset_ids.append(result["_id"])
        self.report.info.append(f"Imported {len(self.asset_map)} asset(s)")

    # ── Plugins ───────────────────────────────────────────────────────────────

    def _component_lookup(self, plugins: list[PluginDescriptor]) -> dict[str, str]:
        lookup = {}
        for plugin in plugins:
            if plugin.type != "component":
                continue
            lookup[plugin.public_key] = plugin.name
            lookup[plugin.target_attribute] = plugin.name
            lookup[plugin.name] = plugin.name
        return lookup

    async def import_plugins(self) -> None:
        installed = await self.context.plugins.by_name()
        known = self._component_lookup([*installed.values(), *self.bundled_plugins.values()])

        required: set[str] = set(self.bundled_plugins)
        required.update(self.config.get("_enabledPlugins") or [])
        content_plugins: set[str] = set(self.config.get("_enabledPlugins") or [])
        for item in self.items:
            component = item.get("_component")
            if item.get("_type") == "component" and component:
                content_plugins.add(known.get(component, component))
        required.update(content_plugins)

        resolver = DependencyResolver(
            installed,
            self.bundled_plugins,
            allow_install=self.settings.import_plugins,
            allow_update=self.settings.import_plugins and self.settings.update_plugins,
        )
        self.resolution = resolver.resolve(sorted(required), strict=False)
        if self.resolution.errors:
            if self.settings.import_content:
                raise self.resolution.errors[0]
            self.report.warnings.extend(e.message for e in self.resolution.errors)

        for plugin in self.resolution.satisfied:
            self.report.info.append(f"Plugin {plugin.name}@{plugin.version} is already installed")
        for plugin in self.resolution.blocked:
            self.report.warnings.append(
                f"Plugin {plugin.name}@{plugin.version} is managed externally and was not updated"
            )

        failed: set[str] = set()
        if not self.settings.dry_run:
            failed = await self._install_plugins(content_plugins)

        self.enabled_plugins = [name for name in self.resolution.names if name not in failed]
        all_plugins = [*installed.values(), *self.bundled_plugins.values(), *self.installed_plugins, *self.updated_plugins]
        self.migration_context.component_names = self._component_lookup(all_plugins)

    async def _install_plugins(self, content_plugins: set[str]) -> set[str]:
        """Install/update resolved plugins concurrently; returns names that failed."""
        work = [(p, True) for p in self.resolution.needs_install] + [(p, False) for p in self.resolution.needs_update]
        results = await asyncio.gather(
            *(self.context.plugins.install_plugin(plugin.path) for plugin, _ in work),
            return_exceptions=True,
        )
        failed = set()
        for (plugin, is_new), result in zip(work, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                if self.settings.import_content and plugin.name in content_plugins:
                    raise result
                logger.warning(f"Failed to install plugin {plugin.name}: {result}")
                self.report.warnings.append(f"Plugin {plugin.name}@{plugin.version} could not be installed: {result}")
                failed.add(plugin.name)
                continue
            if is_new:
                self.installed_plugins.append(result)
                self.report.info.append(f"Installed plugin {result.name}@{result.version}")
            else:
                self.updated_plugins.append(result)
                self.report.info.append(f"Updated plugin {result.name} to {result.version}")
        return failed

    def _report_dry_run(self) -> None:
        for plugin in self.resolution.needs_install:
            self.report.info.append(f"Would install plugin {plugin.name}@{plugin.version}")
        for plugin in self.resolution.needs_update:
            self.report.info.append(f"Would update plugin {plugin.name} to {plugin.version}")
        counts = Counter(item.get("_type") for item in self.items)
        summary = ", ".join(f"{count} {content_type}" for content_type, count in sorted(counts.items()))
        self.report.info.append(f"Package contains 1 course, {summary or 'no content items'}")

    # ── Content ───────────────────────────────────────────────────────────────

    async def import_content(self) -> None:
        content = self.context.content

        course = await self._insert(self.course, parent_id=None, sort_order=None, validate=False)
        self.course_id = course["_id"]
        await content.update({"_id": self.course_id}, {"_courseId": self.course_id})

        config_data = {**self.config, "_enabledPlugins": self.enabled_plugins}
        config = await self._insert(config_data, parent_id=None, sort_order=None, validate=False)
        await self._reconcile_defaults(course["_id"])
        await self._reconcile_defaults(config["_id"])

        positions = self.hierarchy.positions()
        by_local_id = {item["_id"]: item for item in self.items}

        for depth, level in enumerate(self.hierarchy.levels[1:], start=1):
            results = await asyncio.gather(
                *(self._import_item(by_local_id[local_id], positions[local_id]) for local_id in level),
                return_exceptions=True,
            )
            errors = []
            for result in results:
                if isinstance(result, ValidationError):
                    errors.append(result)
                elif isinstance(result, BaseException):
                    raise result
            if errors:
                raise ContentValidationError(errors, level=depth)
            logger.debug(f"Imported level {depth} ({len(level)} item(s))")

        await content.update({"_id": config["_id"]}, {"_enabledPlugins": self.enabled_plugins})
        self.report.info.append(
            f"Imported {sum(self.imported.values())} content item(s): "
            + ", ".join(f"{count} {t}" for t, count in sorted(self.imported.items()))
        )

    async def _import_item(self, item: dict[str, Any], sort_order: int) -> dict[str, Any]:
        parent_local_id = item.get("_parentId")
        if parent_local_id not in self.id_map:
            raise StructuralError(
                f"Parent '{parent_local_id}' of '{item.get('_id')}' has not been imported", item_ids=[item.get("_id")]
            )
        return await self._insert(item, parent_id=self.id_map[parent_local_id], sort_order=sort_order, validate=True)

    async def _insert(
        self,
        item: dict[str, Any],
        parent_id: str | None,
        sort_order: int | None,
        validate: bool,
    ) -> dict[str, Any]:
        local_id = item["_id"]
        data = run_migrations(item, self.migration_context)
        data.pop("_id", None)
        data.pop("_parentId", None)
        if parent_id is not None:
            data["_parentId"] = parent_id
        if sort_order is not None:
            data["_sortOrder"] = sort_order
        if self.course_id is not None:
            data["_courseId"] = self.course_id
        data["_localId"] = local_id
        if self.user_id is not None:
            data["createdBy"] = self.user_id

        schema = self.context.schemas.get(data["_type"], self.enabled_plugins, data.get("_component"))
        schema.walk_assets(data, lambda value: self._map_asset(value, local_id))
        if validate:
            data = schema.sanitize(schema.apply_defaults(data))
            schema.validate(data, item_id=local_id)

        document = await self.context.content.insert(data)
        self.id_map[local_id] = document["_id"]
        self.imported[data["_type"]] += 1
        return document

    async def _reconcile_defaults(self, item_id: str) -> None:
        """Apply schema defaults to an already-inserted course/config and validate it."""
        document = await self.context.content.find_one({"_id": item_id})
        schema = await self.context.content.get_schema(document["_type"], self.course_id)
        merged = schema.sanitize(schema.apply_defaults(document))
        schema.validate(merged, item_id=document.get("_localId"))
        await self.context.content.replace(item_id, merged)

    def _map_asset(self, value: Any, item_id: str) -> Any:
        if _is_remote(value):
            return value
        if isinstance(value, str):
            key = value.removeprefix("./").lstrip("/")
            if key in self.asset_map:
                return self.asset_map[key]
        logger.warning(f"Removing unresolved asset reference {value!r} from {item_id}")
        self.report.warnings.append(f"Asset {value!r} referenced by {item_id} was not found")
        return None

    # ── Clean-up & results ────────────────────────────────────────────────────

    async def clean_up(self, failed: bool) -> None:
        """Remove temporary files and, after a failure, everything this run created."""
        for directory in self.temp_dirs:
            try:
                await asyncio.to_thread(shutil.rmtree, directory, True)
            except OSError as e:
                logger.warning(f"Failed to remove {directory}: {e}")
        if not failed:
            return
        if self.course_id is not None:
            try:
                await self.context.content.delete_course(self.course_id)
            except Exception as e:
                logger.warning(f"Failed to remove partially imported course {self.course_id}: {e}")
        if self.created_asset_ids:
            try:
                await self.context.assets.delete(self.created_asset_ids)
            except Exception as e:
                logger.warning(f"Failed to remove imported assets: {e}")
        for plugin in self.installed_plugins:
            try:
                await self.context.plugins.uninstall(plugin.id)
            except Exception as e:
                logger.warning(f"Failed to uninstall plugin {plugin.name}: {e}")

    def summary(self) -> ImportSummary:
        return ImportSummary(
            course_id=self.course_id,
            framework_version=self.manifest.version if self.manifest else self.context.framework_version,
            dry_run=self.settings.dry_run,
            content=dict(self.imported),
            assets=len(self.asset_map),
            plugins_installed=[p.name for p in self.installed_plugins],
            plugins_updated=[p.name for p in self.updated_plugins],
            statusReport=self.report,
        )
