"""
Course Build

Turns one course in the content store into a framework package and runs the
framework compiler over it:

    loaded -> transformed -> assembled -> compiled -> packaged -> recorded

Previews leave the compiled site in place to be served; publishes zip the
compiled site; exports zip the editable source tree (no compile step). The
content store is only read, so a failed build just removes its files.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import logging
import os
import shutil
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select

from courseport.exceptions import CourseportError, JobFailedError, MissingDependencyError, NotFoundError
from courseport.models.build import BuildAction, BuildAttempt
from courseport.schemas.job import BuildSummary
from courseport.schemas.package import PluginDescriptor
from courseport.services.hierarchy import sort_hierarchy
from courseport.services.job_context import JobContext
from courseport.services.plugin_resolver import DependencyResolver
from courseport.services.schema_service import deep_merge
from courseport.utils.archive import zip_directory

logger = logging.getLogger(__name__)

FRAMEWORK_KEY = "adapt_framework"

# Framework source never copied into a build
SOURCE_EXCLUDES = {".git", ".DS_Store", "thumbs.db", "Thumbs.db", "node_modules", "course"}

# Store-only keys stripped from package output
STORE_ONLY_KEYS = ("_localId", "createdBy")

# Output file per content bucket, in the language directory
BUCKET_FILES = {
    "contentObjects": "contentObjects.json",
    "articles": "articles.json",
    "blocks": "blocks.json",
    "components": "components.json",
}

TYPE_TO_BUCKET = {
    "menu": "contentObjects",
    "page": "contentObjects",
    "article": "articles",
    "block": "blocks",
    "component": "components",
}


class BuildStage(str, enum.Enum):
    PENDING = "pending"
    LOADED = "loaded"
    TRANSFORMED = "transformed"
    ASSEMBLED = "assembled"
    COMPILED = "compiled"
    PACKAGED = "packaged"
    RECORDED = "recorded"


def _is_remote(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://", "//"))


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink(missing_ok=True)


class CourseBuild:
    """One build of one course."""

    def __init__(self, context: JobContext, action: BuildAction | str, course_id: str, user_id: str | None):
        self.context = context
        self.action = BuildAction(action)
        self.course_id = course_id
        self.user_id = user_id
        self.stage = BuildStage.PENDING

        self.build_id: str | None = None
        self.location: Path | None = None
        self.expires_at: datetime | None = None
        self.versions: dict[str, str] = {}

        self.dir: Path | None = None
        self.course: dict[str, Any] = {}
        self.config: dict[str, Any] = {}
        self.items: list[dict[str, Any]] = []
        self.buckets: dict[str, list[dict[str, Any]]] = {bucket: [] for bucket in BUCKET_FILES}
        self.enabled_plugins: list[PluginDescriptor] = []
        self.disabled_plugins: list[PluginDescriptor] = []
        # Store id -> asset document, for assets referenced by content
        self.assets: dict[str, dict[str, Any]] = {}
        # Asset id -> package-relative path (or URL for remote assets)
        self.asset_paths: dict[str, str] = {}

    @property
    def is_preview(self) -> bool:
        return self.action == BuildAction.PREVIEW

    @property
    def is_publish(self) -> bool:
        return self.action == BuildAction.PUBLISH

    @property
    def is_export(self) -> bool:
        return self.action == BuildAction.EXPORT

    @property
    def course_dir(self) -> Path:
        return self.dir / "src" / "course"

    @property
    def language_dir(self) -> Path:
        return self.course_dir / self.context.language

    @classmethod
    async def run(
        cls,
        context: JobContext,
        action: BuildAction | str,
        course_id: str,
        user_id: str | None = None,
    ) -> CourseBuild:
        """
        Build a course.

        Raises:
            CourseportError: on any failure, with the failing stage in details["stage"]
        """
        build = cls(context, action, course_id, user_id)
        await build.execute()
        return build

    async def execute(self) -> None:
        logger.info(f"Starting {self.action.value} build of course {self.course_id}")
        try:
            await self.load()
            self._advance(BuildStage.LOADED)
            self.transform()
            self._advance(BuildStage.TRANSFORMED)
            await self.assemble()
            self._advance(BuildStage.ASSEMBLED)
            if not self.is_export:
                await self.compile()
                self._advance(BuildStage.COMPILED)
            await self.package()
            self._advance(BuildStage.PACKAGED)
            await self.record()
            self._advance(BuildStage.RECORDED)
        except CourseportError as e:
            e.details.setdefault("stage", self._failed_stage())
            logger.error(f"Build of course {self.course_id} failed at {self._failed_stage()}: {e.message}")
            await self.clean_up()
            raise
        except Exception as e:
            logger.exception(f"Build of course {self.course_id} failed unexpectedly")
            await self.clean_up()
            raise JobFailedError(f"Build failed: {e}", stage=self._failed_stage()) from e
        logger.info(f"Finished {self.action.value} build {self.build_id} at {self.location}")

    def _advance(self, stage: BuildStage) -> None:
        self.stage = stage
        logger.debug(f"Build {self.course_id}: {stage.value}")

    def _failed_stage(self) -> str:
        """Name of the stage that was running when a failure happened."""
        order = list(BuildStage)
        index = order.index(self.stage) + 1
        if self.is_export and order[index] == BuildStage.COMPILED:
            index += 1
        return order[min(index, len(order) - 1)].value

    # ── Load ──────────────────────────────────────────────────────────────────

    async def load(self) -> None:
        content = self.context.content
        course = await content.find_one({"_id": self.course_id, "_type": "course"})
        if course is None:
            raise NotFoundError("Course", self.course_id)
        self.course = course

        items = await content.find({"_courseId": self.course_id})
        self.config = next((i for i in items if i.get("_type") == "config"), None) or {
            "_id": "config",
            "_type": "config",
            "_courseId": self.course_id,
        }
        self.items = [i for i in items if i.get("_type") not in ("course", "config")]

        await self._load_plugins()
        await self._load_assets()

    async def _load_plugins(self) -> None:
        installed = await self.context.plugins.find()
        resolver = DependencyResolver.from_lists(installed)
        resolution = resolver.resolve(self.config.get("_enabledPlugins") or [])
        enabled = set(resolution.names)
        self.enabled_plugins = resolution.plugins
        self.disabled_plugins = [p for p in installed if p.name not in enabled]

    async def _schema_for(self, item: dict[str, Any]):
        return await self.context.content.get_schema(
            item["_type"],
            self.course_id,
            item.get("_component"),
            enabled_plugins=[p.name for p in self.enabled_plugins],
        )

    async def _load_assets(self) -> None:
        referenced: set[str] = set()

        def collect(value: Any) -> Any:
            if isinstance(value, str) and not _is_remote(value):
                referenced.add(value)
            return value

        for item in [self.course, self.config, *self.items]:
            schema = await self._schema_for(item)
            schema.walk_assets(copy.deepcopy(item), collect)

        if not referenced:
            return
        used_names: set[str] = set()
        for asset in await self.context.assets.find({"_id": sorted(referenced)}):
            self.assets[asset["_id"]] = asset
            if asset.get("url") and not asset.get("path"):
                self.asset_paths[asset["_id"]] = asset["url"]
                continue
            filename = asset["filename"]
            if filename in used_names:
                filename = f"{asset['_id']}-{filename}"
            used_names.add(filename)
            self.asset_paths[asset["_id"]] = f"course/{self.context.language}/assets/{filename}"

    # ── Transform ─────────────────────────────────────────────────────────────

    def transform(self) -> None:
        hierarchy = sort_hierarchy(self.items, self.course_id)
        local_ids = {self.course_id: self.course.get("_localId") or "course"}
        local_ids.update({i["_id"]: i.get("_localId") or i["_id"] for i in self.items})
        by_id = {i["_id"]: i for i in self.items}
        public_keys = {p.name: p.public_key for p in self.enabled_plugins if p.type == "component"}

        for item_id in hierarchy.document_order():
            if item_id == self.course_id:
                continue
            item = by_id[item_id]
            output = self._transform_item(item, local_ids)
            if "_component" in output:
                if output["_component"] not in public_keys:
                    raise MissingDependencyError(
                        output["_component"], required_by=output["_id"], reason="component plugin is not enabled"
                    )
                output["_component"] = public_keys[output["_component"]]
            self.buckets[TYPE_TO_BUCKET.get(item["_type"], "components")].append(output)

        self.course = self._transform_item(self.course, local_ids)
        self.config = self._transform_item(self.config, local_ids)
        self.config["_id"] = "config"
        self.config.pop("_parentId", None)
        self._nest_plugin_globals()

    def _transform_item(self, item: dict[str, Any], local_ids: dict[str, str]) -> dict[str, Any]:
        output = copy.deepcopy(item)
        for key in ("_id", "_parentId", "_courseId"):
            if output.get(key) in local_ids:
                output[key] = local_ids[output[key]]
        for key in STORE_ONLY_KEYS:
            output.pop(key, None)

        schema = self.context.schemas.get(
            item["_type"], [p.name for p in self.enabled_plugins], item.get("_component")
        )
        schema.walk_assets(output, lambda value: self._asset_reference(value, output.get("_id")))
        return output

    def _asset_reference(self, value: Any, item_id: str | None) -> Any:
        if value in self.asset_paths:
            return self.asset_paths[value]
        if _is_remote(value):
            return value
        logger.warning(f"Removing unknown asset reference {value!r} from {item_id}")
        return None

    def _nest_plugin_globals(self) -> None:
        """Move each plugin's course globals under its plugin type key."""
        globals_ = self.course.setdefault("_globals", {})
        for plugin in self.enabled_plugins:
            if plugin.target_attribute not in globals_:
                continue
            settings = globals_.pop(plugin.target_attribute)
            nested = globals_.setdefault(plugin.globals_key, {})
            existing = nested.get(plugin.target_attribute)
            if isinstance(existing, dict) and isinstance(settings, dict):
                settings = deep_merge(existing, settings)
            nested[plugin.target_attribute] = settings

    # ── Assemble ──────────────────────────────────────────────────────────────

    async def assemble(self) -> None:
        self.dir = self.context.build_dir / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        await asyncio.to_thread(self.dir.mkdir, parents=True)
        await asyncio.gather(self._copy_source(), self._copy_assets())
        await self._write_content()

    async def _copy_source(self) -> None:
        framework_dir = self.context.framework_dir
        excluded = SOURCE_EXCLUDES | {p.name for p in self.disabled_plugins}

        def ignore(directory: str, names: list[str]) -> set[str]:
            return {name for name in names if name in excluded}

        await asyncio.to_thread(shutil.copytree, framework_dir, self.dir, ignore=ignore, dirs_exist_ok=True)
        node_modules = framework_dir / "node_modules"
        if not self.is_export and node_modules.exists():
            await asyncio.to_thread(os.symlink, node_modules.resolve(), self.dir / "node_modules", True)

    async def _copy_assets(self) -> None:
        async def copy_asset(asset: dict[str, Any]) -> None:
            source = self.context.assets.resolve_path(asset)
            if source is None:
                return
            target = self.dir / "src" / self.asset_paths[asset["_id"]]
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, source, target)

        await asyncio.gather(*(copy_asset(asset) for asset in self.assets.values()))

    async def _write_content(self) -> None:
        files: dict[Path, Any] = {
            self.course_dir / "config.json": self.config,
            self.language_dir / "course.json": self.course,
        }
        for bucket, filename in BUCKET_FILES.items():
            files[self.language_dir / filename] = self.buckets[bucket]
        if self.is_export and self.assets:
            files[self.language_dir / "assets.json"] = self._asset_manifest()

        def write(path: Path, data: Any) -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")

        await asyncio.gather(*(asyncio.to_thread(write, path, data) for path, data in files.items()))

    def _asset_manifest(self) -> dict[str, dict[str, Any]]:
        """Metadata keyed by package path, read back by imports."""
        manifest = {}
        for asset_id, asset in self.assets.items():
            path = self.asset_paths[asset_id]
            if _is_remote(path):
                continue
            manifest[path] = {
                "title": asset.get("title"),
                "description": asset.get("description"),
                "tags": asset.get("tags") or [],
            }
        return manifest

    # ── Compile & package ─────────────────────────────────────────────────────

    async def compile(self) -> None:
        await self.context.compiler.compile(
            self.dir,
            dev_mode=self.is_preview,
            theme=self.config.get("_theme") or "",
            menu=self.config.get("_menu") or "",
        )

    async def package(self) -> None:
        if self.is_preview:
            await asyncio.to_thread(self._promote_build_output)
            self.location = self.dir
            return
        archive = self.dir.with_name(f"{self.dir.name}.zip")
        if self.is_publish:
            await zip_directory(self.dir / "build", archive)
        else:
            await zip_directory(self.dir, archive, exclude={"build", "node_modules"})
        await asyncio.to_thread(shutil.rmtree, self.dir)
        self.location = archive

    def _promote_build_output(self) -> None:
        temp = self.dir.with_name(f"{self.dir.name}_temp")
        shutil.move(str(self.dir / "build"), str(temp))
        _remove_path(self.dir)
        shutil.move(str(temp), str(self.dir))

    # ── Record ────────────────────────────────────────────────────────────────

    async def record(self) -> None:
        self.expires_at = datetime.utcnow() + self.context.build_lifespan
        self.versions = {FRAMEWORK_KEY: self.context.framework_version}
        self.versions.update({p.name: p.version for p in self.enabled_plugins})

        async with self.context.session_factory() as db:
            attempt = BuildAttempt(
                action=self.action,
                course_id=self.course_id,
                location=str(self.location),
                expires_at=self.expires_at,
                created_by=self.user_id,
                versions=self.versions,
            )
            db.add(attempt)
            await db.commit()
            await db.refresh(attempt)
            self.build_id = attempt.id

        await self._evict_previous()

    async def _evict_previous(self) -> None:
        """Remove older builds of the same action by the same user."""
        async with self.context.session_factory() as db:
            query = select(BuildAttempt).where(
                BuildAttempt.action == self.action,
                BuildAttempt.id != self.build_id,
            )
            query = query.where(
                BuildAttempt.created_by == self.user_id if self.user_id is not None else BuildAttempt.created_by.is_(None)
            )
            old = (await db.execute(query)).scalars().all()
            if not old:
                return
            await db.execute(delete(BuildAttempt).where(BuildAttempt.id.in_([b.id for b in old])))
            await db.commit()

        for attempt in old:
            self.context.builds.pop(attempt.id, None)
            try:
                await asyncio.to_thread(_remove_path, Path(attempt.location))
            except OSError as e:
                logger.warning(f"Failed to remove old build output {attempt.location}: {e}")
        logger.info(f"Evicted {len(old)} previous {self.action.value} build(s)")

    async def clean_up(self) -> None:
        """Best-effort removal of this build's files after a failure."""
        targets = [p for p in (self.dir, self.location) if p is not None]
        if self.dir is not None:
            targets += [self.dir.with_name(f"{self.dir.name}.zip"), self.dir.with_name(f"{self.dir.name}_temp")]
        for target in targets:
            try:
                await asyncio.to_thread(_remove_path, target)
            except OSError as e:
                logger.warning(f"Failed to clean up {target}: {e}")

    def summary(self) -> BuildSummary:
        return BuildSummary(
            build_id=self.build_id,
            action=self.action.value,
            course_id=self.course_id,
            location=str(self.location),
            expires_at=self.expires_at,
            created_by=self.user_id,
            versions=self.versions,
        )


async def get_build(context: JobContext, build_id: str) -> BuildSummary:
    """
    Look up a live build.

    Raises:
        NotFoundError: no such build, or it has expired
    """
    summary = context.builds.get(build_id)
    if summary is None:
        async with context.session_factory() as db:
            attempt = await db.get(BuildAttempt, build_id)
        if attempt is not None:
            summary = BuildSummary(
                build_id=attempt.id,
                action=attempt.action.value,
                course_id=attempt.course_id,
                location=attempt.location,
                expires_at=attempt.expires_at,
                created_by=attempt.created_by,
                versions=dict(attempt.versions or {}),
            )
            context.builds[build_id] = summary
    if summary is None or summary.expires_at <= datetime.utcnow():
        context.builds.pop(build_id, None)
        raise NotFoundError("Build", build_id)
    return summary
