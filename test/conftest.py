"""
Pytest configuration and fixtures for Courseport tests
"""

import json
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

from courseport.database import init_models  # noqa: E402
from courseport.exceptions import ExternalToolError  # noqa: E402
from courseport.schemas.package import AssetDescriptor  # noqa: E402
from courseport.services.compiler import CourseCompiler  # noqa: E402
from courseport.services.job_context import JobContext  # noqa: E402

FRAMEWORK_VERSION = "5.31.0"

# A 1x1 transparent PNG
PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00\x1f\x15\xc4\x89"
    b"\x00\x00\x00\rIDATx\x9cc\xf8\x0f\x00\x00\x01\x01\x00\x05\x18\xd8N\x00\x00\x00\x00IEND\xaeB`\x82"
)


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


class FakeCompiler(CourseCompiler):
    """Stands in for the framework build tools: writes build/index.html."""

    def __init__(self, fail: bool = False):
        super().__init__("grunt server-build:{mode}")
        self.fail = fail
        self.calls = []

    async def compile(self, working_dir, dev_mode=False, theme="", menu=""):
        self.calls.append({"dir": working_dir, "dev_mode": dev_mode, "theme": theme, "menu": menu})
        if self.fail:
            raise ExternalToolError("grunt server-build", returncode=1, output="Task failed")
        build = Path(working_dir) / "build"
        build.mkdir(parents=True, exist_ok=True)
        (build / "index.html").write_text("<html>course</html>", encoding="utf-8")
        course_json = Path(working_dir) / "src" / "course"
        (build / "course").mkdir(exist_ok=True)
        for path in course_json.rglob("*.json"):
            target = build / "course" / path.relative_to(course_json)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(path.read_bytes())
        return "ok"


def make_framework(root: Path) -> Path:
    """Create a minimal framework checkout with four plugins."""
    write_json(root / "package.json", {"name": "adapt_framework", "version": FRAMEWORK_VERSION})
    (root / "src" / "core" / "js").mkdir(parents=True)
    (root / "src" / "core" / "js" / "app.js").write_text("// core", encoding="utf-8")
    (root / "src" / "course" / "en").mkdir(parents=True)
    (root / "src" / "course" / "en" / "stale.json").write_text("[]", encoding="utf-8")
    (root / "node_modules" / "grunt").mkdir(parents=True)
    (root / ".git").mkdir()

    text = root / "src" / "components" / "adapt-contrib-text"
    write_json(
        text / "bower.json",
        {"name": "adapt-contrib-text", "version": "5.0.0", "framework": ">=5", "component": "text", "displayName": "Text"},
    )
    write_json(
        text / "schema" / "component.schema.json",
        {
            "$anchor": "text-component",
            "$merge": {"source": {"$ref": "component"}, "with": {"properties": {"body": {"type": "string", "default": ""}}}},
        },
    )

    # Legacy plugin: properties.schema only, manifest in package.json
    graphic = root / "src" / "components" / "adapt-contrib-graphic"
    write_json(graphic / "package.json", {"name": "adapt-contrib-graphic", "version": "5.1.0", "component": "graphic"})
    write_json(
        graphic / "properties.schema",
        {
            "properties": {
                "_graphic": {
                    "type": "object",
                    "properties": {
                        "alt": {"type": "string", "default": ""},
                        "large": {"type": "string", "inputType": "Asset:image"},
                        "small": {"type": "string", "inputType": "Asset:image"},
                        "src": {"type": "string", "inputType": "Asset:image"},
                    },
                }
            },
            "globals": {"ariaRegion": {"type": "string", "default": "Image"}},
        },
    )

    plp = root / "src" / "extensions" / "adapt-contrib-pageLevelProgress"
    write_json(
        plp / "bower.json",
        {
            "name": "adapt-contrib-pageLevelProgress",
            "version": "7.0.0",
            "extension": "pageLevelProgress",
            "targetAttribute": "_pageLevelProgress",
            "pluginDependencies": {"adapt-contrib-text": "^5.0.0"},
        },
    )
    write_json(
        plp / "schema" / "course.schema.json",
        {
            "$anchor": "pageLevelProgress-course",
            "$patch": {
                "source": {"$ref": "course"},
                "with": {
                    "properties": {
                        "_pageLevelProgress": {
                            "type": "object",
                            "properties": {"_isEnabled": {"type": "boolean", "default": True}},
                        }
                    }
                },
            },
        },
    )

    vanilla = root / "src" / "theme" / "adapt-contrib-vanilla"
    write_json(vanilla / "bower.json", {"name": "adapt-contrib-vanilla", "version": "9.0.0", "theme": "vanilla"})
    return root


@pytest.fixture
async def session_factory(tmp_path):
    """A fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await init_models(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def framework_dir(tmp_path):
    return make_framework(tmp_path / "framework")


@pytest.fixture
def compiler():
    return FakeCompiler()


@pytest.fixture
async def context(session_factory, framework_dir, tmp_path, compiler):
    """A job context with the framework's plugins registered."""
    job_context = JobContext.create(
        session_factory,
        framework_dir=framework_dir,
        build_dir=tmp_path / "builds",
        upload_temp_dir=tmp_path / "uploads",
        asset_dir=tmp_path / "assets",
        compiler=compiler,
    )
    await job_context.plugins.register_framework_plugins()
    await job_context.start()
    return job_context


async def seed_course(context: JobContext, tmp_path: Path, user_id: str = "user-1") -> dict[str, str]:
    """
    Insert a small course: one page, one article, one block and two components.

    Returns a map of names ("course", "page", ...) to store ids.
    """
    logo = tmp_path / "seed" / "logo.png"
    logo.parent.mkdir(parents=True, exist_ok=True)
    logo.write_bytes(PNG_BYTES)
    asset = await context.assets.insert(
        AssetDescriptor(path="logo.png", filename="logo.png", title="Logo", tags=["brand"]), logo, user_id
    )

    content = context.content
    course = await content.insert(
        {
            "_type": "course",
            "_localId": "course",
            "title": "Seeded course",
            "heroImage": asset["_id"],
            "_globals": {"_graphic": {"ariaRegion": "Picture"}},
            "createdBy": user_id,
        }
    )
    course_id = course["_id"]
    await content.update({"_id": course_id}, {"_courseId": course_id})
    await content.insert(
        {
            "_type": "config",
            "_courseId": course_id,
            "_enabledPlugins": ["adapt-contrib-graphic", "adapt-contrib-text", "adapt-contrib-vanilla"],
            "_theme": "adapt-contrib-vanilla",
        }
    )
    ids = {"course": course_id, "asset": asset["_id"]}

    async def add(name, data):
        doc = await content.insert({**data, "_courseId": course_id, "createdBy": user_id})
        ids[name] = doc["_id"]
        return doc

    await add("page", {"_type": "page", "_localId": "co-05", "_parentId": course_id, "_sortOrder": 1, "title": "Page"})
    await add("article", {"_type": "article", "_localId": "a-05", "_parentId": ids["page"], "_sortOrder": 1, "title": "Art"})
    await add("block", {"_type": "block", "_localId": "b-05", "_parentId": ids["article"], "_sortOrder": 1})
    await add(
        "graphic",
        {
            "_type": "component",
            "_localId": "c-10",
            "_parentId": ids["block"],
            "_sortOrder": 2,
            "_component": "adapt-contrib-graphic",
            "_graphic": {"alt": "Logo", "large": asset["_id"], "small": "0" * 32},
        },
    )
    await add(
        "text",
        {
            "_type": "component",
            "_localId": "c-05",
            "_parentId": ids["block"],
            "_sortOrder": 1,
            "_component": "adapt-contrib-text",
            "body": "Hello",
        },
    )
    return ids


def make_package(root: Path, version: str = "5.20.0", components: list | None = None) -> Path:
    """Write a raw-source course package directory."""
    write_json(root / "package.json", {"name": "adapt_framework", "version": version})
    course_dir = root / "src" / "course"
    write_json(course_dir / "config.json", {"_defaultLanguage": "en", "_enabledPlugins": ["adapt-contrib-text"]})
    lang = course_dir / "en"
    write_json(
        lang / "course.json",
        {
            "_id": "course",
            "_type": "course",
            "title": "Imported course",
            "_globals": {"_extensions": {"_pageLevelProgress": {"_navOrder": "3"}}},
        },
    )
    write_json(
        lang / "contentObjects.json",
        [
            {"_id": "co-05", "_parentId": "course", "_type": "page", "title": "Page 1"},
            {"_id": "co-10", "_parentId": "course", "_type": "page", "title": "Page 2", "_graphic": {"src": "course/en/images/logo.png"}},
        ],
    )
    write_json(lang / "articles.json", [{"_id": "a-05", "_parentId": "co-05", "_type": "article", "title": "Article"}])
    write_json(lang / "blocks.json", [{"_id": "b-05", "_parentId": "a-05", "_type": "block", "title": "Block"}])
    if components is None:
        components = [
            {"_id": "c-05", "_parentId": "b-05", "_type": "component", "_component": "text", "body": "Hi", "_playerOptions": ""},
            {
                "_id": "c-10",
                "_parentId": "b-05",
                "_type": "component",
                "_component": "graphic",
                "_graphic": {"alt": "Logo", "src": "course/en/images/logo.png"},
                "_notes": None,
            },
        ]
    write_json(lang / "components.json", components)
    (lang / "images").mkdir(parents=True, exist_ok=True)
    (lang / "images" / "logo.png").write_bytes(PNG_BYTES)
    return root
