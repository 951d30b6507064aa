"""
Tests for course builds (preview, publish and export)
"""

import json
import zipfile
from datetime import datetime, timedelta

import pytest

from courseport.exceptions import ExternalToolError, MissingDependencyError, NotFoundError, StructuralError
from courseport.models.build import BuildAction
from courseport.services.build_service import CourseBuild, get_build
from conftest import PNG_BYTES, FakeCompiler, seed_course


def read_zip_json(archive, name):
    with zipfile.ZipFile(archive) as zf:
        return json.loads(zf.read(name))


class TestExport:
    """Test exported source packages"""

    async def test_export_writes_content_files(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        build = await CourseBuild.run(context, BuildAction.EXPORT, ids["course"], "user-1")
        archive = build.location

        assert archive.suffix == ".zip"
        assert not build.dir.exists()
        with zipfile.ZipFile(archive) as zf:
            names = set(zf.namelist())
        assert "package.json" in names
        assert "src/core/js/app.js" in names
        assert "src/course/en/assets/logo.png" in names
        assert "src/course/en/stale.json" not in names
        assert not any(name.startswith(("node_modules", ".git", "build/")) for name in names)
        assert not any("adapt-contrib-pageLevelProgress" in name for name in names)

    async def test_export_maps_ids_and_orders_content(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        archive = (await CourseBuild.run(context, "export", ids["course"], "user-1")).location

        course = read_zip_json(archive, "src/course/en/course.json")
        assert course["_id"] == "course"
        assert course["heroImage"] == "course/en/assets/logo.png"
        assert course["_globals"]["_components"]["_graphic"] == {"ariaRegion": "Picture"}
        assert "_graphic" not in course["_globals"]
        assert "createdBy" not in course and "_localId" not in course

        config = read_zip_json(archive, "src/course/config.json")
        assert config["_id"] == "config"
        assert config["_courseId"] == "course"

        pages = read_zip_json(archive, "src/course/en/contentObjects.json")
        assert [(p["_id"], p["_parentId"]) for p in pages] == [("co-05", "course")]

        components = read_zip_json(archive, "src/course/en/components.json")
        assert [c["_id"] for c in components] == ["c-05", "c-10"]
        assert [c["_component"] for c in components] == ["text", "graphic"]
        assert components[1]["_parentId"] == "b-05"
        # The unknown small image reference is dropped, the stored asset is mapped
        assert components[1]["_graphic"] == {"alt": "Logo", "large": "course/en/assets/logo.png"}

    async def test_export_writes_asset_manifest(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        archive = (await CourseBuild.run(context, "export", ids["course"], "user-1")).location
        manifest = read_zip_json(archive, "src/course/en/assets.json")
        assert manifest == {"course/en/assets/logo.png": {"title": "Logo", "description": "Logo", "tags": ["brand"]}}
        with zipfile.ZipFile(archive) as zf:
            assert zf.read("src/course/en/assets/logo.png") == PNG_BYTES

    async def test_export_does_not_compile(self, context, compiler, tmp_path):
        ids = await seed_course(context, tmp_path)
        await CourseBuild.run(context, "export", ids["course"], "user-1")
        assert compiler.calls == []

    async def test_summary_versions(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        summary = (await CourseBuild.run(context, "export", ids["course"], "user-1")).summary()
        assert summary.versions == {
            "adapt_framework": "5.31.0",
            "adapt-contrib-graphic": "5.1.0",
            "adapt-contrib-text": "5.0.0",
            "adapt-contrib-vanilla": "9.0.0",
        }
        assert summary.expires_at > datetime.utcnow() + timedelta(days=6)


class TestPreviewAndPublish:
    """Test compiled builds"""

    async def test_preview_leaves_compiled_site(self, context, compiler, tmp_path):
        ids = await seed_course(context, tmp_path)
        build = await CourseBuild.run(context, BuildAction.PREVIEW, ids["course"], "user-1")

        assert compiler.calls[0]["dev_mode"] is True
        assert compiler.calls[0]["theme"] == "adapt-contrib-vanilla"
        assert build.location == build.dir
        assert (build.location / "index.html").is_file()
        assert not (build.location / "src").exists()
        assert (build.location / "course" / "en" / "components.json").is_file()

    async def test_publish_zips_compiled_site(self, context, compiler, tmp_path):
        ids = await seed_course(context, tmp_path)
        build = await CourseBuild.run(context, BuildAction.PUBLISH, ids["course"], "user-1")

        assert compiler.calls[0]["dev_mode"] is False
        with zipfile.ZipFile(build.location) as zf:
            names = set(zf.namelist())
        assert "index.html" in names
        assert "course/en/course.json" in names
        assert not any(name.startswith("src/") for name in names)

    async def test_builds_by_other_users_are_kept(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        first = await CourseBuild.run(context, "publish", ids["course"], "user-1")
        other = await CourseBuild.run(context, "publish", ids["course"], "user-2")
        second = await CourseBuild.run(context, "publish", ids["course"], "user-1")
        export = await CourseBuild.run(context, "export", ids["course"], "user-1")

        assert not first.location.exists()
        assert other.location.exists()
        assert second.location.exists()
        assert export.location.exists()
        with pytest.raises(NotFoundError):
            await get_build(context, first.build_id)
        assert (await get_build(context, second.build_id)).location == str(second.location)


class TestBuildFailures:
    """Test failures surface their stage and leave no output behind"""

    @pytest.fixture
    def compiler(self):
        return FakeCompiler(fail=True)

    async def test_compile_failure(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        with pytest.raises(ExternalToolError) as exc_info:
            await CourseBuild.run(context, BuildAction.PUBLISH, ids["course"], "user-1")
        assert exc_info.value.details["stage"] == "compiled"
        assert exc_info.value.details["output"] == "Task failed"
        assert list(context.build_dir.iterdir()) == []

    async def test_missing_course(self, context):
        with pytest.raises(NotFoundError) as exc_info:
            await CourseBuild.run(context, BuildAction.EXPORT, "missing", "user-1")
        assert exc_info.value.details["stage"] == "loaded"

    async def test_component_plugin_not_enabled(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        await context.content.update(
            {"_type": "config", "_courseId": ids["course"]},
            {"_enabledPlugins": ["adapt-contrib-text", "adapt-contrib-vanilla"]},
        )
        with pytest.raises(MissingDependencyError) as exc_info:
            await CourseBuild.run(context, BuildAction.EXPORT, ids["course"], "user-1")
        assert exc_info.value.details["stage"] == "transformed"
        assert exc_info.value.details["name"] == "adapt-contrib-graphic"

    async def test_broken_hierarchy(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        await context.content.update({"_id": ids["block"]}, {"_parentId": "missing"})
        with pytest.raises(StructuralError):
            await CourseBuild.run(context, BuildAction.EXPORT, ids["course"], "user-1")


class TestGetBuild:
    async def test_unknown_build(self, context):
        with pytest.raises(NotFoundError):
            await get_build(context, "missing")

    async def test_expired_build(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        context.build_lifespan = timedelta(seconds=-1)
        build = await CourseBuild.run(context, "export", ids["course"], "user-1")
        with pytest.raises(NotFoundError):
            await get_build(context, build.build_id)

    async def test_lookup_is_cached(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        build = await CourseBuild.run(context, "export", ids["course"], "user-1")
        summary = await get_build(context, build.build_id)
        assert context.builds[build.build_id] is summary
        assert summary.action == "export"


class TestEviction:
    async def test_second_preview_replaces_first(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        first = await CourseBuild.run(context, BuildAction.PREVIEW, ids["course"], "user-1")
        second = await CourseBuild.run(context, BuildAction.PREVIEW, ids["course"], "user-1")
        assert not first.location.exists()
        assert second.location.exists()
        assert list(context.build_dir.iterdir()) == [second.location]

    async def test_invalidate_drops_cached_records(self, context, tmp_path):
        ids = await seed_course(context, tmp_path)
        build = await CourseBuild.run(context, "export", ids["course"], "user-1")
        await get_build(context, build.build_id)
        context.invalidate()
        assert context.builds == {}
        assert (await get_build(context, build.build_id)).build_id == build.build_id
