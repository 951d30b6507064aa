"""
Job Context

Bundles the collaborators a build or import job talks to: the content,
asset and plugin stores, the schema registry, the compiler and the
filesystem locations. One context is created per application (or per test)
and shared by the jobs it runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseport.config import settings
from courseport.database import AsyncSessionLocal
from courseport.services.asset_store import AssetStore
from courseport.services.compiler import CourseCompiler
from courseport.services.content_store import ContentStore
from courseport.services.plugin_registry import PluginRegistry
from courseport.services.schema_service import SchemaRegistry
from courseport.utils.versions import is_valid_version

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    session_factory: async_sessionmaker[AsyncSession]
    content: ContentStore
    assets: AssetStore
    plugins: PluginRegistry
    schemas: SchemaRegistry
    compiler: CourseCompiler
    framework_dir: Path
    build_dir: Path
    upload_temp_dir: Path
    build_lifespan: timedelta
    language: str = "en"
    # Build records already looked up, by id
    builds: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        framework_dir: Path | None = None,
        build_dir: Path | None = None,
        upload_temp_dir: Path | None = None,
        asset_dir: Path | None = None,
        compiler: CourseCompiler | None = None,
        language: str | None = None,
    ) -> JobContext:
        framework_dir = Path(framework_dir or settings.framework_dir)
        schemas = SchemaRegistry()
        return cls(
            session_factory=session_factory,
            content=ContentStore(session_factory, schemas),
            assets=AssetStore(session_factory, asset_dir or settings.asset_dir),
            plugins=PluginRegistry(session_factory, framework_dir / "src", schemas),
            schemas=schemas,
            compiler=compiler or CourseCompiler(),
            framework_dir=framework_dir,
            build_dir=Path(build_dir or settings.build_dir),
            upload_temp_dir=Path(upload_temp_dir or settings.upload_temp_dir),
            build_lifespan=timedelta(seconds=settings.build_lifespan_seconds),
            language=language or settings.default_language,
        )

    @property
    def framework_version(self) -> str:
        """Version from the framework's package.json, else the configured fallback."""
        manifest = self.framework_dir / "package.json"
        try:
            version = json.loads(manifest.read_text(encoding="utf-8")).get("version")
        except (OSError, json.JSONDecodeError):
            version = None
        if version and is_valid_version(version):
            return version
        return settings.framework_version

    def invalidate(self) -> None:
        """Drop cached build records and composed schemas."""
        self.builds.clear()
        self.schemas.invalidate()

    async def start(self) -> None:
        """Load installed plugin schemas; call once before running jobs."""
        await self.plugins.load_schemas()
        logger.info(f"Job context ready (framework {self.framework_version})")
