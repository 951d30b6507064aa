"""
Asset Store

Stores asset files under the configured asset directory and their metadata in
the assets table. Remote assets keep only their URL.
"""

import asyncio
import logging
import mimetypes
import shutil
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseport.config import settings
from courseport.database import AsyncSessionLocal
from courseport.exceptions import PackageIOError
from courseport.models.asset import Asset
from courseport.models.content import new_id
from courseport.schemas.package import AssetDescriptor

logger = logging.getLogger(__name__)


def to_document(asset: Asset) -> dict[str, Any]:
    return {
        "_id": asset.id,
        "title": asset.title,
        "description": asset.description,
        "tags": list(asset.tags or []),
        "mimeType": asset.mime_type,
        "filename": asset.filename,
        "path": asset.path,
        "url": asset.url,
        "size": asset.size,
        "createdBy": asset.created_by,
    }


class AssetStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        asset_dir: Path | None = None,
    ):
        self.session_factory = session_factory
        self.asset_dir = Path(asset_dir or settings.asset_dir)

    async def insert(
        self,
        descriptor: AssetDescriptor,
        source: Path | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Store one asset.

        Args:
            descriptor: Asset metadata
            source: Local file to copy in; omitted for remote (url) assets
            created_by: Owning user id

        Returns:
            The stored asset document
        """
        asset_id = new_id()
        relative_path = None
        size = None
        if source is not None:
            source = Path(source)
            if not source.is_file():
                raise PackageIOError(f"Asset file not found: {descriptor.path}", path=str(source))
            relative_path = f"{asset_id}{source.suffix.lower()}"
            target = self.asset_dir / relative_path
            try:
                await asyncio.to_thread(self._copy, source, target)
            except OSError as e:
                raise PackageIOError(f"Failed to store asset {descriptor.filename}: {e}", path=str(source)) from e
            size = target.stat().st_size
        elif not descriptor.url:
            raise PackageIOError(f"Asset {descriptor.filename} has neither a file nor a URL", path=descriptor.path)

        mime_type = descriptor.mime_type or mimetypes.guess_type(descriptor.filename)[0]
        async with self.session_factory() as db:
            asset = Asset(
                id=asset_id,
                title=descriptor.title,
                description=descriptor.description,
                tags=list(dict.fromkeys(descriptor.tags)),
                mime_type=mime_type,
                filename=descriptor.filename,
                path=relative_path,
                url=descriptor.url,
                size=size,
                created_by=created_by,
            )
            db.add(asset)
            await db.commit()
            await db.refresh(asset)
        return to_document(asset)

    @staticmethod
    def _copy(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

    async def find(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        query = select(Asset)
        if "_id" in filters:
            ids = filters["_id"]
            query = query.where(Asset.id.in_(list(ids)) if isinstance(ids, (list, tuple, set)) else Asset.id == ids)
        if "createdBy" in filters:
            query = query.where(Asset.created_by == filters["createdBy"])
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(Asset.created_at))
            return [to_document(asset) for asset in result.scalars().all()]

    def resolve_path(self, asset: dict[str, Any]) -> Path | None:
        """Absolute path of a stored asset's bytes, or None for remote assets."""
        if not asset.get("path"):
            return None
        return self.asset_dir / asset["path"]

    async def delete(self, ids: list[str]) -> int:
        """Delete asset records and their files; missing files are ignored."""
        if not ids:
            return 0
        assets = await self.find({"_id": ids})
        async with self.session_factory() as db:
            await db.execute(delete(Asset).where(Asset.id.in_(ids)))
            await db.commit()
        for asset in assets:
            path = self.resolve_path(asset)
            if path is not None:
                try:
                    await asyncio.to_thread(path.unlink, missing_ok=True)
                except OSError as e:
                    logger.warning(f"Failed to remove asset file {path}: {e}")
        return len(assets)
