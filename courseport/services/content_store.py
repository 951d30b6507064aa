"""
Content Store

Persists course content as ContentItem rows and exchanges them as plain
documents keyed the way course packages key them ("_id", "_parentId", ...).
Every call opens its own short-lived session, so concurrent inserts from one
hierarchy level never share a session.
"""

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseport.database import AsyncSessionLocal
from courseport.exceptions import NotFoundError
from courseport.models.content import ContentItem, new_id
from courseport.services.schema_service import ContentSchema, SchemaRegistry

logger = logging.getLogger(__name__)

# Document key -> ContentItem column
STRUCTURAL_KEYS = {
    "_id": "id",
    "_type": "type",
    "_parentId": "parent_id",
    "_courseId": "course_id",
    "_sortOrder": "sort_order",
    "_component": "component",
    "_localId": "local_id",
    "createdBy": "created_by",
}


def to_document(item: ContentItem) -> dict[str, Any]:
    document = dict(item.data or {})
    for key, column in STRUCTURAL_KEYS.items():
        value = getattr(item, column)
        if value is not None:
            document[key] = value
    return document


def _split(document: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    columns, data = {}, {}
    for key, value in document.items():
        if key in STRUCTURAL_KEYS:
            columns[STRUCTURAL_KEYS[key]] = value
        else:
            data[key] = value
    return columns, data


def _where(query, filters: dict[str, Any]):
    for key, value in filters.items():
        if key not in STRUCTURAL_KEYS:
            raise ValueError(f"Cannot filter content on '{key}'")
        column = getattr(ContentItem, STRUCTURAL_KEYS[key])
        if isinstance(value, (list, tuple, set)):
            query = query.where(column.in_(list(value)))
        elif value is None:
            query = query.where(column.is_(None))
        else:
            query = query.where(column == value)
    return query


class ContentStore:
    """Document-style access to content items."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        schemas: SchemaRegistry | None = None,
    ):
        self.session_factory = session_factory
        self.schemas = schemas or SchemaRegistry()

    async def find(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        async with self.session_factory() as db:
            query = _where(select(ContentItem), filters or {}).order_by(ContentItem.created_at)
            result = await db.execute(query)
            return [to_document(item) for item in result.scalars().all()]

    async def find_one(self, filters: dict[str, Any]) -> dict[str, Any] | None:
        found = await self.find(filters)
        return found[0] if found else None

    async def insert(self, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a document, generating its _id unless one is given."""
        columns, data = _split(document)
        columns["id"] = columns.get("id") or new_id()
        async with self.session_factory() as db:
            item = ContentItem(**columns, data=data)
            db.add(item)
            await db.commit()
            await db.refresh(item)
            return to_document(item)

    async def update(self, filters: dict[str, Any], patch: dict[str, Any]) -> list[dict[str, Any]]:
        """Shallow-merge patch into every matching document."""
        columns, data = _split(patch)
        columns.pop("id", None)
        async with self.session_factory() as db:
            result = await db.execute(_where(select(ContentItem), filters))
            items = result.scalars().all()
            for item in items:
                for column, value in columns.items():
                    setattr(item, column, value)
                if data:
                    item.data = {**(item.data or {}), **data}
            await db.commit()
            return [to_document(item) for item in items]

    async def replace(self, item_id: str, document: dict[str, Any]) -> dict[str, Any]:
        columns, data = _split(document)
        columns.pop("id", None)
        async with self.session_factory() as db:
            item = await db.get(ContentItem, item_id)
            if item is None:
                raise NotFoundError("Content item", item_id)
            for key, column in STRUCTURAL_KEYS.items():
                if column != "id":
                    setattr(item, column, columns.get(column))
            item.data = data
            await db.commit()
            await db.refresh(item)
            return to_document(item)

    async def delete_many(self, filters: dict[str, Any]) -> int:
        if not filters:
            raise ValueError("Refusing to delete content without a filter")
        async with self.session_factory() as db:
            result = await db.execute(_where(delete(ContentItem), filters))
            await db.commit()
            return result.rowcount or 0

    async def delete_course(self, course_id: str) -> int:
        """Delete a course and everything belonging to it."""
        removed = await self.delete_many({"_courseId": course_id})
        removed += await self.delete_many({"_id": course_id})
        logger.info(f"Deleted course {course_id} ({removed} item(s))")
        return removed

    async def enabled_plugins(self, course_id: str) -> list[str]:
        config = await self.find_one({"_type": "config", "_courseId": course_id})
        return list((config or {}).get("_enabledPlugins") or [])

    async def get_schema(
        self,
        content_type: str,
        course_id: str | None,
        component: str | None = None,
        enabled_plugins: list[str] | None = None,
    ) -> ContentSchema:
        """Return the effective schema for an item of one course."""
        if enabled_plugins is None:
            enabled_plugins = await self.enabled_plugins(course_id) if course_id else []
        return self.schemas.get(content_type, enabled_plugins, component)
