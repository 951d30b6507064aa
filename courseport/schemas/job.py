"""
Job Schemas

Pydantic models for import settings, status reports and build/import results.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImportSettings(BaseModel):
    """Options controlling what a course import may change."""

    dry_run: bool = False
    import_content: bool = True
    import_plugins: bool = True
    update_plugins: bool = False
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value: Any) -> Any:
        # Form submissions send tags as one comma-separated string
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value


class StatusReport(BaseModel):
    """Human-readable outcome of a job."""

    info: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = None


class BuildSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    build_id: str
    action: str
    course_id: str
    location: str
    expires_at: datetime
    created_by: str | None = None
    versions: dict[str, str] = Field(default_factory=dict)


class ImportSummary(BaseModel):
    """Result of a completed (or dry-run) import."""

    course_id: str | None = None
    framework_version: str
    dry_run: bool = False
    content: dict[str, int] = Field(default_factory=dict)
    assets: int = 0
    plugins_installed: list[str] = Field(default_factory=list)
    plugins_updated: list[str] = Field(default_factory=list)
    status_report: StatusReport = Field(default_factory=StatusReport, alias="statusReport")

    model_config = ConfigDict(populate_by_name=True)
