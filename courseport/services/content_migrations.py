"""
Content migrations applied to every imported item before validation.

Older packages carry field shapes the current schemas reject. Each transform
owns a small set of fields, leaves everything else alone, and is safe to run
on already-migrated data.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

THEME_SETTINGS = ("_backgroundImage", "_backgroundStyles", "_minimumHeights")


@dataclass
class MigrationContext:
    """Shared data for one import run."""

    # Public component key or plugin name -> plugin name
    component_names: dict[str, str] = field(default_factory=dict)


Migration = Callable[[dict[str, Any], MigrationContext], None]


def _strip_nulls(value: Any) -> Any:
    if isinstance(value, dict):
        for key in [k for k, v in value.items() if v is None]:
            del value[key]
        for nested in value.values():
            _strip_nulls(nested)
    elif isinstance(value, list):
        for nested in value:
            _strip_nulls(nested)
    return value


def remove_null_fields(item: dict[str, Any], context: MigrationContext) -> None:
    _strip_nulls(item)


def rename_component(item: dict[str, Any], context: MigrationContext) -> None:
    if item.get("_type") != "component":
        return
    component = item.get("_component")
    if component in context.component_names:
        item["_component"] = context.component_names[component]
    if item.get("_playerOptions") == "":
        del item["_playerOptions"]


def stringify_aria_levels(item: dict[str, Any], context: MigrationContext) -> None:
    if item.get("_type") != "config":
        return
    levels = (item.get("_accessibility") or {}).get("_ariaLevels")
    if isinstance(levels, dict):
        for key, value in levels.items():
            levels[key] = str(value)


def coerce_nav_order(item: dict[str, Any], context: MigrationContext) -> None:
    if item.get("_type") != "course":
        return
    progress = item.get("_globals", {}).get("_extensions", {}).get("_pageLevelProgress")
    if not isinstance(progress, dict) or "_navOrder" not in progress:
        return
    value = progress["_navOrder"]
    if isinstance(value, str):
        try:
            progress["_navOrder"] = int(value)
        except ValueError:
            try:
                progress["_navOrder"] = float(value)
            except ValueError:
                logger.warning("Dropping non-numeric _navOrder %r", value)
                del progress["_navOrder"]


def _prune_blank(settings: dict[str, Any]) -> None:
    for key in [k for k, v in settings.items() if v is None or v == ""]:
        del settings[key]


def prune_theme_settings(item: dict[str, Any], context: MigrationContext) -> None:
    vanilla = item.get("_vanilla")
    if not isinstance(vanilla, dict):
        return
    for settings in (vanilla, vanilla.get("_pageHeader")):
        if not isinstance(settings, dict):
            continue
        for key in THEME_SETTINGS:
            if isinstance(settings.get(key), dict):
                _prune_blank(settings[key])
            if key in settings and not settings[key]:
                del settings[key]
    if "_pageHeader" in vanilla and not vanilla["_pageHeader"]:
        del vanilla["_pageHeader"]
    if not vanilla:
        del item["_vanilla"]


def expand_graphic_src(item: dict[str, Any], context: MigrationContext) -> None:
    if item.get("_component") not in ("graphic", "hotgraphic", "adapt-contrib-graphic", "adapt-contrib-hotgraphic"):
        return
    graphic = item.get("_graphic")
    if not isinstance(graphic, dict) or not graphic.get("src"):
        return
    graphic.setdefault("large", graphic["src"])
    graphic.setdefault("small", graphic["src"])


# Order matters: null removal first so later transforms never see None values
CONTENT_MIGRATIONS: tuple[Migration, ...] = (
    remove_null_fields,
    rename_component,
    stringify_aria_levels,
    coerce_nav_order,
    prune_theme_settings,
    expand_graphic_src,
)


def run_migrations(item: dict[str, Any], context: MigrationContext | None = None) -> dict[str, Any]:
    """Return a migrated deep copy of item."""
    context = context or MigrationContext()
    migrated = copy.deepcopy(item)
    for migration in CONTENT_MIGRATIONS:
        migration(migrated, context)
    return migrated
