"""
Plugin Dependency Resolver

Computes the closure of plugins a course needs and decides, per plugin,
whether the installed copy is kept, a bundled copy installed, or the installed
copy updated. Nothing is mutated here; callers act on the Resolution.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from courseport.exceptions import CourseportError, IncompatibleDependencyError, MissingDependencyError
from courseport.schemas.package import PluginDescriptor
from courseport.utils.versions import is_newer, satisfies

logger = logging.getLogger(__name__)

# Dependent name used for ranges requested directly by the caller
ROOT = "<course>"

SATISFIED = "satisfied"
INSTALL = "install"
UPDATE = "update"
BLOCKED = "blocked"


@dataclass
class Resolution:
    """Plugins partitioned by the action needed to satisfy every constraint."""

    satisfied: list[PluginDescriptor] = field(default_factory=list)
    needs_install: list[PluginDescriptor] = field(default_factory=list)
    needs_update: list[PluginDescriptor] = field(default_factory=list)
    blocked: list[PluginDescriptor] = field(default_factory=list)
    errors: list[CourseportError] = field(default_factory=list)

    @property
    def plugins(self) -> list[PluginDescriptor]:
        """Every plugin the course will run with, sorted by name."""
        chosen = self.satisfied + self.needs_install + self.needs_update + self.blocked
        return sorted(chosen, key=lambda p: p.name)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self.plugins]


@dataclass
class _Decision:
    action: str
    plugin: PluginDescriptor


class DependencyResolver:
    """
    Resolve plugin requirements against installed and available plugins.

    Args:
        installed: Registry plugins keyed by name
        available: Installable candidates keyed by name (e.g. bundled in a package)
        allow_install: Whether plugins absent from the registry may be installed
        allow_update: Whether installed plugins may be replaced by newer candidates
    """

    def __init__(
        self,
        installed: Mapping[str, PluginDescriptor],
        available: Mapping[str, PluginDescriptor] | None = None,
        allow_install: bool = False,
        allow_update: bool = False,
    ):
        self.installed = dict(installed)
        self.available = dict(available or {})
        self.allow_install = allow_install
        self.allow_update = allow_update

    @classmethod
    def from_lists(
        cls,
        installed: Iterable[PluginDescriptor],
        available: Iterable[PluginDescriptor] = (),
        **kwargs,
    ) -> DependencyResolver:
        return cls({p.name: p for p in installed}, {p.name: p for p in available}, **kwargs)

    def resolve(self, required: Mapping[str, str | None] | Iterable[str], strict: bool = True) -> Resolution:
        """
        Resolve the dependency closure of the required plugins.

        Args:
            required: Plugin names, or names mapped to version ranges
            strict: Raise the first error instead of collecting it on the result

        Raises:
            MissingDependencyError: a plugin is unknown or may not be installed
            IncompatibleDependencyError: no available version satisfies every range
        """
        if not isinstance(required, Mapping):
            required = {name: None for name in required}

        # constraints[name][dependent] = range requested by that dependent
        constraints: dict[str, dict[str, str | None]] = {}
        decisions: dict[str, _Decision] = {}
        failures: dict[str, CourseportError] = {}
        # Decisions are memoised per (name, constraint set); each evaluation is
        # a pure function of those, so revisits reuse the earlier outcome.
        memo: dict[tuple, _Decision | CourseportError] = {}
        budget = 64 * (len(self.installed) + len(self.available) + len(required) + 1)
        queue: deque[str] = deque()

        def add_constraint(name: str, dependent: str, version_range: str | None) -> None:
            constraints.setdefault(name, {})[dependent] = version_range
            queue.append(name)

        def drop_constraints_from(dependent: str) -> None:
            for name, by_dependent in constraints.items():
                if dependent in by_dependent:
                    del by_dependent[dependent]
                    queue.append(name)

        for name in sorted(required):
            add_constraint(name, ROOT, required[name])

        while queue:
            name = queue.popleft()
            budget -= 1
            if budget < 0:
                raise IncompatibleDependencyError(name, "?", "unresolvable constraint cycle")
            ranges = constraints.get(name, {})
            key = (name, tuple(sorted(ranges.items(), key=lambda kv: kv[0])))

            previous = decisions.get(name)
            if not ranges:
                # No longer required by anything
                decisions.pop(name, None)
                failures.pop(name, None)
                if previous is not None:
                    drop_constraints_from(name)
                continue
            if key not in memo:
                try:
                    memo[key] = self._decide(name, ranges)
                except (MissingDependencyError, IncompatibleDependencyError) as e:
                    memo[key] = e
            decision = memo[key]
            if isinstance(decision, CourseportError):
                failures[name] = decision
                decisions.pop(name, None)
                if previous is not None:
                    drop_constraints_from(name)
                continue
            failures.pop(name, None)
            decisions[name] = decision

            if previous is not None and previous.plugin.version == decision.plugin.version:
                continue
            if previous is not None:
                drop_constraints_from(name)
            for dependency, version_range in sorted(decision.plugin.dependencies.items()):
                add_constraint(dependency, name, version_range)

        resolution = Resolution()
        for name in sorted(decisions):
            decision = decisions[name]
            {
                SATISFIED: resolution.satisfied,
                INSTALL: resolution.needs_install,
                UPDATE: resolution.needs_update,
                BLOCKED: resolution.blocked,
            }[decision.action].append(decision.plugin)
        resolution.errors = [failures[name] for name in sorted(failures)]

        if strict and resolution.errors:
            raise resolution.errors[0]
        logger.debug(
            "Resolved plugins: %d satisfied, %d to install, %d to update, %d blocked, %d errors",
            len(resolution.satisfied),
            len(resolution.needs_install),
            len(resolution.needs_update),
            len(resolution.blocked),
            len(resolution.errors),
        )
        return resolution

    def _decide(self, name: str, ranges: Mapping[str, str | None]) -> _Decision:
        installed = self.installed.get(name)
        candidate = self.available.get(name)
        dependent = next((d for d in sorted(ranges) if d != ROOT), None)

        if installed is None and candidate is None:
            raise MissingDependencyError(name, required_by=dependent, reason="plugin is not available")
        if installed is None:
            if not self.allow_install:
                raise MissingDependencyError(name, required_by=dependent, reason="plugin installation is disabled")
            self._check(candidate, ranges)
            return _Decision(INSTALL, candidate)

        if (
            candidate is not None
            and self.allow_update
            and is_newer(candidate.version, installed.version)
            and self._satisfies_all(candidate, ranges)
        ):
            if installed.managed_externally:
                self._check(installed, ranges)
                return _Decision(BLOCKED, installed)
            return _Decision(UPDATE, candidate.model_copy(update={"id": installed.id}))

        self._check(installed, ranges)
        return _Decision(SATISFIED, installed)

    @staticmethod
    def _satisfies_all(plugin: PluginDescriptor, ranges: Mapping[str, str | None]) -> bool:
        return all(satisfies(plugin.version, r) for r in ranges.values())

    @staticmethod
    def _check(plugin: PluginDescriptor, ranges: Mapping[str, str | None]) -> None:
        for dependent in sorted(ranges):
            version_range = ranges[dependent]
            if not satisfies(plugin.version, version_range):
                raise IncompatibleDependencyError(
                    plugin.name,
                    plugin.version,
                    version_range,
                    required_by=None if dependent == ROOT else dependent,
                )
