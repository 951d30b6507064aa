"""
Version range helpers.

Plugin manifests declare npm-style ranges ("^5.2.0", "~1.1", "2.x",
">=1.0.0 <3", "1.0.0 - 2.0.0", "^2 || ^3"). These are translated into
packaging specifier sets so comparisons follow PEP 440 ordering.
"""

import re
from functools import lru_cache

from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version

_WILDCARDS = {"", "*", "x", "X", "latest"}
_COMPARATOR = re.compile(r"^(<=|>=|<|>|=|\^|~)?\s*v?(.*)$")


def parse_version(value: str) -> Version:
    """Parse a semver string, tolerating a leading 'v'."""
    return Version(str(value).strip().lstrip("vV"))


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except InvalidVersion:
        return False
    return True


def major(value: str) -> int:
    return parse_version(value).major


def _partial(version: str) -> list[int] | None:
    """Split "1.2" / "1.x" into numeric parts, stopping at the first wildcard."""
    parts: list[int] = []
    for part in version.split(".")[:3]:
        if part in _WILDCARDS:
            break
        # Drop prerelease/build suffixes from the last part ("3-beta.1")
        digits = re.match(r"\d+", part)
        if not digits:
            return None
        parts.append(int(digits.group()))
    return parts


def _bump(parts: list[int], index: int) -> str:
    upper = parts[: index + 1]
    upper[index] += 1
    return ".".join(str(p) for p in upper + [0] * (3 - len(upper)))


def _full(parts: list[int]) -> str:
    return ".".join(str(p) for p in parts + [0] * (3 - len(parts)))


def _comparator_to_specifiers(token: str) -> list[str]:
    match = _COMPARATOR.match(token)
    operator, version = match.group(1) or "", match.group(2).strip()
    parts = _partial(version)
    if parts is None:
        raise InvalidVersion(f"Invalid version range component: '{token}'")
    if not parts:
        return []

    if operator == "^":
        # Allow changes that do not modify the left-most non-zero part
        index = next((i for i, p in enumerate(parts) if p != 0), len(parts) - 1)
        return [f">={version if len(parts) == 3 else _full(parts)}", f"<{_bump(parts, index)}"]
    if operator == "~":
        index = 1 if len(parts) > 1 else 0
        return [f">={version if len(parts) == 3 else _full(parts)}", f"<{_bump(parts, index)}"]
    if operator in ("", "="):
        if len(parts) == 3:
            return [f"=={version}"]
        return [f">={_full(parts)}", f"<{_bump(parts, len(parts) - 1)}"]
    if operator == ">" and len(parts) < 3:
        return [f">={_bump(parts, len(parts) - 1)}"]
    if operator == "<=" and len(parts) < 3:
        return [f"<{_bump(parts, len(parts) - 1)}"]
    return [f"{operator}{_full(parts)}"]


@lru_cache(maxsize=512)
def to_specifier_sets(version_range: str) -> tuple[SpecifierSet, ...]:
    """Translate an npm-style range into alternative specifier sets (OR-ed)."""
    alternatives = []
    for alternative in str(version_range).split("||"):
        alternative = alternative.strip()
        hyphen = re.match(r"^(\S+)\s+-\s+(\S+)$", alternative)
        if hyphen:
            specifiers = _comparator_to_specifiers(f">={hyphen.group(1)}") + _comparator_to_specifiers(
                f"<={hyphen.group(2)}"
            )
        else:
            # Join operators separated from their version ("> = 1.0" is not valid, ">= 1.0" is)
            alternative = re.sub(r"(<=|>=|<|>|=|\^|~)\s+", r"\1", alternative)
            specifiers = []
            for token in alternative.split():
                specifiers.extend(_comparator_to_specifiers(token))
        alternatives.append(SpecifierSet(",".join(specifiers)))
    return tuple(alternatives)


def satisfies(version: str, version_range: str | None) -> bool:
    """Return True if version falls within the npm-style range."""
    if version_range is None or str(version_range).strip() in _WILDCARDS:
        return True
    try:
        parsed = parse_version(version)
        alternatives = to_specifier_sets(version_range)
    except InvalidVersion:
        return False
    return any(spec.contains(parsed, prereleases=True) for spec in alternatives)


def is_newer(candidate: str, current: str) -> bool:
    try:
        return parse_version(candidate) > parse_version(current)
    except InvalidVersion:
        return False
