"""Zip helpers used by course builds and imports."""

import asyncio
import logging
import zipfile
from collections.abc import Iterable
from pathlib import Path

from courseport.exceptions import InvalidPackageError, PackageIOError

logger = logging.getLogger(__name__)


def _extract(archive: Path, destination: Path) -> Path:
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                target = (destination / member.filename).resolve()
                if target != root and root not in target.parents:
                    raise InvalidPackageError(f"Archive entry escapes the package: {member.filename}", path=str(archive))
            zf.extractall(destination)
    except zipfile.BadZipFile as e:
        raise InvalidPackageError(f"Not a valid zip archive: {archive.name}", path=str(archive)) from e
    return destination


async def extract_zip(archive: Path | str, destination: Path | str) -> Path:
    """Extract archive into destination, rejecting entries outside it."""
    return await asyncio.to_thread(_extract, Path(archive), Path(destination))


def _is_excluded(relative: Path, exclude: set[str]) -> bool:
    return any(part in exclude for part in relative.parts)


def _zip_directory(source: Path, archive: Path, exclude: set[str]) -> Path:
    archive.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source.rglob("*")):
                relative = path.relative_to(source)
                if _is_excluded(relative, exclude) or path.is_dir():
                    continue
                zf.write(path, relative.as_posix())
    except OSError as e:
        raise PackageIOError(f"Failed to write archive: {e}", path=str(archive)) from e
    return archive


async def zip_directory(source: Path | str, archive: Path | str, exclude: Iterable[str] = ()) -> Path:
    """Zip the contents of source (not source itself) into archive."""
    archive = await asyncio.to_thread(_zip_directory, Path(source), Path(archive), set(exclude))
    logger.debug(f"Wrote archive {archive}")
    return archive
