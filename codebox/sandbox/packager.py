"""
Source packager: turns source text into a transportable file bundle.
"""

from __future__ import annotations

import io
import tarfile
import time
from pathlib import Path, PurePosixPath

from ..core.exceptions import InternalExecutionError
from ..languages.registry import LanguageDescriptor

STDIN_FILENAME = ".stdin"

# The sandbox user is unprivileged, so the working directory and its files
# must be writable by anyone inside the container.
_DIR_MODE = 0o1777
_FILE_MODE = 0o666


def bundle_files(
    descriptor: LanguageDescriptor,
    source: str,
    stdin: str | None = None,
) -> list[tuple[str, str]]:
    """Return ``(filename, content)`` pairs for a bundle."""
    files = [(descriptor.source_filename, source)]
    files.extend(descriptor.scaffold)
    if stdin is not None:
        files.append((STDIN_FILENAME, stdin))

    for name, _ in files:
        _check_name(name)
    return files


def pack(descriptor: LanguageDescriptor, source: str, stdin: str | None = None) -> bytes:
    """Build an uncompressed tar archive rooted at the working directory."""
    buffer = io.BytesIO()
    now = int(time.time())
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        root = tarfile.TarInfo(".")
        root.type = tarfile.DIRTYPE
        root.mode = _DIR_MODE
        root.mtime = now
        archive.addfile(root)

        for name, content in bundle_files(descriptor, source, stdin):
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = _FILE_MODE
            info.mtime = now
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def write_bundle(
    descriptor: LanguageDescriptor,
    source: str,
    directory: Path,
    stdin: str | None = None,
) -> Path:
    """Write the bundle into ``directory`` and return the source file path."""
    for name, content in bundle_files(descriptor, source, stdin):
        (directory / name).write_text(content, encoding="utf-8")
    return directory / descriptor.source_filename


def _check_name(name: str) -> None:
    path = PurePosixPath(name)
    if path.is_absolute() or len(path.parts) != 1 or name in {".", ".."}:
        raise InternalExecutionError(f"refusing to package unsafe filename {name!r}")
