"""ZIP extraction and atomic repackaging shared by the container handlers."""

from __future__ import annotations

import os
import shutil
import tempfile
import zipfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from codesign_toolkit.errors import InvalidContainer

MIMETYPE_PATH = "mimetype"


def _check_member_name(name: str) -> None:
    path = PurePosixPath(name)
    first = path.parts[0] if path.parts else ""
    if path.is_absolute() or ".." in path.parts or first.endswith(":"):
        raise InvalidContainer(f"unsafe member path in archive: {name}")


def extract_zip(archive_path: str | Path, destination: Path) -> None:
    """Extract *archive_path* into *destination*.

    Raises:
        InvalidContainer: if the file is not a ZIP archive or a member name
            would escape *destination*.
    """
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                _check_member_name(info.filename)
            archive.extractall(destination)
    except zipfile.BadZipFile as exc:
        raise InvalidContainer(f"not a ZIP archive: {archive_path}: {exc}") from exc


def tree_members(root: Path, subdir: str = "") -> list[str]:
    """POSIX paths of every file under ``root/subdir``, relative to *root*."""
    base = root / subdir if subdir else root
    return sorted(
        path.relative_to(root).as_posix() for path in base.rglob("*") if path.is_file()
    )


def write_zip(tree: Path, members: Iterable[str], output_path: str | Path) -> None:
    """Write *members* of *tree* to *output_path*.

    The archive is assembled in a temporary file beside *output_path* and
    renamed into place only once complete, so a failure never leaves a
    partial output.  A ``mimetype`` member is written first, uncompressed.
    """
    output = Path(output_path)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output.name}.", suffix=".tmp", dir=output.parent
    )
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        with zipfile.ZipFile(tmp, "w") as archive:
            ordered = list(members)
            if MIMETYPE_PATH in ordered:
                ordered.remove(MIMETYPE_PATH)
                archive.write(
                    tree / MIMETYPE_PATH, MIMETYPE_PATH, compress_type=zipfile.ZIP_STORED
                )
            for name in ordered:
                archive.write(tree / name, name, compress_type=zipfile.ZIP_DEFLATED)
        os.replace(tmp, output)
    finally:
        tmp.unlink(missing_ok=True)


def publish_file(source: str | Path, output_path: str | Path) -> None:
    """Copy *source* to *output_path* via a temporary file and an atomic rename."""
    output = Path(output_path)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output.name}.", suffix=".tmp", dir=output.parent
    )
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        shutil.copyfile(source, tmp)
        os.replace(tmp, output)
    finally:
        tmp.unlink(missing_ok=True)


@contextmanager
def staged_tree(output_path: str | Path) -> Iterator[Path]:
    """Yield a path beside *output_path* to build a directory at.

    When the block completes the staged directory replaces *output_path*,
    removing whatever was there.  If the block raises, *output_path* is
    left untouched.  The staging area is always removed.
    """
    output = Path(output_path)
    holder = Path(tempfile.mkdtemp(prefix=f".{output.name}.", dir=output.parent))
    try:
        staged = holder / output.name
        yield staged
        if output.is_dir() and not output.is_symlink():
            shutil.rmtree(output)
        elif output.exists() or output.is_symlink():
            output.unlink()
        os.replace(staged, output)
    finally:
        shutil.rmtree(holder, ignore_errors=True)


__all__ = [
    "MIMETYPE_PATH",
    "extract_zip",
    "publish_file",
    "staged_tree",
    "tree_members",
    "write_zip",
]
