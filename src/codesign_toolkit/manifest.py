"""Manifest construction over an extracted container tree."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path

from codesign_toolkit.models import FileEntry, Manifest

SIGNATURE_DIR = "META-INF/AIR/signatures/"


def _sha256_file(file_path: Path) -> str:
    """Return the hex-encoded SHA-256 digest of *file_path*."""
    hasher = hashlib.sha256()
    with file_path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ManifestBuilder:
    """Hash every member of a tree into a :class:`Manifest`.

    Members whose relative path starts with one of *excluded_prefixes* are
    skipped; by default that is the AIR signature area.
    """

    def __init__(self, excluded_prefixes: Iterable[str] = (SIGNATURE_DIR,)) -> None:
        self._excluded = tuple(excluded_prefixes)

    def is_excluded(self, relative: str) -> bool:
        return relative.startswith(self._excluded)

    def build(self, root: str | Path) -> Manifest:
        """Walk *root* recursively and build the manifest.

        Entries are ordered by their POSIX relative path compared as plain
        strings, so the result does not depend on directory iteration order
        or on the host's path separator.
        """
        root = Path(root)
        if not root.is_dir():
            raise ValueError(f"manifest root is not a directory: {root}")

        entries: list[FileEntry] = []
        for file_path in root.rglob("*"):
            if not file_path.is_file():
                continue
            relative = file_path.relative_to(root).as_posix()
            if self.is_excluded(relative):
                continue
            entries.append(
                FileEntry(
                    path=relative,
                    size_bytes=file_path.stat().st_size,
                    sha256_hash=_sha256_file(file_path),
                )
            )

        entries.sort(key=lambda entry: entry.path)
        return Manifest(files=entries)


__all__ = ["SIGNATURE_DIR", "ManifestBuilder"]
