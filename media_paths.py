#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""Input path validation and media file discovery."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

__all__: Final[list[str]] = [
    "DiscoveryError",
    "IMAGE_EXTENSIONS",
    "PathSelection",
    "PathValidationError",
    "VIDEO_EXTENSIONS",
    "collect_media",
    "discover_media",
    "parse_multiple_files",
    "validate_multiple_paths",
    "validate_path",
]

IMAGE_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {".jpg", ".jpeg", ".png", ".gif", ".tiff", ".tif", ".bmp"}
)

VIDEO_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {".mp4", ".mov", ".avi", ".mkv", ".wmv", ".flv", ".webm", ".m4v", ".mpg", ".mpeg"}
)

# Shell-escaped characters produced by terminal drag and drop
_UNESCAPED_SPACE: Final[re.Pattern[str]] = re.compile(r"(?<!\\) ")
_ESCAPE: Final[re.Pattern[str]] = re.compile(r"\\([ ()])")
_EDGE_QUOTES: Final[re.Pattern[str]] = re.compile(r"^['\"]|['\"]$")


class PathValidationError(ValueError):
    """Raised when a user-supplied path is rejected."""


class DiscoveryError(Exception):
    """Raised when a directory cannot be scanned."""


# ═══════════════════════════════════════════════════════════════════
#                        VALIDATION
# ═══════════════════════════════════════════════════════════════════


def validate_path(raw: str) -> Path:
    """Clean a typed or pasted path and return it as an absolute path.

    Surrounding whitespace and one pair of quotes are removed. Anything
    containing ".." or "~" is refused before resolution.

    Raises:
        PathValidationError: On a path traversal pattern.
    """
    clean = _EDGE_QUOTES.sub("", raw.strip())
    if ".." in clean or "~" in clean:
        raise PathValidationError("Invalid path: Path traversal detected")
    return Path(clean).resolve()


def parse_multiple_files(raw: str) -> list[str]:
    """Split drag-and-drop input on unescaped spaces.

    "a\\ b.png c\\(1\\).jpg" -> ["a b.png", "c(1).jpg"]
    """
    parts = _UNESCAPED_SPACE.split(raw)
    return [_ESCAPE.sub(r"\1", p) for p in parts if p.strip()]


@dataclass(frozen=True, slots=True, kw_only=True)
class PathSelection:
    """Paths picked at the input prompt."""

    is_multiple: bool
    valid_paths: tuple[Path, ...] = field(default_factory=tuple)
    invalid_paths: tuple[str, ...] = field(default_factory=tuple)

    @property
    def all_exist(self) -> bool:
        return not self.invalid_paths and bool(self.valid_paths)

    @property
    def root(self) -> Path | None:
        """The single input directory, if the selection mirrors one."""
        if self.is_multiple or not self.valid_paths:
            return None
        path = self.valid_paths[0]
        return path if path.is_dir() else None


def validate_multiple_paths(raw: str) -> PathSelection:
    """Interpret prompt input as one path or several drag-and-dropped ones.

    Raises:
        PathValidationError: If a single path fails validation.
    """
    tokens = parse_multiple_files(raw)

    if len(tokens) > 1:
        # A typed path with plain spaces is still one path if it exists
        try:
            whole = validate_path(raw)
        except PathValidationError:
            whole = None
        if whole is not None and whole.exists():
            return PathSelection(is_multiple=False, valid_paths=(whole,))

    if len(tokens) <= 1:
        single = validate_path(tokens[0] if tokens else raw)
        if single.exists():
            return PathSelection(is_multiple=False, valid_paths=(single,))
        return PathSelection(is_multiple=False, invalid_paths=(str(single),))

    valid: list[Path] = []
    invalid: list[str] = []
    for token in tokens:
        try:
            path = validate_path(token)
        except PathValidationError:
            invalid.append(token)
            continue
        if path.exists():
            valid.append(path)
        else:
            invalid.append(str(path))

    return PathSelection(
        is_multiple=True,
        valid_paths=tuple(valid),
        invalid_paths=tuple(invalid),
    )


# ═══════════════════════════════════════════════════════════════════
#                        DISCOVERY
# ═══════════════════════════════════════════════════════════════════


def _raise_discovery_error(error: OSError) -> None:
    raise DiscoveryError(f"Cannot read directory {error.filename}: {error.strerror}") from error


def discover_media(
    root: Path,
    extensions: frozenset[str],
    ignore_dir: Path | None = None,
) -> tuple[Path, ...]:
    """Recursively find files under root whose suffix is in extensions.

    A root that is itself a matching file yields just that file. ignore_dir
    (typically the output directory) is never descended into.

    Raises:
        DiscoveryError: If a directory cannot be read.
    """
    if root.is_file():
        return (root,) if root.suffix.lower() in extensions else ()

    ignore = ignore_dir.resolve() if ignore_dir else None
    found: list[Path] = []
    for current, dirs, files in os.walk(root, onerror=_raise_discovery_error):
        current_path = Path(current)
        if ignore is not None:
            dirs[:] = [d for d in dirs if (current_path / d).resolve() != ignore]
        dirs.sort()
        for name in sorted(files):
            path = current_path / name
            if path.suffix.lower() in extensions and path.is_file():
                found.append(path)
    return tuple(found)


def collect_media(
    paths: Iterable[Path],
    extensions: frozenset[str],
    ignore_dir: Path | None = None,
) -> tuple[Path, ...]:
    """Discover media across several selected files and directories."""
    found: dict[Path, None] = {}
    for path in paths:
        for media in discover_media(path, extensions, ignore_dir):
            found.setdefault(media)
    return tuple(found)
