# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Asset resolution.

Templates can point at script content indirectly through an asset
reference such as ``global::WebBaseline.ps1``. The part before ``::`` names
a raft (a folder of assets); the part after it is the asset name.
"""

import os
import re
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from converge.errors import AssetNotFound

# Asset names: letters, digits, dot, dash, underscore, optional sub-folders
NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+(/[A-Za-z0-9._-]+)*$")


class ContentProvider(Protocol):
    """Resolves an asset reference to its text."""

    def resolve(self, reference: str) -> str:
        ...


def split_reference(reference: str) -> Tuple[Optional[str], str]:
    """Split ``raft::name`` into (raft, name). Raft is None when absent."""
    if "::" in reference:
        raft, name = reference.split("::", 1)
        return (raft or None), name
    return None, reference


def asset_name(reference: str) -> str:
    """Return the asset name part of a reference."""
    return split_reference(reference)[1]


def validate_asset_name(name: str) -> None:
    """Validate an asset name before any filesystem access.

    Raises:
        AssetNotFound: If the name is empty or attempts path traversal.
    """
    if not name:
        raise AssetNotFound("asset name cannot be empty")
    if ".." in name.split("/"):
        raise AssetNotFound(f"path traversal not allowed in asset name: {name}")
    if "\\" in name or name.startswith("/"):
        raise AssetNotFound(f"asset name must be relative: {name}")
    if not NAME_PATTERN.match(name):
        raise AssetNotFound(f"invalid asset name: {name}")


def get_search_paths(extra: Optional[Sequence[str]] = None) -> List[Path]:
    """Get asset search paths in priority order.

    Order:
    1. $CONVERGE_ASSETS_DIR (if set)
    2. directories from configuration (``extra``)
    3. ~/.converge/assets/ (user-local, default)
    4. ./assets/ (repo-local)

    Returns:
        List of paths to search for assets.
    """
    paths = []

    env_dir = os.environ.get("CONVERGE_ASSETS_DIR")
    if env_dir:
        paths.append(Path(env_dir))

    for directory in extra or []:
        paths.append(Path(directory).expanduser())

    paths.append(Path("~/.converge/assets").expanduser())
    paths.append(Path("./assets"))

    return paths


class FileAssetProvider:
    """Resolves asset references from directories on the control host."""

    def __init__(self, search_paths: Optional[Sequence[Path]] = None):
        self.search_paths = list(search_paths) if search_paths is not None else get_search_paths()

    def find(self, reference: str) -> Path:
        """Locate the file backing ``reference``.

        Raises:
            AssetNotFound: If no search path contains the asset.
        """
        raft, name = split_reference(reference)
        validate_asset_name(name)
        if raft is not None:
            validate_asset_name(raft)

        for search_path in self.search_paths:
            base = Path(search_path).expanduser()
            if raft and raft.lower() != "global":
                base = base / raft
            candidate = base / name
            if candidate.is_file():
                return candidate

        searched = ", ".join(str(p) for p in self.search_paths)
        raise AssetNotFound(f"asset '{reference}' not found. Searched: {searched}")

    def resolve(self, reference: str) -> str:
        path = self.find(reference)
        try:
            return path.read_text(encoding="utf-8-sig")
        except OSError as e:
            raise AssetNotFound(f"asset '{reference}' could not be read: {e}")
