# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Content cache - content-addressed staging of script assets.

An asset is staged at ``<root>/<asset name>/<content hash>/<stem><ext>``.
Identical content always lands on the same path, so staging is idempotent
under retries, and concurrent runs staging the same text race harmlessly
while runs staging different text never share a path.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from converge.assets import ContentProvider, asset_name
from converge.errors import AssetNotFound, StagingFailed

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    """SHA-1 of the UTF-8 text, upper-case hex."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest().upper()


def default_staging_root() -> Path:
    return Path(tempfile.gettempdir()) / "converge"


class ContentCache:
    """Stages asset content to deterministic paths on the execution target."""

    def __init__(self, staging_root: Optional[Union[str, Path]] = None):
        self.staging_root = Path(staging_root) if staging_root else default_staging_root()
        self.writes = 0

    def path_for(self, reference: str, text: str, extension: Optional[str] = None) -> Path:
        """Compute the staged path for ``text`` without touching the disk."""
        name = Path(asset_name(reference).replace("\\", "/"))
        suffix = extension if extension is not None else name.suffix
        return self.staging_root / name.name / content_hash(text) / f"{name.stem}{suffix}"

    def materialize(
        self,
        reference: str,
        provider: ContentProvider,
        extension: Optional[str] = None,
    ) -> Path:
        """Resolve an asset and stage its content.

        Args:
            reference: Asset reference (``raft::name`` or ``name``).
            provider: Resolves the reference to text.
            extension: File extension for the staged file; defaults to the
                asset's own extension.

        Returns:
            Path of the staged file.

        Raises:
            StagingFailed: If the asset cannot be resolved or written.
        """
        try:
            text = provider.resolve(reference)
        except AssetNotFound as e:
            raise StagingFailed(f"could not resolve asset '{reference}': {e}") from e

        path = self.path_for(reference, text, extension)
        if self._already_staged(path, text):
            logger.debug(f"Asset '{reference}' already staged at {path}")
            return path

        logger.debug(f"Staging asset '{reference}' to {path}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write(path, text)
        except OSError as e:
            raise StagingFailed(f"could not stage asset '{reference}' to {path}: {e}") from e
        return path

    def _already_staged(self, path: Path, text: str) -> bool:
        try:
            return path.read_bytes() == text.encode("utf-8")
        except OSError:
            return False

    def _write(self, path: Path, text: str) -> None:
        # Readers only ever see a complete file.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".staging-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(text.encode("utf-8"))
            os.replace(tmp_name, path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        self.writes += 1
