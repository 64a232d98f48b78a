"""Publish build artifacts into the versioned output folder."""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Sequence, Tuple

from ..errors import ArtifactCopyError

logger = logging.getLogger(__name__)


def version_output_dir(output_root: Path, project_name: str, version: int) -> Path:
    """<output>/<project>/v<version>"""
    return Path(output_root) / project_name / f"v{version}"


def publish_artifacts(artifacts: Sequence[Path], dest_dir: Path) -> List[Path]:
    """
    Copy artifacts (files or bundle directories) into a folder.

    Everything is first copied to hidden temp names inside dest_dir, then
    renamed over the final names, so a failed copy never leaves a partial
    artifact under its final name.

    Args:
        artifacts: Files or directories to copy
        dest_dir: Target folder (created if missing)

    Returns:
        Final artifact paths

    Raises:
        ArtifactCopyError: If any copy or rename fails
    """
    dest_dir = Path(dest_dir)
    staged: List[Tuple[Path, Path]] = []

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        for source in artifacts:
            source = Path(source)
            final = dest_dir / source.name
            temp = dest_dir / f".{source.name}.{uuid.uuid4().hex[:8]}.tmp"
            # Tracked before the copy starts so cleanup also sees a partial temp
            staged.append((temp, final))
            if source.is_dir():
                shutil.copytree(source, temp, symlinks=True)
            else:
                shutil.copy2(source, temp)

        published = []
        for temp, final in staged:
            _replace(temp, final)
            published.append(final)

    except OSError as e:
        for temp, _ in staged:
            _remove(temp)
        raise ArtifactCopyError(f"Failed to copy artifacts to {dest_dir}: {e}") from e

    logger.info(f"Published {len(published)} artifact(s) to {dest_dir}")
    return published


def _replace(temp: Path, final: Path) -> None:
    if not final.exists() and not final.is_symlink():
        os.replace(temp, final)
        return

    if final.is_dir() and not final.is_symlink():
        # rename() cannot replace a non-empty directory; move the old one aside
        old = final.with_name(f".{final.name}.{uuid.uuid4().hex[:8]}.old")
        os.replace(final, old)
        os.replace(temp, final)
        _remove(old)
        return

    if temp.is_dir():
        final.unlink()
    os.replace(temp, final)


def _remove(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
