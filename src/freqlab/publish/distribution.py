"""Install and package the artifacts of a built version."""

import logging
import os
import subprocess
import sys
import uuid
import zipfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from ..build.artifacts import publish_artifacts, version_output_dir
from ..errors import ArtifactCopyError, PublishError
from ..models.publish_models import InstalledArtifact, PackageResult, PublishResult

logger = logging.getLogger(__name__)

# Format id -> bundle extension, in install order
FORMAT_EXTENSIONS: Dict[str, str] = {
    "vst3": "vst3",
    "clap": "clap",
    "au": "component",
    "standalone": "app",
    "auv3": "appex",
    "aax": "aaxplugin",
    "lv2": "lv2",
}


def expand_home(path: str) -> Path:
    """Expand a leading ~/ (or ~\\ as typed on Windows) to the home directory."""
    if path.startswith("~\\"):
        return Path.home() / path[2:]
    return Path(path).expanduser()


def find_artifact(folder: Path, extension: str) -> Optional[Path]:
    """
    First entry in a folder with the given extension.

    Names vary by framework (snake_case for nih-plug, PascalCase for JUCE),
    so artifacts are matched by extension only.
    """
    if not folder.is_dir():
        return None
    for entry in sorted(folder.iterdir()):
        if entry.suffix == f".{extension}" and not entry.name.startswith("."):
            return entry
    return None


def available_formats(output_root: Path, project_name: str, version: int) -> Dict[str, bool]:
    """
    Which formats a version has artifacts for.

    Args:
        output_root: User-facing output folder
        project_name: Project name
        version: Built version

    Returns:
        Format id -> artifact present
    """
    folder = version_output_dir(output_root, project_name, version)
    return {
        format_id: find_artifact(folder, extension) is not None
        for format_id, extension in FORMAT_EXTENSIONS.items()
    }


def _collect(
    output_root: Path,
    project_name: str,
    version: int,
    formats: Optional[Sequence[str]],
) -> Dict[str, Path]:
    folder = version_output_dir(output_root, project_name, version)
    bundles = {}
    for format_id, extension in FORMAT_EXTENSIONS.items():
        if formats and format_id not in formats:
            continue
        artifact = find_artifact(folder, extension)
        if artifact is not None:
            bundles[format_id] = artifact

    if not bundles:
        raise PublishError(
            f"No built plugins found for {project_name} v{version}. Build the project first."
        )
    return bundles


def publish_to_plugin_folders(
    output_root: Path,
    project_name: str,
    version: int,
    targets: Mapping[str, Mapping[str, str]],
    formats: Optional[Sequence[str]] = None,
) -> PublishResult:
    """
    Install a version's artifacts into plugin folders.

    Each artifact replaces any previous install atomically. A failure for
    one target or format is recorded and the rest continue.

    Args:
        output_root: User-facing output folder
        project_name: Project name
        version: Built version to install
        targets: Target name -> {format id: plugin folder}
        formats: Only install these format ids (default: all built)

    Returns:
        PublishResult

    Raises:
        PublishError: If the version has no artifacts to install
    """
    bundles = _collect(output_root, project_name, version, formats)
    result = PublishResult(version=version)

    for target, folders in targets.items():
        for format_id, bundle in bundles.items():
            folder = folders.get(format_id)
            if not folder:
                continue
            dest_dir = expand_home(folder)
            try:
                installed = publish_artifacts([bundle], dest_dir)[0]
            except ArtifactCopyError as e:
                logger.error(f"Installing {format_id} for {target} failed: {e}")
                result.errors.append(f"Failed to install {format_id} for {target}: {e}")
                continue
            _clear_quarantine(installed)
            result.copied.append(
                InstalledArtifact(format=format_id, target=target, path=str(installed))
            )

    logger.info(
        f"Installed {project_name} v{version}: "
        f"{len(result.copied)} copied, {len(result.errors)} failed"
    )
    return result


def package_plugins(
    output_root: Path,
    project_name: str,
    version: int,
    destination: Path,
    formats: Optional[Sequence[str]] = None,
) -> PackageResult:
    """
    Zip a version's artifacts for distribution.

    Bundles keep their own name as the root folder inside the archive.

    Args:
        output_root: User-facing output folder
        project_name: Project name
        version: Built version to package
        destination: Zip file path, or a folder to write <name>_v<version>.zip into
        formats: Only include these format ids (default: all built)

    Returns:
        PackageResult

    Raises:
        PublishError: If the version has no artifacts or the archive cannot be written
    """
    bundles = _collect(output_root, project_name, version, formats)

    destination = Path(destination)
    if destination.suffix != ".zip":
        destination = destination / f"{project_name}_v{version}.zip"
    temp = destination.with_name(f".{destination.name}.{uuid.uuid4().hex[:8]}.tmp")

    included: List[str] = []
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(temp, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for bundle in bundles.values():
                _add_to_zip(archive, bundle)
                included.append(bundle.name)
        os.replace(temp, destination)
    except OSError as e:
        temp.unlink(missing_ok=True)
        raise PublishError(f"Failed to write package {destination}: {e}") from e

    logger.info(f"Packaged {', '.join(included)} into {destination}")
    return PackageResult(version=version, zip_path=str(destination), included=included)


def _add_to_zip(archive: zipfile.ZipFile, bundle: Path) -> None:
    if not bundle.is_dir():
        archive.write(bundle, bundle.name)
        return

    archive.write(bundle, bundle.name)
    for path in sorted(bundle.rglob("*")):
        arcname = f"{bundle.name}/{path.relative_to(bundle).as_posix()}"
        archive.write(path, arcname)


def _clear_quarantine(path: Path) -> None:
    # Gatekeeper blocks freshly copied bundles that still carry the quarantine flag
    if sys.platform != "darwin":
        return
    try:
        completed = subprocess.run(
            ["xattr", "-cr", str(path)], capture_output=True, text=True, check=False
        )
    except OSError as e:
        logger.warning(f"Could not run xattr on {path}: {e}")
        return
    if completed.returncode != 0:
        logger.warning(f"xattr -cr {path} failed: {completed.stderr.strip()}")
