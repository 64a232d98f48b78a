"""Project data models."""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

METADATA_PATH = ".freqlab/metadata.json"
DEFAULT_FRAMEWORK = "nih-plug"


class Project(BaseModel):
    """A user project: identity plus filesystem root."""

    id: str
    name: str
    root: Path
    framework_id: str = Field(default=DEFAULT_FRAMEWORK)

    @property
    def package_name(self) -> str:
        """Cargo package name (hyphens become underscores)."""
        return self.name.replace("-", "_")

    @classmethod
    def from_directory(
        cls,
        root: Path,
        project_id: Optional[str] = None,
    ) -> "Project":
        """
        Load a project from its directory.

        The framework is read from the project's metadata file when one
        exists; metadata is otherwise managed elsewhere.

        Args:
            root: Project directory
            project_id: Optional id (defaults to the directory name)

        Returns:
            Project
        """
        root = Path(root).resolve()
        framework_id = DEFAULT_FRAMEWORK
        name = root.name

        metadata_file = root / METADATA_PATH
        if metadata_file.exists():
            try:
                metadata = json.loads(metadata_file.read_text(encoding="utf-8"))
                framework_id = metadata.get("frameworkId") or DEFAULT_FRAMEWORK
                name = metadata.get("name") or name
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable metadata {metadata_file}: {e}")

        return cls(
            id=project_id or root.name,
            name=name,
            root=root,
            framework_id=framework_id,
        )
