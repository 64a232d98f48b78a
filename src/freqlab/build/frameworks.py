"""Render a framework's build plan for one project."""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from ..models.build_models import BuildStep, FrameworkBuildConfig
from ..models.project_models import Project

logger = logging.getLogger(__name__)


class _Placeholders(dict):
    """Leaves unknown placeholders untouched instead of raising."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def new_build_suffix() -> str:
    """Unique-per-build token used to rename native classes for hot reload."""
    return str(int(time.time() * 1000) % 100_000_000)


def render(template: str, values: Dict[str, str]) -> str:
    """
    Substitute {placeholders} in a template.

    Args:
        template: Text with placeholders
        values: Placeholder values

    Returns:
        Rendered text
    """
    return template.format_map(_Placeholders(values))


class BuildPlan:
    """
    Concrete steps and artifact patterns for one build of one project.

    Placeholders: {project}, {package}, {build_suffix}, {config}.
    """

    def __init__(
        self,
        framework: FrameworkBuildConfig,
        project: Project,
        formats: Optional[List[str]] = None,
        configuration: str = "Release",
        build_suffix: Optional[str] = None,
    ):
        self.framework = framework
        self.project = project
        self.formats = [fmt.lower() for fmt in formats or []]
        self.build_suffix = build_suffix or new_build_suffix()
        self.values = {
            "project": project.name,
            "package": project.package_name,
            "build_suffix": self.build_suffix,
            "config": configuration,
        }

    @property
    def steps(self) -> List[BuildStep]:
        """Build steps with placeholders rendered."""
        return [
            BuildStep(
                label=step.label,
                command=render(step.command, self.values),
                arguments=[render(arg, self.values) for arg in step.arguments],
                env={key: render(value, self.values) for key, value in step.env.items()},
            )
            for step in self.framework.steps
        ]

    @property
    def clean_files(self) -> List[str]:
        return [render(path, self.values) for path in self.framework.clean_files]

    @property
    def preserve_dirs(self) -> List[str]:
        return list(self.framework.preserve_dirs)

    @property
    def artifact_patterns(self) -> List[str]:
        """Artifact globs for the requested (or default) formats."""
        patterns = self.framework.patterns_for(self.formats)
        return [render(pattern, self.values) for pattern in patterns]

    def find_artifacts(self, build_dir: Path) -> List[Path]:
        """
        Resolve artifact patterns inside a build directory.

        Matches nested inside another match (files within a bundle) are
        dropped, so each bundle is reported once.

        Args:
            build_dir: Directory the build ran in

        Returns:
            Sorted artifact paths
        """
        build_dir = Path(build_dir)
        matches = set()
        for pattern in self.artifact_patterns:
            matches.update(path for path in build_dir.glob(pattern) if path.exists())

        artifacts = sorted(matches)
        top_level = [
            path
            for path in artifacts
            if not any(other != path and other in path.parents for other in artifacts)
        ]
        logger.debug(f"Found {len(top_level)} artifact(s) for patterns {self.artifact_patterns}")
        return top_level
