"""Framework builds: plans, streamed execution, excerpts, artifacts."""

from .artifacts import publish_artifacts, version_output_dir
from .excerpt import extract_error_excerpt, is_error_line
from .frameworks import BuildPlan, new_build_suffix
from .runner import BuildHandle, BuildPipelineRunner

__all__ = [
    "BuildHandle",
    "BuildPipelineRunner",
    "BuildPlan",
    "extract_error_excerpt",
    "is_error_line",
    "new_build_suffix",
    "publish_artifacts",
    "version_output_dir",
]
