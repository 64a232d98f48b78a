"""Orchestrator configuration with environment and YAML loading."""

import os
import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigError
from ..models.build_models import BuildStep, FrameworkBuildConfig

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = "FREQLAB_"

DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Write",
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "Bash",
]


def default_plugin_folders() -> Dict[str, Dict[str, str]]:
    """
    Plugin folders artifacts are installed into, per target and format.

    Empty or missing formats are skipped when installing.

    Returns:
        Mapping of target name to {format id: folder}
    """
    if sys.platform == "darwin":
        folders = {
            "vst3": "~/Library/Audio/Plug-Ins/VST3",
            "clap": "~/Library/Audio/Plug-Ins/CLAP",
            "au": "~/Library/Audio/Plug-Ins/Components",
            "aax": "/Library/Application Support/Avid/Audio/Plug-Ins",
            "lv2": "~/Library/Audio/Plug-Ins/LV2",
            "standalone": "/Applications",
        }
    elif sys.platform == "win32":
        folders = {
            "vst3": "C:\\Program Files\\Common Files\\VST3",
            "clap": "C:\\Program Files\\Common Files\\CLAP",
            "aax": "C:\\Program Files\\Common Files\\Avid\\Audio\\Plug-Ins",
            "lv2": "C:\\Program Files\\Common Files\\LV2",
        }
    else:
        folders = {
            "vst3": "~/.vst3",
            "clap": "~/.clap",
            "lv2": "~/.lv2",
        }
    return {"default": folders}


def default_frameworks() -> Dict[str, FrameworkBuildConfig]:
    """
    Built-in build plans.

    Returns:
        Framework configs keyed by framework id
    """
    cmake_formats = {
        "vst3": ["build/*_artefacts/{config}/**/*.vst3"],
        "au": ["build/*_artefacts/{config}/**/*.component"],
        "clap": ["build/*_artefacts/{config}/**/*.clap"],
        "standalone": ["build/*_artefacts/{config}/**/*.app"],
    }

    return {
        "nih-plug": FrameworkBuildConfig(
            id="nih-plug",
            name="NIH-plug",
            build_system="cargo",
            steps=[
                BuildStep(
                    label="Cargo Bundle",
                    command="cargo",
                    arguments=["xtask", "bundle", "{package}", "--release"],
                    env={"WRY_BUILD_SUFFIX": "{build_suffix}"},
                ),
            ],
            preserve_dirs=["target"],
            artifact_patterns={
                "vst3": ["target/bundled/{package}.vst3", "target/bundled/{project}.vst3"],
                "clap": ["target/bundled/{package}.clap", "target/bundled/{project}.clap"],
            },
            default_formats=["vst3", "clap"],
        ),
        "juce": FrameworkBuildConfig(
            id="juce",
            name="JUCE",
            build_system="cmake",
            steps=[
                BuildStep(
                    label="CMake Configure",
                    command="cmake",
                    arguments=["-B", "build", "-S", ".", "-DCMAKE_BUILD_TYPE={config}"],
                ),
                BuildStep(
                    label="CMake Build",
                    command="cmake",
                    arguments=["--build", "build", "--config", "{config}"],
                ),
            ],
            clean_files=["build/CMakeCache.txt"],
            preserve_dirs=["build"],
            artifact_patterns=cmake_formats,
            default_formats=["vst3", "au"],
        ),
        "iplug2": FrameworkBuildConfig(
            id="iplug2",
            name="iPlug2",
            build_system="cmake",
            steps=[
                BuildStep(
                    label="CMake Configure",
                    command="cmake",
                    arguments=["-B", "build", "-S", ".", "-DCMAKE_BUILD_TYPE={config}"],
                    env={"IPLUG_BUILD_SUFFIX": "{build_suffix}"},
                ),
                BuildStep(
                    label="CMake Build",
                    command="cmake",
                    arguments=["--build", "build", "--config", "{config}"],
                ),
            ],
            clean_files=["build/CMakeCache.txt"],
            preserve_dirs=["build"],
            artifact_patterns=cmake_formats,
            default_formats=["vst3", "au"],
        ),
    }


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


class OrchestratorConfig(BaseModel):
    """Configuration for agent sessions, checkpoints and builds."""

    # Workspace layout
    workspace_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("FREQLAB_WORKSPACE", str(Path.home() / "Freqlab"))
        ),
        description="Root holding projects and the shared build workspace",
    )
    output_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.environ["FREQLAB_OUTPUT"]) if os.getenv("FREQLAB_OUTPUT") else None
        ),
        description="User-facing artifact folder (default: <workspace>/output)",
    )

    # Agent CLI
    agent_command: List[str] = Field(
        default_factory=lambda: os.getenv("FREQLAB_AGENT_COMMAND", "claude").split(),
        description="Agent executable plus any fixed leading arguments",
    )
    agent_model: Optional[str] = Field(
        default_factory=lambda: os.getenv("FREQLAB_AGENT_MODEL"),
    )
    allowed_tools: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    max_turns: int = Field(default=50, ge=1)
    system_prompt_append: Optional[str] = Field(default=None)
    turn_idle_timeout: Optional[float] = Field(
        default_factory=lambda: _optional_float("FREQLAB_TURN_IDLE_TIMEOUT"),
        description="Seconds without agent output before the turn is stopped",
    )

    # Process supervision
    grace_period_seconds: float = Field(default=5.0, gt=0)
    extra_path_dirs: List[str] = Field(default_factory=list)

    # Streaming
    channel_capacity: int = Field(default=1000, ge=1)

    # Checkpoints
    checkpoint_lock_timeout: float = Field(default=10.0, gt=0)
    checkpoint_retries: int = Field(default=3, ge=1)
    git_author_name: str = Field(default="freqlab")
    git_author_email: str = Field(default="freqlab@localhost")

    # Builds
    build_configuration: str = Field(default="Release")
    build_timeout: Optional[float] = Field(
        default_factory=lambda: _optional_float("FREQLAB_BUILD_TIMEOUT"),
    )
    build_log_max_lines: int = Field(default=5000, ge=10)
    excerpt_max_lines: int = Field(default=40, ge=1)
    default_framework: str = Field(default="nih-plug")
    frameworks: Dict[str, FrameworkBuildConfig] = Field(default_factory=default_frameworks)

    # Distribution
    plugin_folders: Dict[str, Dict[str, str]] = Field(
        default_factory=default_plugin_folders,
        description="Install targets: target name to {format id: plugin folder}",
    )
    agent_logs_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("FREQLAB_AGENT_LOGS_PATH", str(Path.home() / ".claude" / "projects"))
        ),
        description="Folder holding the agent's per-project session logs",
    )
    context_window: int = Field(default=200_000, ge=1)

    @property
    def resolved_output_path(self) -> Path:
        """Artifact folder, defaulting to <workspace>/output."""
        return self.output_path or self.workspace_path / "output"

    @property
    def build_root(self) -> Path:
        """Parent of every project's shared build workspace."""
        return self.workspace_path / ".build"

    def get_framework(self, framework_id: Optional[str]) -> FrameworkBuildConfig:
        """
        Look up a framework build plan.

        Args:
            framework_id: Framework identifier (None for the default)

        Returns:
            FrameworkBuildConfig

        Raises:
            ConfigError: If neither the framework nor the default exists
        """
        framework = self.frameworks.get(framework_id or self.default_framework)
        if framework is None:
            logger.warning(
                f"Unknown framework '{framework_id}', "
                f"falling back to '{self.default_framework}'"
            )
            framework = self.frameworks.get(self.default_framework)
        if framework is None:
            raise ConfigError(f"No build configuration for framework '{framework_id}'")
        return framework


def get_config_paths() -> List[Path]:
    """
    Get configuration file paths in priority order.

    Returns:
        List of paths, highest priority last
    """
    return [
        Path.home() / ".freqlab" / "config.yaml",
        Path.cwd() / ".freqlab" / "config.yaml",
    ]


def load_config(config_path: Optional[str] = None) -> OrchestratorConfig:
    """
    Load orchestrator configuration.

    Configuration is merged in this order (later overrides earlier):
    1. Default values (environment aware)
    2. Global config (~/.freqlab/config.yaml)
    3. Project config (./.freqlab/config.yaml)
    4. Explicit config_path if provided
    5. Environment variables (FREQLAB_*)

    Framework entries are merged per framework id, so a file may override a
    single built-in framework without restating the others.

    Args:
        config_path: Optional explicit config file path

    Returns:
        Merged OrchestratorConfig

    Raises:
        ConfigError: If an explicit file is missing or values are invalid
    """
    merged: Dict[str, Any] = {}
    frameworks: Dict[str, Any] = {
        key: value.model_dump() for key, value in default_frameworks().items()
    }

    paths = get_config_paths()
    if config_path:
        explicit = Path(config_path)
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        paths.append(explicit)

    for path in paths:
        if not path.exists():
            continue
        try:
            with open(path, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            continue

        # Only merge 'orchestrator' section if present, otherwise use whole file
        section = file_config.get("orchestrator", file_config)
        for framework_id, framework in (section.pop("frameworks", None) or {}).items():
            framework.setdefault("id", framework_id)
            frameworks[framework_id] = framework
        merged.update(section)
        logger.debug(f"Loaded config from {path}")

    merged.update(_get_env_overrides())
    merged["frameworks"] = frameworks

    try:
        return OrchestratorConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _get_env_overrides() -> Dict[str, Any]:
    """
    Get scalar overrides from environment variables.

    FREQLAB_MAX_TURNS=20 becomes max_turns=20. Only names matching a config
    field are picked up; list fields take comma separated values.

    Returns:
        Dictionary of overrides
    """
    overrides: Dict[str, Any] = {}
    fields = OrchestratorConfig.model_fields

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        config_key = key[len(ENV_PREFIX) :].lower()
        if config_key not in fields or config_key in ("frameworks", "plugin_folders"):
            continue

        if config_key in ("allowed_tools", "extra_path_dirs"):
            overrides[config_key] = [v.strip() for v in value.split(",") if v.strip()]
        elif config_key == "agent_command":
            overrides[config_key] = value.split()
        else:
            overrides[config_key] = value

    return overrides


def save_config(config: OrchestratorConfig, path: Optional[Path] = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save
        path: Target path (default: project config)
    """
    if path is None:
        path = Path.cwd() / ".freqlab" / "config.yaml"

    path.parent.mkdir(parents=True, exist_ok=True)

    existing: Dict[str, Any] = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            existing = yaml.safe_load(f) or {}

    existing["orchestrator"] = config.model_dump(mode="json", exclude_none=True)

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(existing, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved config to {path}")
