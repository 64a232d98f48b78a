"""Configuration for the freqlab orchestrator."""

from .settings import (
    OrchestratorConfig,
    default_frameworks,
    default_plugin_folders,
    load_config,
    save_config,
)

__all__ = [
    "OrchestratorConfig",
    "default_frameworks",
    "default_plugin_folders",
    "load_config",
    "save_config",
]
