"""Distribution of built versions: plugin folder installs and zip packages."""

from .distribution import (
    FORMAT_EXTENSIONS,
    available_formats,
    expand_home,
    package_plugins,
    publish_to_plugin_folders,
)

__all__ = [
    "FORMAT_EXTENSIONS",
    "available_formats",
    "expand_home",
    "package_plugins",
    "publish_to_plugin_folders",
]
