"""Constants for chart layout, repository backends and placeholder handling."""
from __future__ import annotations

from typing import Final, FrozenSet

# File extensions eligible for ${...} substitution
SUBSTITUTED_EXTENSIONS: Final[FrozenSet[str]] = frozenset({"json", "tpl", "yml", "yaml"})

# Exclusion pattern schemes
GLOB_SCHEME: Final[str] = "glob"
REGEX_SCHEME: Final[str] = "regex"

SNAPSHOT_MARKER: Final[str] = "SNAPSHOT"

# Chart layout
HELM_OUTPUT_DIR: Final[str] = "helm"
DEFAULT_BUILD_DIR: Final[str] = "target"
DEFAULT_CHART_SOURCE_ROOT: Final[str] = "src/main/helm"
DEFAULT_TEMPLATE_OUTPUT: Final[str] = "test-classes/helm.yaml"
CHART_ARCHIVE_SUFFIX: Final[str] = ".tgz"

# Repositories
DEFAULT_REPO_NAME: Final[str] = "chartRepo"
CHARTMUSEUM_API_PATH: Final[str] = "api/charts"
OCI_SCHEME: Final[str] = "oci://"

# Helm invocation
DEFAULT_HELM_BINARY: Final[str] = "helm"
DEFAULT_TIMEOUT_SECONDS: Final[int] = 300

# Configuration file locations
DEFAULT_CONFIG_PATHS: Final[tuple] = (
    "./helm-deploy.yaml",
    "./.helm-deploy.yaml",
)
DEFAULT_SETTINGS_PATHS: Final[tuple] = (
    "~/.config/helm-chart-deployer/settings.yaml",
    "~/.helm-chart-deployer.yaml",
)

# Synthetic property names backed by project metadata
PROJECT_VERSION_PROPERTY: Final[str] = "project.version"
ARTIFACT_ID_PROPERTIES: Final[tuple] = ("artifactId", "project.artifactId", "project.name")

# Secret references understood by the default secret dispatcher
ENV_SECRET_PREFIX: Final[str] = "env:"
