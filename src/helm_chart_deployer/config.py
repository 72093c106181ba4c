"""Configuration management for the helm-chart-deployer."""
from __future__ import annotations

import enum
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from .constants import (
    DEFAULT_BUILD_DIR,
    DEFAULT_CHART_SOURCE_ROOT,
    DEFAULT_CONFIG_PATHS,
    DEFAULT_HELM_BINARY,
    DEFAULT_REPO_NAME,
    DEFAULT_SETTINGS_PATHS,
    DEFAULT_TEMPLATE_OUTPUT,
    DEFAULT_TIMEOUT_SECONDS,
    HELM_OUTPUT_DIR,
)
from .types import ConfigurationError


class RepoType(enum.Enum):
    """Supported chart repository backends."""

    CHARTMUSEUM = "CHARTMUSEUM"
    ARTIFACTORY = "ARTIFACTORY"

    @classmethod
    def parse(cls, value: Any) -> "RepoType":
        if isinstance(value, RepoType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError as e:
            valid = ", ".join(member.value for member in cls)
            raise ConfigurationError(f"Unknown repo type '{value}'. Must be one of: {valid}") from e


@dataclass
class Repo:
    """A named chart repository."""

    url: Optional[str] = None
    name: str = DEFAULT_REPO_NAME
    type: RepoType = RepoType.CHARTMUSEUM
    server_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    pass_credentials: bool = False
    force_update: bool = True

    def validate(self) -> List[str]:
        """Return the list of configuration problems for this repo."""
        errors = []
        if not self.url:
            errors.append(f"Repo URL must be set (repo '{self.name}')")
        if self.server_id is not None:
            if self.username is not None:
                errors.append(f"Repo username must not be set when serverId is used (repo '{self.name}')")
            if self.password is not None:
                errors.append(f"Repo password must not be set when serverId is used (repo '{self.name}')")
        return errors


@dataclass
class Registry:
    """An OCI registry endpoint."""

    url: Optional[str] = None
    server_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def validate(self) -> List[str]:
        """Return the list of configuration problems for this registry."""
        errors = []
        if not self.url:
            errors.append("Registry URL must be set")
        if self.server_id is not None:
            if self.username is not None:
                errors.append(f"Registry username may not be set when serverId is used ({self.url})")
            if self.password is not None:
                errors.append(f"Registry password may not be set when serverId is used ({self.url})")
        else:
            if self.username is None:
                errors.append(f"Please specify either username or serverId ({self.url})")
            if self.password is None:
                errors.append(f"Please specify either password or serverId ({self.url})")
        return errors


@dataclass
class Server:
    """Credentials stored in the settings file, referenced by id."""

    id: str
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class ProjectConfig:
    """Build metadata of the project that owns the charts."""

    artifact_id: str
    version: str
    base_dir: str = "."
    build_dir: str = DEFAULT_BUILD_DIR
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def base_path(self) -> Path:
        return Path(self.base_dir).expanduser()

    @property
    def build_path(self) -> Path:
        path = Path(self.build_dir).expanduser()
        return path if path.is_absolute() else self.base_path / path

    @property
    def helm_target_path(self) -> Path:
        """Directory holding processed charts and packaged archives."""
        return self.build_path / HELM_OUTPUT_DIR


@dataclass
class ChartConfig:
    """One chart, i.e. one participating build unit."""

    name: Optional[str] = None
    version: Optional[str] = None
    folder: Optional[str] = None

    def resolved(self, project: ProjectConfig) -> "ChartConfig":
        """Fill unset fields from the project metadata."""
        name = self.name or project.artifact_id
        return ChartConfig(
            name=name,
            version=self.version or project.version,
            folder=self.folder or f"{DEFAULT_CHART_SOURCE_ROOT}/{name}",
        )


@dataclass
class SubstitutionConfig:
    """Placeholder substitution settings."""

    exclusions: List[str] = field(default_factory=list)


@dataclass
class DeployConfig:
    """Settings for the deploy goal."""

    repo_name: Optional[str] = None
    registry_url: Optional[str] = None
    skip_snapshots: bool = True
    deploy_at_end: bool = False
    skip: bool = False


@dataclass
class HelmConfig:
    """Settings for helm invocations."""

    binary: str = DEFAULT_HELM_BINARY
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    strict_lint: bool = False
    values_files: List[str] = field(default_factory=list)
    template_output: Optional[str] = None
    skip: bool = False

    def template_output_path(self, project: ProjectConfig) -> Path:
        if not self.template_output:
            return project.build_path / DEFAULT_TEMPLATE_OUTPUT
        path = Path(self.template_output).expanduser()
        return path if path.is_absolute() else project.base_path / path


@dataclass
class PluginConfig:
    """Complete configuration for all goals."""

    project: ProjectConfig
    charts: List[ChartConfig] = field(default_factory=list)
    repos: List[Repo] = field(default_factory=list)
    registries: List[Registry] = field(default_factory=list)
    servers: List[Server] = field(default_factory=list)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    substitution: SubstitutionConfig = field(default_factory=SubstitutionConfig)
    helm: HelmConfig = field(default_factory=HelmConfig)
    system_properties: Dict[str, str] = field(default_factory=dict)

    def resolved_charts(self) -> List[ChartConfig]:
        """Charts with defaults applied; a project without charts has one implicit chart."""
        charts = self.charts or [ChartConfig()]
        return [chart.resolved(self.project) for chart in charts]


def validate_repos(repos: Sequence[Repo]) -> List[str]:
    """Validate every repo and require unique names."""
    errors = []
    for repo in repos:
        errors.extend(repo.validate())
    for name, count in Counter(repo.name for repo in repos).items():
        if count > 1:
            errors.append(f"Multiple repos found with name '{name}'")
    return errors


def validate_registries(registries: Sequence[Registry]) -> List[str]:
    errors = []
    for registry in registries:
        errors.extend(registry.validate())
    return errors


class ConfigValidator:
    """Validates configuration settings."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def validate_plugin_config(self, config: PluginConfig) -> List[str]:
        """
        Validate the full configuration.

        Args:
            config: Configuration to validate

        Returns:
            List of validation error messages
        """
        errors = []

        if not config.project.artifact_id:
            errors.append("Project artifact_id is required")
        if not config.project.version:
            errors.append("Project version is required")

        errors.extend(validate_repos(config.repos))
        errors.extend(validate_registries(config.registries))

        if config.deploy.repo_name and config.deploy.registry_url:
            errors.append("Only one of repo name or registry URL may be specified")

        if config.helm.timeout <= 0:
            errors.append("Helm timeout must be positive")

        server_ids = [server.id for server in config.servers]
        duplicates = sorted(sid for sid, count in Counter(server_ids).items() if count > 1)
        if duplicates:
            errors.append(f"Duplicate server ids: {', '.join(duplicates)}")

        chart_names = [chart.name for chart in config.resolved_charts()]
        duplicate_charts = sorted(name for name, count in Counter(chart_names).items() if count > 1)
        if duplicate_charts:
            errors.append(f"Duplicate chart names: {', '.join(duplicate_charts)}")

        if errors:
            self.logger.warning("Configuration validation failed: %s", "; ".join(errors))

        return errors

    def ensure_valid(self, config: PluginConfig) -> None:
        """Raise ConfigurationError when the configuration has problems."""
        errors = self.validate_plugin_config(config)
        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors), errors)


class ConfigLoader:
    """Loads configuration from the project file and the settings file."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def load_config(
        self,
        config_file: Optional[str] = None,
        settings_file: Optional[str] = None,
    ) -> PluginConfig:
        """
        Load the project configuration and merge server settings.

        Args:
            config_file: Specific project file; default locations are searched otherwise
            settings_file: Specific settings file holding server credentials

        Returns:
            Parsed plugin configuration

        Raises:
            ConfigurationError: If no project file is found or it cannot be parsed
        """
        config_path = self._find_file(config_file, DEFAULT_CONFIG_PATHS)
        if config_path is None:
            searched = config_file or ", ".join(DEFAULT_CONFIG_PATHS)
            raise ConfigurationError(f"No project configuration found (searched: {searched})")

        data = self._parse_config_file(config_path)
        config = self.from_dict(data, base_dir=config_path.parent)

        settings_path = self._find_file(settings_file, DEFAULT_SETTINGS_PATHS)
        if settings_path is not None:
            settings = self._parse_config_file(settings_path)
            config.servers.extend(self._parse_servers(settings.get("servers")))
        elif settings_file:
            raise ConfigurationError(f"Settings file not found: {settings_file}")

        return config

    def from_dict(self, data: Dict[str, Any], base_dir: Optional[Path] = None) -> PluginConfig:
        """Build a PluginConfig from already parsed YAML data."""
        project_data = data.get("project")
        if not isinstance(project_data, dict):
            raise ConfigurationError("Configuration must contain a 'project' section")

        project = ProjectConfig(
            artifact_id=str(project_data.get("artifact_id", "")),
            version=str(project_data.get("version", "")),
            base_dir=str(project_data.get("base_dir", ".")),
            build_dir=str(project_data.get("build_dir", DEFAULT_BUILD_DIR)),
            properties=self._string_map(project_data.get("properties"), "project.properties"),
        )
        if base_dir is not None and not Path(project.base_dir).is_absolute():
            project.base_dir = str(base_dir / project.base_dir)

        return PluginConfig(
            project=project,
            charts=[self._parse_chart(item) for item in self._list(data.get("charts"), "charts")],
            repos=[self._parse_repo(item) for item in self._list(data.get("repos"), "repos")],
            registries=[self._parse_registry(item) for item in self._list(data.get("registries"), "registries")],
            servers=self._parse_servers(data.get("servers")),
            deploy=self._parse_deploy(data.get("deploy") or {}),
            substitution=SubstitutionConfig(
                exclusions=[str(p) for p in self._list((data.get("substitution") or {}).get("exclusions"), "exclusions")],
            ),
            helm=self._parse_helm(data.get("helm") or {}),
        )

    def _find_file(self, explicit: Optional[str], search_paths: Sequence[str]) -> Optional[Path]:
        if explicit:
            path = Path(explicit).expanduser()
            return path if path.exists() else None

        for path_str in search_paths:
            path = Path(path_str).expanduser()
            if path.exists():
                return path
        return None

    def _parse_config_file(self, path: Path) -> Dict[str, Any]:
        """Parse a YAML configuration file."""
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} does not contain a mapping")

        self.logger.info("Loaded configuration from: %s", path)
        return data

    def _parse_chart(self, item: Any) -> ChartConfig:
        if isinstance(item, str):
            return ChartConfig(name=item)
        item = self._mapping(item, "charts entry")
        return ChartConfig(
            name=self._optional_str(item.get("name")),
            version=self._optional_str(item.get("version")),
            folder=self._optional_str(item.get("folder")),
        )

    def _parse_repo(self, item: Any) -> Repo:
        item = self._mapping(item, "repos entry")
        return Repo(
            url=self._optional_str(item.get("url")),
            name=str(item.get("name", DEFAULT_REPO_NAME)),
            type=RepoType.parse(item.get("type", RepoType.CHARTMUSEUM.value)),
            server_id=self._optional_str(item.get("server_id")),
            username=self._optional_str(item.get("username")),
            password=self._optional_str(item.get("password")),
            pass_credentials=bool(item.get("pass_credentials", False)),
            force_update=bool(item.get("force_update", True)),
        )

    def _parse_registry(self, item: Any) -> Registry:
        item = self._mapping(item, "registries entry")
        return Registry(
            url=self._optional_str(item.get("url")),
            server_id=self._optional_str(item.get("server_id")),
            username=self._optional_str(item.get("username")),
            password=self._optional_str(item.get("password")),
        )

    def _parse_servers(self, items: Any) -> List[Server]:
        servers = []
        for item in self._list(items, "servers"):
            item = self._mapping(item, "servers entry")
            if not item.get("id"):
                raise ConfigurationError("Every server entry needs an 'id'")
            servers.append(Server(
                id=str(item["id"]),
                username=self._optional_str(item.get("username")),
                password=self._optional_str(item.get("password")),
            ))
        return servers

    def _parse_deploy(self, data: Any) -> DeployConfig:
        data = self._mapping(data, "deploy")
        return DeployConfig(
            repo_name=self._optional_str(data.get("repo_name")),
            registry_url=self._optional_str(data.get("registry_url")),
            skip_snapshots=bool(data.get("skip_snapshots", True)),
            deploy_at_end=bool(data.get("deploy_at_end", False)),
            skip=bool(data.get("skip", False)),
        )

    def _parse_helm(self, data: Any) -> HelmConfig:
        data = self._mapping(data, "helm")
        return HelmConfig(
            binary=str(data.get("binary", DEFAULT_HELM_BINARY)),
            timeout=int(data.get("timeout", DEFAULT_TIMEOUT_SECONDS)),
            strict_lint=bool(data.get("strict_lint", False)),
            values_files=[str(v) for v in self._list(data.get("values_files"), "values_files")],
            template_output=self._optional_str(data.get("template_output")),
            skip=bool(data.get("skip", False)),
        )

    @staticmethod
    def _list(value: Any, section: str) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ConfigurationError(f"'{section}' must be a list")
        return value

    @staticmethod
    def _mapping(value: Any, section: str) -> Dict[str, Any]:
        if not isinstance(value, dict):
            raise ConfigurationError(f"'{section}' must be a mapping")
        return value

    @staticmethod
    def _string_map(value: Any, section: str) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"'{section}' must be a mapping")
        return {str(k): "" if v is None else str(v) for k, v in value.items()}

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        return None if value is None else str(value)


def parse_property_overrides(definitions: Optional[Sequence[str]]) -> Dict[str, str]:
    """Convert repeated ``key=value`` command line definitions into a mapping."""
    overrides: Dict[str, str] = {}
    for definition in definitions or []:
        key, sep, value = definition.partition("=")
        if not key:
            raise ConfigurationError(f"Invalid property definition: '{definition}'")
        overrides[key] = value if sep else "true"
    return overrides
