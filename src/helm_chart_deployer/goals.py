"""Goals that orchestrate substitution, helm invocations and publication."""
from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Mapping, Optional

import httpx

from .config import ChartConfig, ConfigValidator, PluginConfig
from .credentials import ServerAuthentication
from .deploy import (
    ChartDeployer,
    ChartIdentity,
    ChartPublisher,
    DeployAtEndBarrier,
    DeploymentRequestFactory,
    DeployResult,
)
from .helm import HelmClient
from .properties import PropertyResolver
from .substitution import PlaceholderSubstitutor
from .types import ChartPublishError, GoalExecutionError, HelmPluginError, SecretDispatcher, SubstitutionResult


class HelmGoal(ABC):
    """Shared plumbing for goals working on one chart."""

    goal_name = "helm"
    error_prefix = "Error running helm"

    def __init__(self, config: PluginConfig, chart: ChartConfig, helm: Optional[HelmClient] = None):
        self.config = config
        self.chart = chart.resolved(config.project)
        self.helm = helm or HelmClient(binary=config.helm.binary, timeout=config.helm.timeout)
        self.logger = logging.getLogger(__name__)

    @property
    def target_dir(self) -> Path:
        return self.config.project.helm_target_path

    @property
    def chart_source_dir(self) -> Path:
        folder = Path(self.chart.folder).expanduser()
        return folder if folder.is_absolute() else self.config.project.base_path / folder

    @property
    def chart_archive(self) -> Path:
        return self.target_dir / ChartIdentity(self.chart.name, self.chart.version).archive_name

    def is_chart_folder_present(self) -> bool:
        return self.chart_source_dir.exists()

    def values_file_paths(self) -> List[str]:
        base = self.config.project.base_path
        return [str((base / values).resolve()) for values in self.config.helm.values_files]

    def is_skipped(self) -> bool:
        return self.config.helm.skip

    def execute(self):
        if self.is_skipped():
            self.logger.info("helm-%s has been skipped", self.goal_name)
            return None
        try:
            ConfigValidator().ensure_valid(self.config)
            return self.run()
        except HelmPluginError as e:
            raise GoalExecutionError(f"{self.error_prefix}: {e}") from e

    @abstractmethod
    def run(self):
        """Run the goal once validation has passed."""


class PackageGoal(HelmGoal):
    """Substitutes placeholders into the build directory and packages the chart."""

    goal_name = "package"
    error_prefix = "Error creating helm chart"

    def __init__(
        self,
        config: PluginConfig,
        chart: ChartConfig,
        helm: Optional[HelmClient] = None,
        environment: Optional[Mapping[str, str]] = None,
        authentication: Optional[ServerAuthentication] = None,
    ):
        super().__init__(config, chart, helm)
        self.environment = environment
        self.authentication = authentication or ServerAuthentication(config.servers)

    def run(self) -> Optional[SubstitutionResult]:
        if not self.is_chart_folder_present():
            self.logger.warning("No sources found in %s, skipping helm package.", self.chart_source_dir)
            return None

        chart_dir = self.target_dir / self.chart.name
        self.logger.info("Clear target directory to ensure clean target package")
        if chart_dir.exists():
            shutil.rmtree(chart_dir)
        chart_dir.mkdir(parents=True)

        resolver = PropertyResolver.for_project(
            self.config.project,
            system_properties=self.config.system_properties,
            environment=self.environment,
        )
        substitutor = PlaceholderSubstitutor(resolver, self.config.substitution.exclusions)
        result = substitutor.substitute(self.chart_source_dir, chart_dir)

        for repo in self.config.repos:
            credentials = self.authentication.resolve(repo.username, repo.password, repo.server_id)
            self.helm.repo_add(
                repo.name,
                repo.url,
                username=credentials.username if credentials else None,
                password=credentials.password if credentials else None,
                pass_credentials=repo.pass_credentials,
                force_update=repo.force_update,
                cwd=self.target_dir,
            )

        self.helm.dependency_update(chart_dir)
        self.helm.package(self.chart.name, self.chart.version, cwd=self.target_dir)

        if not self.chart_archive.exists():
            raise ChartPublishError(
                f"File {self.chart_archive.resolve()} not found. helm package did not create the chart archive."
            )
        self.logger.info("Successfully packaged chart and saved it to: %s", self.chart_archive)
        return result


class LintGoal(HelmGoal):
    """Runs helm lint on the processed chart."""

    goal_name = "lint"
    error_prefix = "Error running helm lint"

    def run(self) -> None:
        if not self.is_chart_folder_present():
            self.logger.warning("No sources found, skipping helm lint.")
            return
        self.helm.lint(
            self.chart.name,
            cwd=self.target_dir,
            strict=self.config.helm.strict_lint,
            values_files=self.values_file_paths(),
        )


class TemplateGoal(HelmGoal):
    """Renders the chart templates to an output file."""

    goal_name = "template"
    error_prefix = "Error rendering helm templates"

    def run(self) -> Optional[Path]:
        if not self.is_chart_folder_present():
            self.logger.warning("No sources found, skipping helm template.")
            return None

        output = self.config.helm.template_output_path(self.config.project)
        result = self.helm.template(self.chart.name, cwd=self.target_dir, values_files=self.values_file_paths())
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(result["stdout"], encoding="utf-8")
        self.logger.info("Rendered helm template to '%s'", output.resolve())
        return output


class DeployGoal:
    """Deploys every configured chart, each chart being one participating unit."""

    error_prefix = "Error creating/publishing helm chart"

    def __init__(
        self,
        config: PluginConfig,
        helm: Optional[HelmClient] = None,
        dispatcher: Optional[SecretDispatcher] = None,
        barrier: Optional[DeployAtEndBarrier] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.helm = helm or HelmClient(binary=config.helm.binary, timeout=config.helm.timeout)
        self.dispatcher = dispatcher
        self.barrier = barrier or DeployAtEndBarrier.shared()
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    def execute(self, parallel: bool = False, max_workers: int = 4) -> List[DeployResult]:
        if self.config.deploy.skip:
            self.logger.info("helm-deploy has been skipped")
            return []

        try:
            ConfigValidator().ensure_valid(self.config)
            deployer = self._create_deployer()
            charts = self.config.resolved_charts()
            if parallel and len(charts) > 1:
                with ThreadPoolExecutor(max_workers=max_workers) as pool:
                    return list(pool.map(lambda chart: self._deploy_chart(deployer, chart), charts))
            return [self._deploy_chart(deployer, chart) for chart in charts]
        except HelmPluginError as e:
            raise GoalExecutionError(f"{self.error_prefix}: {e}") from e
        finally:
            self._discard_stale_arrivals()

    def _discard_stale_arrivals(self) -> None:
        # Units of a failed run never arrive; arrivals of the others are dropped
        if self.barrier.ready_units or self.barrier.pending_count:
            self.logger.warning(
                "Discarding %d deferred charts of an incomplete deploy",
                self.barrier.pending_count,
            )
            self.barrier.reset()

    def _create_deployer(self) -> ChartDeployer:
        authentication = ServerAuthentication(self.config.servers, self.dispatcher)
        factory = DeploymentRequestFactory(self.config.repos, self.config.registries, authentication)
        publisher = ChartPublisher(self.helm, timeout=self.config.helm.timeout, transport=self.transport)
        return ChartDeployer(
            factory,
            publisher,
            barrier=self.barrier,
            skip_snapshots=self.config.deploy.skip_snapshots,
            deploy_at_end=self.config.deploy.deploy_at_end,
            total_units=len(self.config.resolved_charts()),
        )

    def _deploy_chart(self, deployer: ChartDeployer, chart: ChartConfig) -> DeployResult:
        return deployer.deploy(
            ChartIdentity(chart.name, chart.version),
            self.config.project.helm_target_path,
            repo_name=self.config.deploy.repo_name,
            registry_url=self.config.deploy.registry_url,
        )
