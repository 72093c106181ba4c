"""Chart deployment requests, the publish protocol and the deploy-at-end barrier."""
from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import httpx

from .config import Registry, Repo, RepoType
from .constants import (
    CHART_ARCHIVE_SUFFIX,
    CHARTMUSEUM_API_PATH,
    DEFAULT_TIMEOUT_SECONDS,
    OCI_SCHEME,
    SNAPSHOT_MARKER,
)
from .credentials import ServerAuthentication
from .helm import HelmClient
from .types import ChartPublishError, ConfigurationError, Credentials


@dataclass(frozen=True)
class ChartIdentity:
    """Name and version of a chart."""

    name: str
    version: str

    @property
    def is_snapshot(self) -> bool:
        return SNAPSHOT_MARKER in self.version

    @property
    def archive_name(self) -> str:
        return f"{self.name}-{self.version}{CHART_ARCHIVE_SUFFIX}"

    def __str__(self) -> str:
        return f"{self.name}:{self.version}"


@dataclass(frozen=True)
class RepositoryDeploymentRequest:
    """Publication of a chart archive to a ChartMuseum or Artifactory repository."""

    chart: ChartIdentity
    archive_dir: Path
    repo_name: str
    repo_url: str
    repo_type: RepoType
    credentials: Optional[Credentials] = field(default=None, compare=False)

    @property
    def archive_path(self) -> Path:
        return self.archive_dir / self.chart.archive_name

    @property
    def publish_method(self) -> str:
        return "PUT" if self.repo_type is RepoType.ARTIFACTORY else "POST"

    @property
    def publish_url(self) -> str:
        base = self.repo_url.rstrip("/")
        if self.repo_type is RepoType.ARTIFACTORY:
            return f"{base}/{self.chart.archive_name}"
        return f"{base}/{CHARTMUSEUM_API_PATH}"

    @property
    def delete_url(self) -> Optional[str]:
        if self.repo_type is RepoType.ARTIFACTORY:
            return None
        return f"{self.repo_url.rstrip('/')}/{CHARTMUSEUM_API_PATH}/{self.chart.name}/{self.chart.version}"

    def describe(self) -> str:
        return f"{self.chart} -> {self.publish_method} {self.publish_url}"


@dataclass(frozen=True)
class RegistryDeploymentRequest:
    """Push of a chart archive to an OCI registry."""

    chart: ChartIdentity
    archive_dir: Path
    registry_url: str
    credentials: Optional[Credentials] = field(default=None, compare=False)

    delete_url = None

    @property
    def archive_path(self) -> Path:
        return self.archive_dir / self.chart.archive_name

    @property
    def remote(self) -> str:
        """Registry reference in the form helm push expects."""
        return OCI_SCHEME + _strip_scheme(self.registry_url).rstrip("/")

    @property
    def host(self) -> str:
        return _strip_scheme(self.registry_url).split("/", 1)[0]

    def describe(self) -> str:
        return f"{self.chart} -> push {self.remote}"


ChartDeploymentRequest = Union[RepositoryDeploymentRequest, RegistryDeploymentRequest]


def _strip_scheme(url: str) -> str:
    for scheme in (OCI_SCHEME, "https://", "http://"):
        if url.startswith(scheme):
            return url[len(scheme):]
    return url


class DeploymentRequestFactory:
    """Selects the target backend and builds deployment requests."""

    def __init__(
        self,
        repos: Sequence[Repo],
        registries: Sequence[Registry],
        authentication: ServerAuthentication,
    ):
        self.repos = list(repos)
        self.registries = list(registries)
        self.authentication = authentication
        self.logger = logging.getLogger(__name__)

    def build(
        self,
        chart: ChartIdentity,
        archive_dir: Path,
        repo_name: Optional[str] = None,
        registry_url: Optional[str] = None,
    ) -> ChartDeploymentRequest:
        """
        Build the request for one chart.

        Exactly one of repo_name and registry_url may be given. When neither is
        given and exactly one repo or registry is configured, that one is used.

        Raises:
            ConfigurationError: If the target is missing, ambiguous or unknown
            CredentialError: If server credentials cannot be decrypted
        """
        if repo_name is not None and registry_url is not None:
            raise ConfigurationError("Only one of repo name and registry URL may be specified")

        if repo_name is None and registry_url is None:
            target = self._auto_select()
        elif repo_name is not None:
            target = self._find_repo(repo_name)
        else:
            target = self._find_registry(registry_url)

        if isinstance(target, Repo):
            return RepositoryDeploymentRequest(
                chart=chart,
                archive_dir=archive_dir,
                repo_name=target.name,
                repo_url=target.url,
                repo_type=target.type,
                credentials=self.authentication.resolve(target.username, target.password, target.server_id),
            )

        return RegistryDeploymentRequest(
            chart=chart,
            archive_dir=archive_dir,
            registry_url=target.url,
            credentials=self.authentication.resolve(target.username, target.password, target.server_id),
        )

    def _auto_select(self) -> Union[Repo, Registry]:
        candidates: List[Union[Repo, Registry]] = [*self.repos, *self.registries]
        if len(candidates) == 1:
            self.logger.debug("Using the only configured target %s", candidates[0].url)
            return candidates[0]
        if not candidates:
            raise ConfigurationError("No repo or registry configured to deploy to")
        raise ConfigurationError(
            f"{len(candidates)} repos/registries are configured; specify a repo name or a registry URL"
        )

    def _find_repo(self, name: str) -> Repo:
        for repo in self.repos:
            if repo.name == name:
                return repo
        raise ConfigurationError(f"No repo configured with name '{name}'")

    def _find_registry(self, url: str) -> Registry:
        wanted = _strip_scheme(url).rstrip("/")
        for registry in self.registries:
            if registry.url and _strip_scheme(registry.url).rstrip("/") == wanted:
                return registry
        raise ConfigurationError(f"No registry configured with URL '{url}'")


class ChartPublisher:
    """Executes the publish protocol for a single deployment request."""

    def __init__(
        self,
        helm: HelmClient,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.helm = helm
        self.timeout = timeout
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    def publish(self, request: ChartDeploymentRequest, require_archive: bool = True) -> bool:
        """
        Publish the chart archive described by request.

        Args:
            request: Repository or registry request
            require_archive: Whether a missing archive is an error or a logged skip

        Returns:
            True if the chart was published, False if it was skipped

        Raises:
            ChartPublishError: If the archive is missing (when required) or the upload fails
            HelmCommandError: If a registry login or push fails
        """
        archive = request.archive_path
        if not archive.exists():
            if require_archive:
                raise ChartPublishError(
                    f"File {archive.resolve()} not found. Chart must be created in package phase first."
                )
            self.logger.warning("File %s not found, nothing to publish for %s", archive, request.chart)
            return False

        if isinstance(request, RepositoryDeploymentRequest):
            self._publish_to_repository(request, archive)
        else:
            self._push_to_registry(request, archive)
        return True

    def _publish_to_repository(self, request: RepositoryDeploymentRequest, archive: Path) -> None:
        with self._client(request.credentials) as client:
            if request.chart.is_snapshot and request.delete_url:
                self._remove_if_exists(client, request.delete_url)

            url = request.publish_url
            try:
                response = client.request(
                    request.publish_method,
                    url,
                    content=archive.read_bytes(),
                    headers={"Content-Type": "application/octet-stream"},
                )
            except httpx.HTTPError as e:
                raise ChartPublishError(
                    f"Error sending {request.publish_method} to chart repo {url}: {e}"
                ) from e

            if not response.is_success:
                raise ChartPublishError(
                    f"Unexpected status code when sending {request.publish_method} to chart repo {url}: "
                    f"{response.status_code} {response.text}".rstrip(),
                    status_code=response.status_code,
                )

        self.logger.info("%s published successfully to %s", archive, url)

    def _remove_if_exists(self, client: httpx.Client, url: str) -> None:
        try:
            response = client.delete(url)
        except httpx.HTTPError as e:
            self.logger.debug("Could not remove existing chart at %s: %s", url, e)
            return

        if response.status_code == 200:
            self.logger.info("Existing chart removed successfully")
        else:
            self.logger.debug("No existing chart removed at %s (HTTP %d)", url, response.status_code)

    def _push_to_registry(self, request: RegistryDeploymentRequest, archive: Path) -> None:
        if request.credentials is not None:
            self.helm.registry_login(request.host, request.credentials.username, request.credentials.password)
        self.helm.push(archive, request.remote)
        self.logger.info("%s pushed successfully to %s", archive, request.remote)

    def _client(self, credentials: Optional[Credentials]) -> httpx.Client:
        return httpx.Client(
            auth=tuple(credentials) if credentials is not None else None,
            timeout=self.timeout,
            transport=self.transport,
        )


class DeployAtEndBarrier:
    """
    Collects deferred requests until every participating unit has arrived.

    Appending, counting and the flush decision share one lock, so exactly one
    arrival receives the pending batch.
    """

    _shared: Optional["DeployAtEndBarrier"] = None
    _shared_lock = threading.Lock()

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: List[ChartDeploymentRequest] = []
        self._ready_units = 0

    @classmethod
    def shared(cls) -> "DeployAtEndBarrier":
        """Process-wide barrier instance."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    def arrive(
        self,
        total_units: int,
        request: Optional[ChartDeploymentRequest] = None,
    ) -> List[ChartDeploymentRequest]:
        """
        Register one unit reaching the deploy step.

        Args:
            total_units: Number of participating units
            request: Request to defer, if any

        Returns:
            The drained pending requests for the last unit, otherwise an empty list
        """
        with self._lock:
            if request is not None:
                self._pending.append(request)
            self._ready_units += 1
            if self._ready_units < total_units:
                return []
            batch = list(self._pending)
            self._pending.clear()
            self._ready_units = 0
            return batch

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._ready_units = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def ready_units(self) -> int:
        with self._lock:
            return self._ready_units


class DeployOutcome(enum.Enum):
    """Terminal state of a single deploy invocation."""

    SNAPSHOT_SKIPPED = "snapshot-skipped"
    DEFERRED = "deferred"
    PUBLISHED = "published"


@dataclass
class DeployResult:
    """What one deploy invocation did."""

    outcome: DeployOutcome
    request: ChartDeploymentRequest
    flushed: List[ChartDeploymentRequest] = field(default_factory=list)


class ChartDeployer:
    """Runs the deploy state machine for one build unit at a time."""

    def __init__(
        self,
        request_factory: DeploymentRequestFactory,
        publisher: ChartPublisher,
        barrier: Optional[DeployAtEndBarrier] = None,
        skip_snapshots: bool = True,
        deploy_at_end: bool = False,
        total_units: int = 1,
    ):
        if total_units < 1:
            raise ConfigurationError("At least one participating unit is required")
        self.request_factory = request_factory
        self.publisher = publisher
        self.barrier = barrier or DeployAtEndBarrier.shared()
        self.skip_snapshots = skip_snapshots
        self.deploy_at_end = deploy_at_end
        self.total_units = total_units
        self.logger = logging.getLogger(__name__)

    def deploy(
        self,
        chart: ChartIdentity,
        archive_dir: Path,
        repo_name: Optional[str] = None,
        registry_url: Optional[str] = None,
    ) -> DeployResult:
        """
        Deploy one chart.

        The request is skipped (snapshot policy), deferred (deploy at end) or
        published immediately. Afterwards the unit arrives at the barrier and
        the last unit publishes every deferred request.
        """
        request = self.request_factory.build(chart, archive_dir, repo_name=repo_name, registry_url=registry_url)
        deferred: Optional[ChartDeploymentRequest] = None

        if chart.is_snapshot and self.skip_snapshots and not self.deploy_at_end:
            self.logger.info(
                "Version contains %s and 'skip_snapshots' option is enabled. Not publishing %s.",
                SNAPSHOT_MARKER,
                chart,
            )
            outcome = DeployOutcome.SNAPSHOT_SKIPPED
        elif self.deploy_at_end:
            self.logger.info("Deferring publication of %s until all units are ready", chart)
            deferred = request
            outcome = DeployOutcome.DEFERRED
        else:
            self.publisher.publish(request, require_archive=True)
            outcome = DeployOutcome.PUBLISHED

        flushed = self.barrier.arrive(self.total_units, deferred)
        if flushed:
            self.logger.info("All %d units ready, publishing %d deferred charts", self.total_units, len(flushed))
            for pending in flushed:
                self.publisher.publish(pending, require_archive=False)

        return DeployResult(outcome=outcome, request=request, flushed=flushed)
