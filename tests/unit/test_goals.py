from pathlib import Path
from unittest.mock import create_autospec

import httpx
import pytest

from helm_chart_deployer.config import (
    ChartConfig,
    DeployConfig,
    HelmConfig,
    PluginConfig,
    ProjectConfig,
    Repo,
    RepoType,
)
from helm_chart_deployer.deploy import DeployAtEndBarrier, DeployOutcome
from helm_chart_deployer.goals import DeployGoal, HelmGoal, LintGoal, PackageGoal, TemplateGoal
from helm_chart_deployer.helm import HelmClient
from helm_chart_deployer.types import GoalExecutionError


def make_config(tmp_path, version="1.0.0", **kwargs):
    project = ProjectConfig(artifact_id="mychart", version=version, base_dir=str(tmp_path), properties={"image.tag": "v7"})
    return PluginConfig(project=project, **kwargs)


def write_chart(tmp_path, name="mychart"):
    chart_dir = tmp_path / "src" / "main" / "helm" / name
    (chart_dir / "templates").mkdir(parents=True)
    (chart_dir / "Chart.yaml").write_text("name: ${project.artifactId}\nversion: ${project.version}\n")
    (chart_dir / "values.yaml").write_text("image:\n  tag: ${image.tag}\n  digest: ${missing.digest}\n")
    (chart_dir / "templates" / "deployment.yaml").write_text("literal: \\${image.tag}\n")
    (chart_dir / "templates" / "_helpers.tpl").write_text("{{- define \"x\" -}}${image.tag}{{- end -}}\n")
    return chart_dir


def packaging_helm():
    helm = create_autospec(HelmClient, instance=True)

    def package(chart, version, cwd):
        (Path(cwd) / f"{chart}-{version}.tgz").write_bytes(b"archive")

    helm.package.side_effect = package
    return helm


def test_package_substitutes_and_packages(tmp_path):
    write_chart(tmp_path)
    config = make_config(tmp_path, repos=[Repo(url="https://repo", username="u", password="p")])
    helm = packaging_helm()

    result = PackageGoal(config, ChartConfig(), helm=helm, environment={}).execute()

    processed = tmp_path / "target" / "helm" / "mychart"
    assert (processed / "Chart.yaml").read_text() == "name: mychart\nversion: 1.0.0\n"
    assert (processed / "values.yaml").read_text() == "image:\n  tag: v7\n  digest: ${missing.digest}\n"
    assert (processed / "templates" / "deployment.yaml").read_text() == "literal: ${image.tag}\n"
    assert (processed / "templates" / "_helpers.tpl").read_text() == "{{- define \"x\" -}}v7{{- end -}}\n"
    assert result["unresolved"] == [{"property": "missing.digest", "file": "values.yaml"}]

    helm.repo_add.assert_called_once_with(
        "chartRepo",
        "https://repo",
        username="u",
        password="p",
        pass_credentials=False,
        force_update=True,
        cwd=tmp_path / "target" / "helm",
    )
    helm.dependency_update.assert_called_once_with(processed)
    helm.package.assert_called_once_with("mychart", "1.0.0", cwd=tmp_path / "target" / "helm")


def test_package_clears_previous_output(tmp_path):
    write_chart(tmp_path)
    stale = tmp_path / "target" / "helm" / "mychart" / "stale.yaml"
    stale.parent.mkdir(parents=True)
    stale.write_text("old")

    PackageGoal(make_config(tmp_path), ChartConfig(), helm=packaging_helm(), environment={}).execute()

    assert not stale.exists()


def test_package_without_sources_is_skipped(tmp_path):
    helm = packaging_helm()
    assert PackageGoal(make_config(tmp_path), ChartConfig(), helm=helm, environment={}).execute() is None
    helm.package.assert_not_called()


def test_package_with_empty_chart_folder_fails(tmp_path):
    (tmp_path / "src" / "main" / "helm" / "mychart").mkdir(parents=True)
    with pytest.raises(GoalExecutionError, match="No helm files found"):
        PackageGoal(make_config(tmp_path), ChartConfig(), helm=packaging_helm(), environment={}).execute()


def test_package_fails_when_archive_missing(tmp_path):
    write_chart(tmp_path)
    helm = create_autospec(HelmClient, instance=True)
    with pytest.raises(GoalExecutionError, match="Error creating helm chart"):
        PackageGoal(make_config(tmp_path), ChartConfig(), helm=helm, environment={}).execute()


def test_skipped_goal_does_nothing(tmp_path):
    write_chart(tmp_path)
    helm = packaging_helm()
    config = make_config(tmp_path, helm=HelmConfig(skip=True))
    assert PackageGoal(config, ChartConfig(), helm=helm, environment={}).execute() is None
    helm.package.assert_not_called()


def test_invalid_configuration_fails_before_helm_runs(tmp_path):
    write_chart(tmp_path)
    helm = packaging_helm()
    config = make_config(tmp_path, repos=[Repo(url="https://a"), Repo(url="https://b")])

    with pytest.raises(GoalExecutionError, match="Multiple repos found with name 'chartRepo'"):
        PackageGoal(config, ChartConfig(), helm=helm, environment={}).execute()

    helm.repo_add.assert_not_called()


def test_lint_passes_values_files(tmp_path):
    write_chart(tmp_path)
    helm = create_autospec(HelmClient, instance=True)
    config = make_config(tmp_path, helm=HelmConfig(strict_lint=True, values_files=["ci/values.yaml"]))

    LintGoal(config, ChartConfig(), helm=helm).execute()

    helm.lint.assert_called_once_with(
        "mychart",
        cwd=tmp_path / "target" / "helm",
        strict=True,
        values_files=[str((tmp_path / "ci" / "values.yaml").resolve())],
    )


def test_template_writes_rendered_output(tmp_path):
    write_chart(tmp_path)
    helm = create_autospec(HelmClient, instance=True)
    helm.template.return_value = {"command": [], "returncode": 0, "stdout": "kind: Service\n", "stderr": ""}

    output = TemplateGoal(make_config(tmp_path), ChartConfig(), helm=helm).execute()

    assert output == tmp_path / "target" / "test-classes" / "helm.yaml"
    assert output.read_text() == "kind: Service\n"


class Recorder:
    def __init__(self):
        self.calls = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request):
        self.calls.append((request.method, str(request.url)))
        return httpx.Response(201 if request.method == "POST" else 200)


def write_archives(tmp_path, charts):
    target = tmp_path / "target" / "helm"
    target.mkdir(parents=True, exist_ok=True)
    for name, version in charts:
        (target / f"{name}-{version}.tgz").write_bytes(b"archive")


def test_deploy_publishes_release_to_chartmuseum(tmp_path):
    write_archives(tmp_path, [("mychart", "1.0.0")])
    recorder = Recorder()
    config = make_config(tmp_path, repos=[Repo(url="https://museum")])

    results = DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute()

    assert [r.outcome for r in results] == [DeployOutcome.PUBLISHED]
    assert recorder.calls == [("POST", "https://museum/api/charts")]


def test_deploy_skips_snapshot_by_default(tmp_path):
    recorder = Recorder()
    config = make_config(tmp_path, version="1.0.0-SNAPSHOT", repos=[Repo(url="https://museum")])

    results = DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute()

    assert results[0].outcome is DeployOutcome.SNAPSHOT_SKIPPED
    assert recorder.calls == []


def test_deploy_at_end_publishes_all_charts_once(tmp_path):
    charts = [("a", "1.0.0-SNAPSHOT"), ("b", "1.0.0-SNAPSHOT"), ("c", "1.0.0-SNAPSHOT")]
    write_archives(tmp_path, charts)
    recorder = Recorder()
    config = make_config(
        tmp_path,
        version="1.0.0-SNAPSHOT",
        charts=[ChartConfig(name=name) for name, _ in charts],
        repos=[Repo(url="https://museum")],
        deploy=DeployConfig(deploy_at_end=True),
    )

    results = DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute(parallel=True)

    assert all(r.outcome is DeployOutcome.DEFERRED for r in results)
    deletes = sorted(url for method, url in recorder.calls if method == "DELETE")
    posts = [url for method, url in recorder.calls if method == "POST"]
    assert deletes == [f"https://museum/api/charts/{name}/{version}" for name, version in charts]
    assert posts == ["https://museum/api/charts"] * 3


def test_deploy_to_artifactory_uses_put(tmp_path):
    write_archives(tmp_path, [("mychart", "1.0.0")])
    recorder = Recorder()
    config = make_config(tmp_path, repos=[Repo(url="https://jfrog/helm", type=RepoType.ARTIFACTORY)])

    DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute()

    assert recorder.calls == [("PUT", "https://jfrog/helm/mychart-1.0.0.tgz")]


def test_deploy_missing_archive_is_reported(tmp_path):
    config = make_config(tmp_path, repos=[Repo(url="https://museum")])
    goal = DeployGoal(config, barrier=DeployAtEndBarrier(), transport=Recorder().transport)

    with pytest.raises(GoalExecutionError, match="Chart must be created in package phase first"):
        goal.execute()


def test_deploy_rejects_duplicate_repo_names_before_network(tmp_path):
    write_archives(tmp_path, [("mychart", "1.0.0")])
    recorder = Recorder()
    config = make_config(tmp_path, repos=[Repo(url="https://a"), Repo(url="https://b")])

    with pytest.raises(GoalExecutionError, match="Error creating/publishing helm chart"):
        DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute()

    assert recorder.calls == []


def test_deploy_can_be_skipped(tmp_path):
    recorder = Recorder()
    config = make_config(tmp_path, repos=[Repo(url="https://museum")], deploy=DeployConfig(skip=True))
    assert DeployGoal(config, barrier=DeployAtEndBarrier(), transport=recorder.transport).execute() == []
    assert recorder.calls == []


def test_helm_goal_base_cannot_be_instantiated(tmp_path):
    with pytest.raises(TypeError):
        HelmGoal(make_config(tmp_path), ChartConfig())


class FailingArtifactory:
    """Answers every PUT with success, except uploads of the listed archives."""

    def __init__(self, failing=()):
        self.failing = failing
        self.calls = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request):
        self.calls.append((request.method, str(request.url)))
        if any(str(request.url).endswith(name) for name in self.failing):
            return httpx.Response(500, text="upload rejected")
        return httpx.Response(201)


def test_failed_deploy_leaves_barrier_clean_for_next_run(tmp_path):
    write_archives(tmp_path, [("a", "1.0.0"), ("b", "1.0.0")])
    barrier = DeployAtEndBarrier()
    repos = [Repo(url="https://jfrog/helm", type=RepoType.ARTIFACTORY)]
    charts = [ChartConfig(name="a"), ChartConfig(name="b")]

    failing = FailingArtifactory(failing=("b-1.0.0.tgz",))
    with pytest.raises(GoalExecutionError, match="500"):
        DeployGoal(make_config(tmp_path, charts=charts, repos=repos), barrier=barrier, transport=failing.transport).execute()

    assert barrier.ready_units == 0
    assert barrier.pending_count == 0

    healthy = FailingArtifactory()
    config = make_config(tmp_path, charts=charts, repos=repos, deploy=DeployConfig(deploy_at_end=True))
    results = DeployGoal(config, barrier=barrier, transport=healthy.transport).execute()

    assert sorted(healthy.calls) == [
        ("PUT", "https://jfrog/helm/a-1.0.0.tgz"),
        ("PUT", "https://jfrog/helm/b-1.0.0.tgz"),
    ]
    assert len(results[-1].flushed) == 2
