from unittest.mock import patch

import pytest

from helm_chart_deployer import cli
from helm_chart_deployer.config import PluginConfig, ProjectConfig

CONFIG_YAML = """
project:
  artifact_id: mychart
  version: 1.0.0-SNAPSHOT
repos:
  - url: https://museum.example.com
"""


def write_config(tmp_path, content=CONFIG_YAML):
    path = tmp_path / "helm-deploy.yaml"
    path.write_text(content)
    return str(path)


def make_config():
    return PluginConfig(project=ProjectConfig(artifact_id="mychart", version="1.0.0"))


def test_parser_requires_goal():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_deploy_targets_are_exclusive():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["deploy", "--repo-name", "a", "--registry-url", "b"])


def test_apply_args_overlays_deploy_flags():
    args = cli.build_parser().parse_args(
        ["-D", "image.tag=v1", "-D", "flag", "deploy", "--registry-url", "oci://reg/charts", "--deploy-at-end", "--no-skip-snapshots"]
    )
    config = make_config()
    config.deploy.repo_name = "chartRepo"

    cli.apply_args(config, args)

    assert config.system_properties == {"image.tag": "v1", "flag": "true"}
    assert config.deploy.registry_url == "oci://reg/charts"
    assert config.deploy.repo_name is None
    assert config.deploy.deploy_at_end is True
    assert config.deploy.skip_snapshots is False


def test_apply_args_keeps_configured_deploy_policy():
    args = cli.build_parser().parse_args(["deploy"])
    config = make_config()
    config.deploy.deploy_at_end = True

    cli.apply_args(config, args)

    assert config.deploy.deploy_at_end is True
    assert config.deploy.skip_snapshots is True


def test_apply_args_lint_and_template_options():
    config = make_config()
    cli.apply_args(config, cli.build_parser().parse_args(["lint", "--strict", "--values", "a.yaml"]))
    assert config.helm.strict_lint is True
    assert config.helm.values_files == ["a.yaml"]

    cli.apply_args(config, cli.build_parser().parse_args(["template", "--output-file", "out.yaml"]))
    assert config.helm.template_output == "out.yaml"
    assert config.helm.values_files == ["a.yaml"]


def test_skip_applies_to_the_selected_goal():
    config = make_config()
    cli.apply_args(config, cli.build_parser().parse_args(["--skip", "deploy"]))
    assert config.deploy.skip is True
    assert config.helm.skip is False


def test_main_with_skip_runs_nothing(tmp_path):
    with patch("helm_chart_deployer.goals.HelmClient.run") as run:
        cli.main(["--config", write_config(tmp_path), "--skip", "package"])
    run.assert_not_called()


def test_main_deploy_skips_snapshot(tmp_path):
    with patch("helm_chart_deployer.deploy.httpx.Client") as client:
        cli.main(["--config", write_config(tmp_path), "deploy"])
    client.assert_not_called()


def test_main_missing_config_exits_with_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(tmp_path / "missing.yaml"), "package"])
    assert excinfo.value.code == 1


def test_main_invalid_config_exits_with_error(tmp_path):
    content = CONFIG_YAML + "  - url: https://other.example.com\n"
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", write_config(tmp_path, content), "lint"])
    assert excinfo.value.code == 1


def test_main_keyboard_interrupt_exits_130(tmp_path):
    with patch.object(cli, "run_goal", side_effect=KeyboardInterrupt):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["--config", write_config(tmp_path), "package"])
    assert excinfo.value.code == 130


def test_run_goal_uses_the_resolved_charts():
    config = make_config()
    args = cli.build_parser().parse_args(["lint"])

    with patch.object(cli, "LintGoal") as lint_goal:
        cli.run_goal(config, args)

    (called_config, chart), _ = lint_goal.call_args
    assert called_config is config
    assert (chart.name, chart.version) == ("mychart", "1.0.0")
    lint_goal.return_value.execute.assert_called_once_with()
