"""Command line interface for packaging, linting, templating and deploying charts."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigLoader, PluginConfig, parse_property_overrides
from .deploy import DeployResult
from .goals import DeployGoal, LintGoal, PackageGoal, TemplateGoal
from .types import HelmPluginError

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="helm-chart-deployer",
        description="Package, lint, template and publish Helm charts",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help="Path to the project file; ./helm-deploy.yaml and ./.helm-deploy.yaml are searched otherwise",
    )
    parser.add_argument(
        "--settings",
        help="Path to the settings file holding server credentials",
    )
    parser.add_argument(
        "-D",
        dest="properties",
        action="append",
        metavar="KEY=VALUE",
        default=[],
        help="Define a system property used for placeholder substitution",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--skip",
        action="store_true",
        help="Skip the selected goal",
    )

    subparsers = parser.add_subparsers(dest="goal", required=True)

    subparsers.add_parser("package", help="Substitute placeholders and package the charts")

    lint = subparsers.add_parser("lint", help="Run helm lint on the processed charts")
    lint.add_argument("--strict", action="store_true", help="Fail on lint warnings")
    lint.add_argument("--values", action="append", default=[], help="Values file to lint with")

    template = subparsers.add_parser("template", help="Render the chart templates to a file")
    template.add_argument("--values", action="append", default=[], help="Values file to render with")
    template.add_argument("--output-file", help="File the rendered templates are written to")

    deploy = subparsers.add_parser("deploy", help="Publish packaged charts to a repo or registry")
    target = deploy.add_mutually_exclusive_group()
    target.add_argument("--repo-name", help="Name of the configured repo to publish to")
    target.add_argument("--registry-url", help="URL of the configured OCI registry to push to")
    deploy.add_argument(
        "--deploy-at-end",
        action="store_true",
        default=None,
        help="Defer publication until every chart has reached the deploy step",
    )
    deploy.add_argument(
        "--no-skip-snapshots",
        dest="skip_snapshots",
        action="store_false",
        default=None,
        help="Publish SNAPSHOT versions as well",
    )
    deploy.add_argument("--parallel", action="store_true", help="Deploy charts on a thread pool")
    deploy.add_argument("--max-workers", type=int, default=4, help="Thread pool size for --parallel")

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments and configure logging."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    return args


def apply_args(config: PluginConfig, args: argparse.Namespace) -> PluginConfig:
    """Overlay command line flags on the loaded configuration."""
    config.system_properties.update(parse_property_overrides(args.properties))

    if args.goal == "deploy":
        if args.skip:
            config.deploy.skip = True
        if args.repo_name:
            config.deploy.repo_name = args.repo_name
            config.deploy.registry_url = None
        if args.registry_url:
            config.deploy.registry_url = args.registry_url
            config.deploy.repo_name = None
        if args.deploy_at_end is not None:
            config.deploy.deploy_at_end = args.deploy_at_end
        if args.skip_snapshots is not None:
            config.deploy.skip_snapshots = args.skip_snapshots
    elif args.skip:
        config.helm.skip = True

    if args.goal == "lint":
        config.helm.strict_lint = config.helm.strict_lint or args.strict
    if args.goal in ("lint", "template") and args.values:
        config.helm.values_files = list(args.values)
    if args.goal == "template" and args.output_file:
        config.helm.template_output = args.output_file

    return config


def run_goal(config: PluginConfig, args: argparse.Namespace) -> None:
    if args.goal == "deploy":
        results = DeployGoal(config).execute(parallel=args.parallel, max_workers=args.max_workers)
        print_deploy_summary(results)
        return

    goal_types = {"package": PackageGoal, "lint": LintGoal, "template": TemplateGoal}
    for chart in config.resolved_charts():
        goal_types[args.goal](config, chart).execute()


def print_deploy_summary(results: List[DeployResult]) -> None:
    if not results:
        return

    table = Table(title="Chart deployment")
    table.add_column("Chart")
    table.add_column("Target")
    table.add_column("Outcome")
    for result in results:
        table.add_row(str(result.request.chart), result.request.describe(), result.outcome.value)
        for flushed in result.flushed:
            table.add_row(str(flushed.chart), flushed.describe(), "published (deferred)")
    console.print(table)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = None
    try:
        args = parse_args(argv)
        config = ConfigLoader().load_config(config_file=args.config, settings_file=args.settings)
        apply_args(config, args)
        run_goal(config, args)

    except KeyboardInterrupt:
        console.print("[yellow]Cancelled by user[/yellow]")
        sys.exit(130)

    except HelmPluginError as e:
        logging.error("%s", e, exc_info=bool(args and args.verbose))
        sys.exit(1)


if __name__ == "__main__":
    main()
