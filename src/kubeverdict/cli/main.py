#!/usr/bin/env python3
"""
KUBEVERDICT CLI
---------------
Command line front end:

    run       execute scenarios against the cluster and report verdicts
    validate  load and check scenario files without touching a cluster
    render    print the manifests a scenario would create
    cleanup   delete namespaces left behind by earlier runs
    detect    preflight checks and environment (CNI) report

Exit codes: 0 all scenarios passed, 1 failures, 2 usage or input errors,
130 interrupted.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    BarColumn,
    TaskProgressColumn
)

from kubeverdict import __version__
from kubeverdict.cli.formatter import ResultFormatter
from kubeverdict.cluster.gateway import ClusterGateway
from kubeverdict.cluster.kubectl import KubectlGateway
from kubeverdict.cluster.manifests import ManifestEncoder
from kubeverdict.cluster.simulated import SimulatedCluster
from kubeverdict.core.config import RunnerConfig, load_config
from kubeverdict.core.engine import BatchRunner, ScenarioRunner
from kubeverdict.core.errors import ClusterError, ConfigError, ScenarioError
from kubeverdict.core.models import Scenario, ScenarioResult
from kubeverdict.core.preflight import run_preflight, sweep_stale_namespaces
from kubeverdict.reporting.exporter import ReportExporter
from kubeverdict.scenarios.loader import filter_scenarios, load_scenarios

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger("kubeverdict.cli")


def build_gateway(config: RunnerConfig) -> ClusterGateway:
    if config.backend == "simulated":
        return SimulatedCluster()
    return KubectlGateway(config)


def setup_logging(verbose: int = 0):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=True))
    root.setLevel(level)


class KubeVerdictCLI:
    """
    CLI wrapper that translates user commands into engine actions.
    Every handler returns the process exit code.
    """

    def __init__(self, gateway_factory=build_gateway, out: Optional[Console] = None):
        self.gateway_factory = gateway_factory
        self.console = out or console
        self.formatter = ResultFormatter(self.console)
        self.parser = argparse.ArgumentParser(
            prog="kubeverdict",
            description="KubeVerdict - NetworkPolicy conformance test orchestrator",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self._setup_args()

    def _setup_args(self):
        self.parser.add_argument("--version", action="version", version=f"kubeverdict v{__version__}")
        common = argparse.ArgumentParser(add_help=False)
        common.add_argument("-c", "--config", help="YAML config file")
        common.add_argument("--backend", choices=["kubectl", "simulated"], help="Cluster backend")
        common.add_argument("--kubeconfig", help="Path to kubeconfig")
        common.add_argument("--context", help="kubectl context to use")
        common.add_argument("--namespace-prefix", help="Prefix of generated namespaces")
        common.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

        scenarios = argparse.ArgumentParser(add_help=False)
        scenarios.add_argument("paths", nargs="+", help="Scenario files or directories")
        scenarios.add_argument("-f", "--filter", action="append", default=[],
                               help="Only scenarios whose id or tag matches (glob, comma separated)")

        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        run_parser = subparsers.add_parser("run", parents=[common, scenarios], help="Run scenarios")
        run_parser.add_argument("-w", "--workers", type=int, help="Scenarios run in parallel")
        run_parser.add_argument("-t", "--timeout", type=float, help="Per-scenario timeout in seconds")
        run_parser.add_argument("--global-timeout", type=float, help="Cancel the whole batch after N seconds")
        run_parser.add_argument("--propagation-delay", type=float, help="Seconds to wait for policy enforcement")
        run_parser.add_argument("--results-dir", help="Directory for the JSON report")
        run_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
        run_parser.add_argument("--no-report", action="store_true", help="Do not write the JSON report")
        run_parser.add_argument("--skip-preflight", action="store_true", help="Skip cluster preflight checks")

        subparsers.add_parser("validate", parents=[common, scenarios], help="Check scenario files")
        subparsers.add_parser("render", parents=[common, scenarios], help="Print scenario manifests")
        subparsers.add_parser("cleanup", parents=[common], help="Delete stale test namespaces")
        subparsers.add_parser("detect", parents=[common], help="Preflight checks and environment report")

    def print_header(self, subtitle: str):
        self.console.print(Panel.fit(
            f"[bold cyan]KubeVerdict v{__version__}[/bold cyan]",
            title=f"[bold white]{subtitle}[/bold white]",
            border_style="cyan"
        ))

    def _config(self, args: argparse.Namespace) -> RunnerConfig:
        overrides: Dict[str, Any] = {
            "backend": args.backend,
            "kubeconfig": args.kubeconfig,
            "context": args.context,
            "namespace_prefix": args.namespace_prefix,
            "workers": getattr(args, "workers", None),
            "scenario_timeout": getattr(args, "timeout", None),
            "propagation_delay": getattr(args, "propagation_delay", None),
            "results_dir": getattr(args, "results_dir", None),
        }
        return load_config(args.config, overrides=overrides)

    def _scenarios(self, args: argparse.Namespace, config: RunnerConfig) -> List[Scenario]:
        loaded = load_scenarios(args.paths, readiness_timeout=config.readiness_timeout)
        return filter_scenarios(loaded, args.filter)

    # --- commands -----------------------------------------------------------

    def cmd_validate(self, args: argparse.Namespace, config: RunnerConfig) -> int:
        scenarios = self._scenarios(args, config)
        self.formatter.print_scenarios(scenarios)
        self.console.print(f"[bold green]✔ {len(scenarios)} scenarios are valid[/bold green]")
        return EXIT_OK

    def cmd_render(self, args: argparse.Namespace, config: RunnerConfig) -> int:
        encoder = ManifestEncoder()
        for scenario in self._scenarios(args, config):
            docs = [encoder.namespace(ns) for ns in scenario.namespaces]
            docs += [encoder.pod(replace(pod, image=pod.image or config.default_image))
                     for pod in scenario.pods]
            docs += [encoder.policy(policy) for policy in scenario.policies]
            self.formatter.print_manifests(scenario.id, encoder.dump(docs))
        return EXIT_OK

    def cmd_cleanup(self, args: argparse.Namespace, config: RunnerConfig) -> int:
        gateway = self.gateway_factory(config)
        swept = sweep_stale_namespaces(gateway, timeout=config.request_timeout)
        self.console.print(f"[bold green]Requested deletion of {len(swept)} stale namespaces[/bold green]")
        for name in swept:
            self.console.print(f"  [dim]{name}[/dim]")
        return EXIT_OK

    def cmd_detect(self, args: argparse.Namespace, config: RunnerConfig) -> int:
        gateway = self.gateway_factory(config)
        report = run_preflight(gateway, config.namespace_prefix, config.request_timeout, sweep=False)
        rows = {"backend": config.backend, "cluster reachable": report.cluster_reachable}
        rows.update(report.environment())
        self.formatter.print_environment(rows, report.problems, report.warnings)
        return EXIT_OK if report.ok else EXIT_FAILED

    def cmd_run(self, args: argparse.Namespace, config: RunnerConfig) -> int:
        scenarios = self._scenarios(args, config)
        if not scenarios:
            err_console.print("[bold yellow]⚠️  No scenarios selected.[/bold yellow]")
            return EXIT_USAGE

        gateway = self.gateway_factory(config)
        environment: Dict[str, Any] = {"backend": config.backend}
        if not args.skip_preflight:
            report = run_preflight(gateway, config.namespace_prefix, config.request_timeout)
            environment.update(report.environment())
            for warning in report.warnings:
                logger.warning(warning)
            if not report.ok:
                self.formatter.print_environment(environment, report.problems, report.warnings)
                return EXIT_FAILED

        batch = BatchRunner(ScenarioRunner(gateway, config), workers=config.workers)
        started = time.time()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=args.json,
        ) as progress:
            task_id = progress.add_task("Running scenarios...", total=len(scenarios))

            def on_result(result: ScenarioResult):
                progress.update(task_id, advance=1,
                                description=f"{result.scenario.id}: {result.verdict.value}")

            aggregator = batch.run(scenarios, global_timeout=args.global_timeout, progress_callback=on_result)

        test_run = {
            "started_at": started,
            "workers": config.workers,
            "scenario_timeout": config.scenario_timeout,
            "propagation_delay": config.propagation_delay,
            "scenarios": [s.id for s in scenarios],
        }
        report = aggregator.report(test_run=test_run, environment=environment)

        report_path = ""
        if not args.no_report:
            report_path = str(ReportExporter(config.results_dir).write(report, started))

        if args.json:
            self.console.print_json(data=report)
        else:
            self.formatter.print_results_table(aggregator.results)
            self.formatter.print_failures(aggregator.results)
            self.formatter.print_summary(report["summary"], report_path)
        return aggregator.exit_code()

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        """Primary routing entry point."""
        args = self.parser.parse_args(argv)
        if not args.command:
            self.print_header("NetworkPolicy Conformance")
            self.parser.print_help()
            return EXIT_USAGE

        setup_logging(args.verbose)
        handlers = {
            "run": self.cmd_run,
            "validate": self.cmd_validate,
            "render": self.cmd_render,
            "cleanup": self.cmd_cleanup,
            "detect": self.cmd_detect,
        }
        try:
            config = self._config(args)
            return handlers[args.command](args, config)
        except (ConfigError, ScenarioError) as e:
            err_console.print(f"[bold red]Error:[/bold red] {e}")
            return EXIT_USAGE
        except ClusterError as e:
            err_console.print(f"[bold red]Cluster error:[/bold red] {e}")
            return EXIT_FAILED


def main():
    """Application entry point with interrupt handling."""
    try:
        code = KubeVerdictCLI().run()
    except KeyboardInterrupt:
        err_console.print("\n[bold red]Terminated by user.[/bold red]")
        code = EXIT_INTERRUPTED
    sys.exit(code)


if __name__ == "__main__":
    main()
