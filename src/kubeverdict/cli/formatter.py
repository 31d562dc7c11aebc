# src/kubeverdict/cli/formatter.py
from typing import Any, Dict, Iterable, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from kubeverdict.core.models import Observation, Scenario, ScenarioResult, Verdict

VERDICT_STYLE = {Verdict.PASS: "green", Verdict.FAIL: "red", Verdict.SKIP: "yellow"}
VERDICT_ICON = {Verdict.PASS: "✅", Verdict.FAIL: "❌", Verdict.SKIP: "⏭️"}


class ResultFormatter:
    """
    ResultFormatter: renders scenarios, results and preflight findings
    for the terminal. Holds no state besides the console it prints to.
    """

    def __init__(self, console: Console):
        self.console = console

    def print_results_table(self, results: Sequence[ScenarioResult]):
        table = Table(title="KubeVerdict Execution Report", show_lines=True, header_style="bold magenta")
        table.add_column("Scenario", style="cyan")
        table.add_column("State", style="white")
        table.add_column("Probes", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Verdict", justify="center")

        for r in results:
            style = VERDICT_STYLE[r.verdict]
            matched = sum(1 for p in r.probe_results if p.matches)
            table.add_row(
                r.scenario.id,
                r.state.value,
                f"{matched}/{len(r.scenario.probes)}",
                f"{r.duration_seconds:.1f}s",
                f"{VERDICT_ICON[r.verdict]} [{style}]{r.verdict.value.upper()}[/{style}]",
            )
        self.console.print(table)

    def print_summary(self, summary: Dict[str, Any], report_path: str = ""):
        lines = [
            "[bold white]Summary Report[/bold white]",
            "════════════════════════════════════════",
            f"Total Scenarios: {summary['total']}",
            f"Passed:          [green]{summary['passed']}[/green]",
            f"Failed:          [red]{summary['failed']}[/red]",
            f"Skipped:         [yellow]{summary['skipped']}[/yellow]",
            f"Pass Rate:       {summary['pass_rate']}%",
        ]
        if "total_duration_seconds" in summary:
            lines.append(f"Scenario Time:   {summary['total_duration_seconds']}s")
        if report_path:
            lines.append(f"Report:          {report_path}")
        self.console.print(Panel("\n".join(lines), border_style="dim"))

    def print_failures(self, results: Iterable[ScenarioResult]):
        """Shows the diverging probes and cleanup problems of every non-pass scenario."""
        for r in results:
            if r.verdict == Verdict.PASS:
                continue
            style = VERDICT_STYLE[r.verdict]
            body: List[str] = [f"[{style}]{reason}[/{style}]" for reason in r.failure_reasons]
            for probe in r.diverging_probes():
                if probe.observed == Observation.ERROR:
                    continue
                if probe.timed_out:
                    body.append(f"[dim]{probe.probe.describe()}: no response within "
                                f"{probe.probe.timeout_seconds}s (timeout treated as deny)[/dim]")
            for problem in r.cleanup_errors:
                body.append(f"[dim]cleanup: {problem}[/dim]")
            self.console.print(Panel("\n".join(body) or "no details",
                                     title=f"[bold]{r.scenario.id}[/bold]", border_style=style))

    def print_scenarios(self, scenarios: Sequence[Scenario]):
        table = Table(title="Scenarios", header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Namespaces", justify="right")
        table.add_column("Pods", justify="right")
        table.add_column("Policies", justify="right")
        table.add_column("Probes", justify="right")
        table.add_column("Tags", style="dim")
        for s in scenarios:
            table.add_row(s.id, str(len(s.namespaces)), str(len(s.pods)), str(len(s.policies)),
                          str(len(s.probes)), ", ".join(s.tags))
        self.console.print(table)

    def print_manifests(self, scenario_id: str, text: str):
        syntax = Syntax(text.strip(), "yaml", theme="monokai", line_numbers=False)
        self.console.print(Panel(syntax, title=f"[bold cyan]{scenario_id}[/bold cyan]", border_style="cyan"))

    def print_environment(self, rows: Dict[str, Any], problems: Sequence[str], warnings: Sequence[str]):
        table = Table(title="Cluster Environment", show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in rows.items():
            table.add_row(key, str(value))
        self.console.print(table)
        for warning in warnings:
            self.console.print(f"[bold yellow]⚠️  {warning}[/bold yellow]")
        for problem in problems:
            self.console.print(f"[bold red]✖ {problem}[/bold red]")
