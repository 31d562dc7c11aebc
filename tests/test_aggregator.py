import json

from kubeverdict.core.models import RunnerState, Scenario, ScenarioResult, Verdict
from kubeverdict.orchestration.aggregator import ResultAggregator
from kubeverdict.reporting.exporter import ReportExporter


def result(scenario_id, verdict, duration=2.0):
    return ScenarioResult(Scenario(scenario_id), verdict, RunnerState.COMPLETED,
                          started_at=100.0, ended_at=100.0 + duration)


def test_summary_is_idempotent_and_counts_verdicts():
    agg = ResultAggregator()
    for r in (result("a", Verdict.PASS), result("b", Verdict.FAIL), result("c", Verdict.SKIP),
              result("d", Verdict.PASS)):
        agg.record(r)

    first = agg.summary()
    assert first == agg.summary()
    assert first == {"total": 4, "passed": 2, "failed": 1, "skipped": 1, "pass_rate": 50.0}
    assert [r.scenario.id for r in agg.failures()] == ["b"]


def test_exit_code():
    agg = ResultAggregator()
    assert agg.exit_code() == 0
    agg.record(result("a", Verdict.PASS))
    assert agg.exit_code() == 0
    agg.record(result("b", Verdict.SKIP))
    assert agg.exit_code() == 1


def test_report_layout_and_json_export(tmp_path):
    agg = ResultAggregator()
    agg.record(result("a", Verdict.PASS, duration=1.5))
    agg.record(result("b", Verdict.FAIL, duration=2.5))
    report = agg.report(test_run={"workers": 4}, environment={"cni": "calico"})

    assert report["summary"]["total_duration_seconds"] == 4.0
    assert [s["scenario_id"] for s in report["per_scenario"]] == ["a", "b"]
    assert report["per_scenario"][1]["verdict"] == "fail"

    exporter = ReportExporter(tmp_path / "results")
    first = exporter.write(report, timestamp=0)
    second = exporter.write(report, timestamp=0)
    assert first != second
    assert first.name.startswith("aggregate-")
    assert json.loads(first.read_text(encoding="utf-8")) == report
    assert not list((tmp_path / "results").glob("*.tmp"))
