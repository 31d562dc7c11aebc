#!/usr/bin/env python3
"""
KUBEVERDICT RESULT AGGREGATOR
-----------------------------
Collects ScenarioResults of a batch. Pure accumulation: summary() and
report() have no side effects and return the same value until the next
record(). Rendering (JSON file, terminal tables) lives elsewhere.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import threading
from typing import Any, Dict, List, Optional

from kubeverdict.core.models import ScenarioResult, Verdict


class ResultAggregator:

    def __init__(self):
        self._results: List[ScenarioResult] = []
        self._lock = threading.Lock()

    def record(self, result: ScenarioResult) -> None:
        with self._lock:
            self._results.append(result)

    @property
    def results(self) -> List[ScenarioResult]:
        with self._lock:
            return list(self._results)

    def failures(self) -> List[ScenarioResult]:
        return [r for r in self.results if r.verdict == Verdict.FAIL]

    def summary(self) -> Dict[str, Any]:
        results = self.results
        total = len(results)
        passed = sum(1 for r in results if r.verdict == Verdict.PASS)
        failed = sum(1 for r in results if r.verdict == Verdict.FAIL)
        skipped = sum(1 for r in results if r.verdict == Verdict.SKIP)
        return {
            "total": total,
            "passed": passed,
            "failed": failed,
            "skipped": skipped,
            # Percentage, two decimals
            "pass_rate": round(passed * 100.0 / total, 2) if total else 0.0,
        }

    def exit_code(self) -> int:
        """0 iff every recorded verdict is pass."""
        return 0 if all(r.verdict == Verdict.PASS for r in self.results) else 1

    def report(self, test_run: Optional[Dict[str, Any]] = None,
               environment: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Machine-readable report: summary, per-scenario results, run metadata."""
        results = self.results
        summary = self.summary()
        summary["total_duration_seconds"] = round(sum(r.duration_seconds for r in results), 3)
        return {
            "test_run": dict(test_run or {}),
            "environment": dict(environment or {}),
            "summary": summary,
            "per_scenario": [r.to_dict() for r in results],
        }
