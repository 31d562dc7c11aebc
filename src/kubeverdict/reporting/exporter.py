#!/usr/bin/env python3
"""
KUBEVERDICT REPORT EXPORTER
---------------------------
Writes the aggregate report as JSON into the results directory, atomically
(temp file + os.replace) so a reader never sees a half-written report.

Author: KubeVerdict Team
Date: 2026-10-17
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("kubeverdict.exporter")


class ReportExporter:

    def __init__(self, results_dir: Union[str, Path]):
        self.results_dir = Path(results_dir)

    def path_for(self, timestamp: Optional[float] = None) -> Path:
        stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(timestamp))
        return self.results_dir / f"aggregate-{stamp}.json"

    def write(self, report: Dict[str, Any], timestamp: Optional[float] = None) -> Path:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        target = self.path_for(timestamp)
        counter = 1
        while target.exists():
            target = target.with_name(f"{self.path_for(timestamp).stem}-{counter}.json")
            counter += 1
        _atomic_write(target, json.dumps(report, indent=2, sort_keys=False, default=str) + "\n")
        logger.info(f"report written to {target}")
        return target


def _atomic_write(target_path: Path, content: str) -> None:
    if not os.access(target_path.parent, os.W_OK):
        raise PermissionError(f"No write access to {target_path.parent}")
    temp_file = target_path.with_suffix(".kubeverdict.tmp")
    try:
        temp_file.write_text(content, encoding="utf-8")
        os.replace(temp_file, target_path)
    except OSError as e:
        if temp_file.exists():
            temp_file.unlink()
        raise OSError(f"Atomic write failed: {e}") from e
