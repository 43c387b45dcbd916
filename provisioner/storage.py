"""
Provisioner - Run Storage

Handles persistence of run artifacts: the plan reviewed before execution
and the summary produced after it. Uses JSON files; resource state lives
in the State Store (provisioner.state), not here.
"""

from __future__ import annotations
import json
import re
import shutil
from pathlib import Path
from typing import Any, List, Optional
import logging

from provisioner.models import ExecutionPlan, RunSummary

logger = logging.getLogger(__name__)

# Run ids are single path components: no separators, no leading dot
_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_valid_run_id(run_id: str) -> bool:
    """Check that a run id names a directory directly under the runs path."""
    return bool(_RUN_ID_RE.match(run_id))


class RunStorage:
    """
    Manages storage of run artifacts.

    Directory structure:
    <runs_path>/
        <run_id>/
            plan.json           - Machine-readable plan
            plan.txt            - Human-readable plan
            summary.json        - Final run summary
    """

    def __init__(self, base_path: str = "./.provisioner/runs"):
        """Initialize run storage with base path."""
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Run storage initialized at: {self.base_path.absolute()}")

    def _run_path(self, run_id: str) -> Path:
        """Get path for a specific run."""
        if not is_valid_run_id(run_id):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self.base_path / run_id

    def _ensure_run_dir(self, run_id: str) -> Path:
        run_path = self._run_path(run_id)
        run_path.mkdir(parents=True, exist_ok=True)
        return run_path

    # =========================================================================
    # RUN MANAGEMENT
    # =========================================================================

    def run_exists(self, run_id: str) -> bool:
        """Check if a run exists."""
        return is_valid_run_id(run_id) and self._run_path(run_id).exists()

    def get_all_runs(self) -> List[str]:
        """Get all run IDs, oldest first."""
        if not self.base_path.exists():
            return []
        return sorted(
            d.name for d in self.base_path.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )

    def delete_run(self, run_id: str) -> bool:
        """Delete a run and all its artifacts."""
        if not is_valid_run_id(run_id):
            return False
        run_path = self._run_path(run_id)
        if run_path.exists():
            shutil.rmtree(run_path)
            logger.info(f"Deleted run: {run_id}")
            return True
        return False

    # =========================================================================
    # PLAN
    # =========================================================================

    def save_plan(self, plan: ExecutionPlan, text: Optional[str] = None) -> str:
        """Save execution plan and return file path."""
        run_path = self._ensure_run_dir(plan.run_id)
        plan_path = run_path / "plan.json"
        self._write_json(plan_path, plan.model_dump(mode="json"))
        if text is not None:
            (run_path / "plan.txt").write_text(text, encoding="utf-8")
        logger.info(f"Saved execution plan for run: {plan.run_id}")
        return str(plan_path)

    def load_plan(self, run_id: str) -> Optional[ExecutionPlan]:
        """Load execution plan."""
        if not is_valid_run_id(run_id):
            return None
        data = self._read_json(self._run_path(run_id) / "plan.json")
        return ExecutionPlan(**data) if data is not None else None

    # =========================================================================
    # SUMMARY
    # =========================================================================

    def save_summary(self, summary: RunSummary) -> str:
        """Save run summary and return file path."""
        run_path = self._ensure_run_dir(summary.run_id)
        summary_path = run_path / "summary.json"
        self._write_json(summary_path, summary.model_dump(mode="json"))
        logger.debug(f"Saved summary for run: {summary.run_id}")
        return str(summary_path)

    def load_summary(self, run_id: str) -> Optional[RunSummary]:
        """Load run summary."""
        if not is_valid_run_id(run_id):
            return None
        data = self._read_json(self._run_path(run_id) / "summary.json")
        return RunSummary(**data) if data is not None else None

    @staticmethod
    def _write_json(path: Path, content: Any) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(content, f, indent=2, default=str)

    @staticmethod
    def _read_json(path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
