"""
Trace Collector

Captures what went wrong during generation sessions, so failing candidates
and repair trajectories can be reviewed or turned into training data later:

  1. Model proposes a test → build fails
  2. This module captures: candidate code, diagnostics, repair attempts
  3. Verdicts of every candidate are kept alongside for context

Trace format:
  - Machine-readable (JSONL, one object per line)
  - Compact (fields are clipped to what is useful for review)

Usage:
    collector = TraceCollector(state_dir)
    collector.record_candidate_failure(artifact, candidate, diagnostics, ...)
    collector.record_fix_attempt(artifact, attempt, ...)
    collector.export_for_training()  # → JSONL
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from testgen_models import CandidateTest, FixAttempt, Verdict

logger = logging.getLogger(__name__)


class TraceCollector:
    """
    Collects failure trajectories from generation sessions.

    Writing traces never raises; a broken trace file only costs the trace.
    """

    def __init__(self, state_dir: Path, session_id: str = "", model_used: str = "unknown"):
        self.state_dir = Path(state_dir)
        self.traces_dir = self.state_dir / "traces"
        self.traces_dir.mkdir(parents=True, exist_ok=True)
        self.session_id = session_id
        self.model_used = model_used

        self.traces: list[dict] = []
        self.traces_file = self.traces_dir / "failure_traces.jsonl"

    def record_candidate_failure(
        self,
        artifact_path: str,
        candidate: CandidateTest,
        diagnostics: str,
        stage: str = "build",
        iteration: int = 0,
        source_excerpt: str = "",
    ):
        """A candidate that failed to build or run as first proposed."""
        trace = {
            "type": "candidate_failure",
            "timestamp": datetime.now().isoformat(),
            "session_id": self.session_id,
            "artifact": str(artifact_path),
            "candidate": candidate.name,
            "goal": candidate.goal[:500],
            "model_used": self.model_used,
            "iteration": iteration,
            "stage": stage,
            "generated_code": candidate.code[:3000],
            "includes": list(candidate.includes),
            "source_excerpt": source_excerpt[:2000],
            "diagnostics": diagnostics[:1500],
            "correct_code": None,  # Filled in during review
        }
        self.traces.append(trace)
        self._append_to_file(trace)
        logger.info(f"  📝 Trace recorded: candidate_failure for {candidate.name} ({stage})")

    def record_fix_attempt(
        self,
        artifact_path: str,
        attempt: FixAttempt,
        succeeded: bool = False,
    ):
        trace = {
            "type": "fix_attempt",
            "timestamp": datetime.now().isoformat(),
            "session_id": self.session_id,
            "artifact": str(artifact_path),
            "model_used": self.model_used,
            "attempt": attempt.index,
            "diagnostics": (attempt.diagnostics or "")[:1500],
            "repaired_code": attempt.repaired_code[:3000],
            "error": attempt.error,
            "no_progress": attempt.no_progress,
            "succeeded": succeeded,
        }
        self.traces.append(trace)
        self._append_to_file(trace)

    def record_verdict(
        self,
        candidate: str,
        verdict: Verdict,
        fixed: bool = False,
        file_pct: float = 0.0,
        project_pct: float = 0.0,
        iteration: int = 0,
    ):
        trace = {
            "type": "verdict",
            "timestamp": datetime.now().isoformat(),
            "session_id": self.session_id,
            "candidate": candidate,
            "verdict": verdict.value,
            "fixed": fixed,
            "file_pct": round(file_pct, 2),
            "project_pct": round(project_pct, 2),
            "iteration": iteration,
        }
        self.traces.append(trace)
        self._append_to_file(trace)

    def _append_to_file(self, trace: dict):
        try:
            with open(self.traces_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(trace, default=str) + "\n")
        except OSError as e:
            logger.debug(f"Failed to write trace: {e}")

    def get_session_stats(self) -> dict:
        """Counts for the traces recorded by this collector instance."""
        return {
            "total": len(self.traces),
            "candidate_failures": sum(1 for t in self.traces if t["type"] == "candidate_failure"),
            "fix_attempts": sum(1 for t in self.traces if t["type"] == "fix_attempt"),
            "fixes_succeeded": sum(1 for t in self.traces
                                   if t["type"] == "fix_attempt" and t["succeeded"]),
            "verdicts": sum(1 for t in self.traces if t["type"] == "verdict"),
        }

    def _load_all(self) -> list:
        all_traces = []
        if self.traces_file.exists():
            with open(self.traces_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        try:
                            all_traces.append(json.loads(line))
                        except json.JSONDecodeError:
                            pass
        return all_traces

    def export_for_training(self, output_path: Optional[str] = None) -> str:
        """
        Export failure traces (all sessions) as JSONL.

        Verdict records are left out; they carry no code.
        """
        output = output_path or str(self.traces_dir / "training_traces.jsonl")
        traces = [t for t in self._load_all() if t.get("type") != "verdict"]

        with open(output, "w", encoding="utf-8") as f:
            for trace in traces:
                f.write(json.dumps(trace, default=str) + "\n")

        logger.info(f"📦 Exported {len(traces)} traces to {output}")
        return output
