"""
Session management for the test generation pipeline.

Handles persistence of session state, the pre-session snapshots used for
rollback, and the progress log.
"""

import shutil
from pathlib import Path
from datetime import datetime
from typing import Callable, Optional

from testgen_fsx import atomic_write, read_text, remove_quietly
from testgen_models import SessionReport, SessionState

import logging
logger = logging.getLogger(__name__)


def restore_files(state: SessionState, write: Callable[[Path, str], None] = atomic_write):
    """Put the source unit and test artifact back to their pre-session bytes.

    An artifact that did not exist before the session is deleted. `write`
    replaces the artifact; the orchestrator passes its commit writer.
    """
    source = Path(state.source_path)
    if not source.exists() or read_text(source) != state.source_original:
        atomic_write(source, state.source_original)
        logger.info(f"  ↩️ Restored {source.name}")

    artifact = Path(state.artifact_path)
    if state.artifact_existed:
        if not artifact.exists() or read_text(artifact) != state.artifact_original:
            write(artifact, state.artifact_original)
        logger.info(f"  ↩️ Restored {artifact.name}")
    elif artifact.exists():
        remove_quietly(artifact)
        logger.info(f"  ↩️ Removed {artifact.name} (did not exist before the session)")


class SessionManager:
    """
    Manages session state persistence and progress tracking.

    Key files (under the state dir):
    - state.json: Machine-readable session state
    - PROGRESS.md: Human-readable progress log, newest entry first
    - snapshots/<session_id>/: Byte copies of the files taken before the session
    - reports/session-<id>.md: Summary written at session end
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / "state.json"
        self.progress_file = self.state_dir / "PROGRESS.md"
        self.snapshots_dir = self.state_dir / "snapshots"
        self.reports_dir = self.state_dir / "reports"

        for d in (self.snapshots_dir, self.reports_dir):
            d.mkdir(parents=True, exist_ok=True)

    def has_existing_session(self) -> bool:
        return self.state_file.exists()

    def save_state(self, state: SessionState):
        atomic_write(self.state_file, state.to_json())
        logger.debug(f"State saved: iteration={state.iteration}, phase={state.phase.value}")

    def load_state(self) -> SessionState:
        if not self.state_file.exists():
            raise FileNotFoundError(f"No state file found: {self.state_file}")
        state = SessionState.from_json(self.state_file.read_text(encoding="utf-8"))
        logger.debug(f"State loaded: iteration={state.iteration}, phase={state.phase.value}")
        return state

    def snapshot(self, state: SessionState) -> Path:
        """Copy the pre-session files next to the state file."""
        target = self.snapshots_dir / state.session_id
        target.mkdir(parents=True, exist_ok=True)
        shutil.copy2(state.source_path, target / Path(state.source_path).name)
        if state.artifact_existed:
            shutil.copy2(state.artifact_path, target / Path(state.artifact_path).name)
        return target

    def restore_snapshot(self, state: Optional[SessionState] = None) -> SessionState:
        """Roll the files of a (possibly crashed) session back to their snapshot."""
        state = state or self.load_state()
        restore_files(state)
        return state

    def update_progress(self, state: SessionState, message: str):
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        if self.progress_file.exists():
            content = self.progress_file.read_text(encoding="utf-8")
        else:
            content = (f"# Progress Log\n\n**Source:** {state.source_path}\n"
                       f"**Test file:** {state.artifact_path}\n"
                       f"**Session ID:** {state.session_id}\n**Started:** {state.started_at}\n\n---\n\n")

        entry = f"## [{timestamp}] Iteration {state.iteration} — {state.phase.value.upper()}\n\n{message}\n\n---\n\n"

        parts = content.split("---\n\n", 1)
        if len(parts) == 2:
            content = parts[0] + "---\n\n" + entry + parts[1]
        else:
            content += entry

        self.progress_file.write_text(content, encoding="utf-8")

    def write_report(self, state: SessionState, report: SessionReport) -> Path:
        lines = [
            f"# Session {state.session_id}",
            "",
            f"**Outcome:** {report.outcome.value}",
            f"**Source:** {state.source_path}",
            f"**Test file:** {state.artifact_path}",
            f"**Iterations:** {report.iterations}",
            f"**Started:** {state.started_at}",
            f"**Completed:** {state.completed_at}",
            "",
            "## Coverage",
            "",
            f"- Before: {report.initial_coverage.summary()}",
            f"- After:  {report.final_coverage.summary()}",
            "",
            "## Candidates",
            "",
            "| Test | Verdict | Fixed | Attempts | Committed |",
            "|---|---|---|---|---|",
        ]
        for r in report.results:
            lines.append(f"| {r.name} | {r.verdict.value} | {'yes' if r.fixed else ''} | "
                         f"{r.fix_attempts or ''} | {'yes' if r.committed else ''} |")
        if state.error:
            lines += ["", "## Error", "", state.error]

        path = self.reports_dir / f"session-{state.session_id}.md"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
