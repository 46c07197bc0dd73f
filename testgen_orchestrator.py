"""
Orchestrator: one test generation session for one source unit.

  RESOLVE → SNAPSHOT → BASELINE → [GENERATE → APPLY (→ FIX)]* → ACCEPT / ROLLBACK

Every collaborator is injected; progress is returned as a list of typed
events (and optionally streamed through `on_event`).
"""

import uuid
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from testgen_applier import CandidateApplier, dropped_tests
from testgen_build import BuildRunner
from testgen_candidates import CandidateSource, GenerationRequest
from testgen_config import AcceptanceRule, Config
from testgen_coverage import CoverageProbe
from testgen_discovery import resolve_artifact_path
from testgen_errors import GatewayError, OperationCancelled, ToolInvocationError
from testgen_fixer import AutoFixLoop
from testgen_fsx import read_text_if_exists
from testgen_models import (
    CandidateResult, CandidateTest, CoverageSnapshot, EventKind, ProgressEvent,
    SessionOutcome, SessionPhase, SessionReport, SessionState, SourceUnit,
    TestArtifact, Verdict,
)
from testgen_session import SessionManager, restore_files
from testgen_trace_collector import TraceCollector

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Drives the generate → apply → validate → fix loop for one source unit.
    """

    def __init__(
        self,
        config: Config,
        build_runner: BuildRunner,
        coverage_probe: CoverageProbe,
        candidate_source: CandidateSource,
        session: Optional[SessionManager] = None,
        trace_collector: Optional[TraceCollector] = None,
        fix_loop: Optional[AutoFixLoop] = None,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.config = config
        self.build_runner = build_runner
        self.coverage_probe = coverage_probe
        self.candidate_source = candidate_source
        self.session = session
        self.trace_collector = trace_collector
        self.fix_loop = fix_loop or AutoFixLoop(
            build_runner, candidate_source,
            max_attempts=config.max_fix_attempts, trace_collector=trace_collector)
        self.on_event = on_event
        self.events: List[ProgressEvent] = []

    # ------------------------------------------------------------------
    # Ancillary plumbing (never fatal)
    # ------------------------------------------------------------------

    def _emit(self, kind: EventKind, message: str, **data):
        event = ProgressEvent(kind=kind, message=message, data=data)
        self.events.append(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as e:
                logger.warning(f"⚠️ Progress callback failed: {e}")

    def _persist(self, state: SessionState, message: str = ""):
        if self.session is None:
            return
        try:
            self.session.save_state(state)
            if message:
                self.session.update_progress(state, message)
        except OSError as e:
            logger.warning(f"⚠️ Could not persist session state: {e}")

    def _trace(self, method: str, *args, **kwargs):
        if self.trace_collector is None:
            return
        try:
            getattr(self.trace_collector, method)(*args, **kwargs)
        except Exception as e:
            logger.debug(f"Trace write failed: {e}")

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _initialize_session(self, source: SourceUnit, artifact: TestArtifact) -> SessionState:
        state = SessionState(
            session_id=str(uuid.uuid4())[:8],
            source_path=str(source.path),
            artifact_path=str(artifact.path),
            source_original=source.text,
            artifact_original=artifact.text,
            artifact_existed=artifact.existed,
            started_at=datetime.now().isoformat(),
        )
        if self.session is not None:
            try:
                self.session.snapshot(state)
            except OSError as e:
                logger.warning(f"⚠️ Could not snapshot session files: {e}")
        self._persist(state, "Session initialized")
        return state

    async def _baseline(self, source: SourceUnit, artifact: TestArtifact,
                        cancel: Optional[asyncio.Event]) -> CoverageSnapshot:
        if not artifact.existed or not artifact.text.strip():
            return CoverageSnapshot.empty()
        logger.info("📊 Measuring baseline coverage...")
        build = await self.build_runner.build(artifact.path, cancel=cancel)
        if not build.success:
            logger.warning(f"⚠️ Existing test file does not build ({build.stage} step); baseline is empty")
            return CoverageSnapshot.empty()
        return await self.coverage_probe.measure(source, build, cancel=cancel)

    async def run(self, source_path: Path, test_path: Optional[Path] = None,
                  cancel: Optional[asyncio.Event] = None) -> SessionReport:
        self.events = []
        source_path = Path(source_path)
        bypass = self.config.bypass_validation

        artifact_path = resolve_artifact_path(
            source_path, self.config.root, explicit=test_path,
            allow_overwrite_fallback=self.config.allow_overwrite_fallback)
        source = SourceUnit.load(source_path)
        artifact = TestArtifact.load(artifact_path)

        logger.info(f"{'='*60}")
        logger.info("TEST GENERATION SESSION STARTING")
        logger.info(f"Source: {source_path}")
        logger.info(f"Test file: {artifact_path}{'' if artifact.existed else ' (new)'}")
        logger.info(f"Validation: {'⚠️ bypassed' if bypass else '✅ on'}  "
                    f"Auto-fix: {'on' if self.config.enable_auto_fix else 'off'} "
                    f"(max {self.config.max_fix_attempts})")
        logger.info(f"Max iterations: {self.config.max_iterations}  Target: {self.config.target_pct:.0f}%")
        logger.info(f"{'='*60}")

        state = self._initialize_session(source, artifact)
        self._emit(EventKind.INFO, f"Session {state.session_id} started",
                   source=str(source_path), artifact=str(artifact_path))

        applier = CandidateApplier(
            self.build_runner, self.coverage_probe, source_unit=source,
            root=self.config.root, include_dirs=self.config.build.include_dirs,
            commit_no_coverage=self.config.commit_no_coverage)

        try:
            if not bypass:
                state.initial_coverage = await self._baseline(source, artifact, cancel)
            state.coverage = state.initial_coverage
            applier.coverage = state.initial_coverage
            self._emit(EventKind.COVERAGE, f"Baseline coverage: {state.initial_coverage.summary()}",
                       **state.initial_coverage.to_dict())

            proposed = await self._iterate(state, source, Path(artifact_path), applier, bypass, cancel)
        except OperationCancelled as e:
            state.phase = SessionPhase.CANCELLED
            state.error = str(e)
            state.completed_at = datetime.now().isoformat()
            self._emit(EventKind.ERROR, "Session cancelled")
            self._persist(state, f"⚠️ CANCELLED: {e}")
            logger.warning("⚠️ Session cancelled; test file left at its last committed state")
            raise
        except (GatewayError, ToolInvocationError) as e:
            state.phase = SessionPhase.ABORTED
            state.error = str(e)
            state.completed_at = datetime.now().isoformat()
            self._emit(EventKind.ERROR, f"Session aborted: {e}")
            self._persist(state, f"❌ ABORTED: {e}")
            logger.error(f"❌ Session aborted: {e}")
            raise
        finally:
            cleanup = getattr(self.build_runner, "cleanup", None)
            if cleanup is not None:
                cleanup()

        return self._finish(state, applier, proposed, bypass)

    async def _iterate(self, state: SessionState, source: SourceUnit, artifact_path: Path,
                       applier: CandidateApplier, bypass: bool,
                       cancel: Optional[asyncio.Event]) -> int:
        """Run generation rounds; returns how many candidates were proposed in total."""
        proposed = 0
        for iteration in range(1, self.config.max_iterations + 1):
            state.iteration = iteration
            state.phase = SessionPhase.GENERATING
            logger.info(f"\n{'='*60}")
            logger.info(f"ITERATION {iteration}/{self.config.max_iterations}")
            logger.info(f"{'='*60}")
            self._emit(EventKind.ITERATION, f"Iteration {iteration}", iteration=iteration)

            request = GenerationRequest(
                source=source,
                artifact_path=artifact_path,
                artifact_text=read_text_if_exists(artifact_path),
                missed_lines=state.coverage.missed_lines,
                prev_failures=state.failures[-5:],
                root=self.config.root,
            )
            candidates = await self.candidate_source.generate(request, cancel)
            if not candidates:
                logger.warning("⚠️ No candidates proposed; stopping")
                self._emit(EventKind.WARNING, "No candidates proposed", iteration=iteration)
                break
            proposed += len(candidates)

            state.phase = SessionPhase.APPLYING
            for i, candidate in enumerate(candidates, 1):
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("Cancelled between candidates")
                logger.info(f"🧪 [{i}/{len(candidates)}] {candidate.name}")
                self._emit(EventKind.CANDIDATE, candidate.name, index=i, total=len(candidates))

                result = await self._process_candidate(candidate, state, source, artifact_path,
                                                       applier, bypass, cancel)
                state.add_result(result)
                state.coverage = applier.coverage
                self._emit(EventKind.VERDICT, f"{candidate.name}: {result.verdict.value}",
                           **result.to_dict())
                self._trace("record_verdict", candidate.name, result.verdict, fixed=result.fixed,
                            file_pct=state.coverage.file_pct, project_pct=state.coverage.project_pct,
                            iteration=iteration)

            if not bypass:
                await self._remeasure(state, source, applier, cancel)
            self._persist(state, f"Batch of {len(candidates)} done: {state.coverage.summary()}")

            if not bypass and state.coverage.file_pct >= self.config.target_pct:
                logger.info(f"✅ Target coverage reached ({state.coverage.file_pct:.1f}%)")
                break
        return proposed

    async def _process_candidate(self, candidate: CandidateTest, state: SessionState,
                                 source: SourceUnit, artifact_path: Path,
                                 applier: CandidateApplier, bypass: bool,
                                 cancel: Optional[asyncio.Event]) -> CandidateResult:
        outcome = await applier.apply(candidate, artifact_path, bypass=bypass, cancel=cancel)
        if outcome.verdict != Verdict.FAIL:
            if outcome.committed:
                self._emit(EventKind.COMMIT, f"Committed {candidate.name}", name=candidate.name)
            return CandidateResult(name=candidate.name, verdict=outcome.verdict,
                                   duplicate=outcome.duplicate, committed=outcome.committed)

        diagnostics = outcome.build.diagnostics if outcome.build else ""
        self._trace("record_candidate_failure", str(artifact_path), candidate, diagnostics,
                    stage=outcome.build.stage if outcome.build else "build",
                    iteration=state.iteration, source_excerpt=source.text)

        if bypass or not self.config.enable_auto_fix:
            return CandidateResult(name=candidate.name, verdict=Verdict.FAIL,
                                   duplicate=outcome.duplicate, error=diagnostics[:2000])

        state.phase = SessionPhase.FIXING
        self._emit(EventKind.FIX, f"Repairing {candidate.name}", name=candidate.name)
        existed = artifact_path.exists()
        before = read_text_if_exists(artifact_path)
        fix = await self.fix_loop.run(source, outcome.replica_text, artifact_path,
                                      diagnostics=diagnostics, cancel=cancel)
        state.phase = SessionPhase.APPLYING
        if not fix.success:
            return CandidateResult(name=candidate.name, verdict=Verdict.FAIL,
                                   fix_attempts=fix.attempts,
                                   error=(fix.error or "") + "\n" + diagnostics[:2000])

        lost = dropped_tests(before, fix.final_content)
        if lost:
            logger.warning(f"  ⚠️ Repair of {candidate.name} dropped {len(lost)} existing test(s), discarded")
            return CandidateResult(name=candidate.name, verdict=Verdict.FAIL,
                                   fix_attempts=fix.attempts,
                                   error="repair dropped existing tests: " + ", ".join(sorted(lost)))

        verdict, committed = await applier.accept(candidate, artifact_path, fix.final_content,
                                                  before, existed, fix.build, cancel=cancel)
        if committed:
            self._emit(EventKind.COMMIT, f"Committed repaired {candidate.name}", name=candidate.name)
        return CandidateResult(name=candidate.name, verdict=verdict, fixed=True,
                               fix_attempts=fix.attempts, committed=committed)

    async def _remeasure(self, state: SessionState, source: SourceUnit,
                         applier: CandidateApplier, cancel: Optional[asyncio.Event]):
        build = getattr(self.build_runner, "last_success", None)
        if build is None:
            return
        snap = await self.coverage_probe.measure(source, build, cancel=cancel)
        if snap.file_pct < state.coverage.file_pct or snap.project_pct < state.coverage.project_pct:
            logger.warning(f"⚠️ Post-batch coverage ({snap.summary()}) below running snapshot; keeping the latter")
            return
        state.coverage = snap
        applier.coverage = snap
        self._emit(EventKind.COVERAGE, f"Coverage: {snap.summary()}", **snap.to_dict())

    def _accepted(self, state: SessionState) -> bool:
        rule = self.config.acceptance
        before, after = state.initial_coverage, state.coverage
        if rule == AcceptanceRule.ALWAYS:
            return True
        if rule == AcceptanceRule.ANY_COMMIT:
            return state.committed_count() > 0
        if rule == AcceptanceRule.FILE_GAIN:
            return after.file_pct > before.file_pct
        return after.file_pct > before.file_pct or after.project_pct > before.project_pct

    def _rollback(self, state: SessionState, applier: CandidateApplier):
        logger.warning("↩️ Acceptance rule not met; rolling back")
        restore_files(state, write=applier.commit)
        state.coverage = state.initial_coverage
        self._emit(EventKind.ROLLBACK, "Restored pre-session files",
                   artifact_existed=state.artifact_existed)

    def _finish(self, state: SessionState, applier: CandidateApplier,
                proposed: int, bypass: bool) -> SessionReport:
        if proposed == 0:
            outcome = SessionOutcome.NO_CANDIDATES
            state.phase = SessionPhase.COMMITTED
        elif bypass or self._accepted(state):
            outcome = SessionOutcome.COMMITTED
            state.phase = SessionPhase.COMMITTED
        else:
            self._rollback(state, applier)
            outcome = SessionOutcome.ROLLED_BACK
            state.phase = SessionPhase.ROLLED_BACK
        state.completed_at = datetime.now().isoformat()

        report = SessionReport(
            outcome=outcome,
            artifact_path=Path(state.artifact_path),
            results=list(state.results),
            initial_coverage=state.initial_coverage,
            final_coverage=state.coverage,
            iterations=state.iteration,
            events=self.events,
        )

        counts = {v: sum(1 for r in state.results if r.verdict == v) for v in Verdict}
        summary = ", ".join(f"{v.value}={n}" for v, n in counts.items() if n)
        self._persist(state, f"{'✅' if outcome == SessionOutcome.COMMITTED else '⚠️'} "
                             f"{outcome.value.upper()}: {summary or 'no results'}")
        if self.session is not None:
            try:
                path = self.session.write_report(state, report)
                logger.info(f"Report: {path}")
            except OSError as e:
                logger.warning(f"⚠️ Could not write session report: {e}")
        stats = self.trace_collector.get_session_stats() if self.trace_collector else {}

        logger.info(f"\n{'='*60}")
        logger.info(f"SESSION {outcome.value.upper()}")
        logger.info(f"Session ID: {state.session_id}")
        logger.info(f"Verdicts: {summary or 'none'}")
        logger.info(f"Coverage: {state.initial_coverage.summary()} → {state.coverage.summary()}")
        if stats.get("total"):
            logger.info(f"Traces recorded: {stats['total']}")
        logger.info(f"{'='*60}")
        return report
