"""
AutoFixLoop: bounded model-driven repair of a failing test file.

    TESTING ──fail──▶ REPAIRING ──reply──▶ TESTING ──pass──▶ DONE(success)
       │                                      │
       └──────── budget exhausted ────────────┴──────────▶ DONE(failure)

Build validations, failed repair requests and empty or unchanged replies
each consume one attempt; the loop never runs more than `max_attempts`
of them. A reply with nothing new is not rebuilt. Repaired content only
ever lives in a scratch copy next to the artifact. The caller commits
`final_content` on success.
"""

import asyncio
import logging
import warnings
from enum import Enum
from pathlib import Path
from typing import List, Optional

from testgen_build import BuildRunner
from testgen_errors import GatewayError, NoProgressWarning, OperationCancelled, ToolInvocationError
from testgen_fsx import make_scratch, read_text_if_exists, remove_quietly
from testgen_models import BuildResult, FixAttempt, FixResult, SourceUnit
from testgen_prompts import strip_code_fences

logger = logging.getLogger(__name__)


class FixState(Enum):
    TESTING = "testing"
    REPAIRING = "repairing"
    DONE = "done"


class AutoFixLoop:

    def __init__(self, build_runner: BuildRunner, candidate_source, max_attempts: int = 3,
                 trace_collector=None):
        self.build_runner = build_runner
        self.candidate_source = candidate_source
        self.max_attempts = max_attempts
        self.trace_collector = trace_collector

    async def _validate(self, artifact_path: Path, content: str,
                        cancel: Optional[asyncio.Event]) -> BuildResult:
        scratch = make_scratch(artifact_path, content, tag="fix")
        try:
            return await self.build_runner.build(scratch, cancel=cancel)
        finally:
            remove_quietly(scratch)

    def _trace(self, artifact_path: Path, attempt: FixAttempt, succeeded: bool = False):
        if self.trace_collector is None:
            return
        try:
            self.trace_collector.record_fix_attempt(str(artifact_path), attempt, succeeded=succeeded)
        except Exception as e:
            logger.debug(f"Trace write failed: {e}")

    async def run(self, source_unit: SourceUnit, failing_content: str, artifact_path: Path,
                  diagnostics: Optional[str] = None,
                  cancel: Optional[asyncio.Event] = None) -> FixResult:
        """Repair `failing_content` until it builds and runs, or the budget is spent.

        Passing `diagnostics` means the content was just built and failed;
        that build counts as the first attempt.
        """
        artifact_path = Path(artifact_path)
        content = failing_content
        history: List[FixAttempt] = []
        latest = diagnostics or ""
        used = 0
        state = FixState.TESTING
        if diagnostics is not None:
            used = 1
            state = FixState.REPAIRING if used < self.max_attempts else FixState.DONE

        logger.info(f"  🔧 Auto-fix: up to {self.max_attempts} attempt(s) for {artifact_path.name}")

        while state != FixState.DONE:
            if state == FixState.TESTING:
                used += 1
                logger.info(f"    🔨 Attempt {used}/{self.max_attempts}: validating")
                try:
                    build = await self._validate(artifact_path, content, cancel)
                except OperationCancelled:
                    raise
                except ToolInvocationError as e:
                    latest = f"{e}\n{e.output}".strip()
                    attempt = FixAttempt(index=used, diagnostics=latest, error=str(e))
                    history.append(attempt)
                    self._trace(artifact_path, attempt)
                    logger.warning(f"    ⚠️ Toolchain error during validation: {e}")
                    state = FixState.REPAIRING if used < self.max_attempts else FixState.DONE
                    continue

                if build.success:
                    if history:
                        self._trace(artifact_path, history[-1], succeeded=True)
                    logger.info(f"    ✅ Repaired after {used} attempt(s)")
                    return FixResult(success=True, attempts=used, final_content=content,
                                     history=history, build=build)

                latest = build.diagnostics
                state = FixState.REPAIRING if used < self.max_attempts else FixState.DONE

            else:  # REPAIRING
                try:
                    reply = await self.candidate_source.repair(source_unit, content, latest, cancel)
                except OperationCancelled:
                    raise
                except (GatewayError, ToolInvocationError) as e:
                    used += 1
                    attempt = FixAttempt(index=used, diagnostics=latest, error=str(e))
                    history.append(attempt)
                    self._trace(artifact_path, attempt)
                    logger.warning(f"    ⚠️ Repair request failed ({used}/{self.max_attempts}): {e}")
                    state = FixState.REPAIRING if used < self.max_attempts else FixState.DONE
                    continue

                repaired = strip_code_fences(reply or "")
                attempt = FixAttempt(index=used + 1, diagnostics=latest, repaired_code=repaired)
                if not repaired.strip() or repaired == content:
                    # Nothing new to build; charge the attempt and ask again.
                    used += 1
                    attempt.index = used
                    attempt.no_progress = True
                    attempt.repaired_code = ""
                    msg = f"repair returned {'empty' if not repaired.strip() else 'unchanged'} content"
                    logger.warning(f"    ⚠️ No progress ({used}/{self.max_attempts}): {msg}")
                    warnings.warn(msg, NoProgressWarning, stacklevel=2)
                    history.append(attempt)
                    self._trace(artifact_path, attempt)
                    state = FixState.REPAIRING if used < self.max_attempts else FixState.DONE
                    continue

                content = repaired
                history.append(attempt)
                self._trace(artifact_path, attempt)
                state = FixState.TESTING

        logger.info(f"    ❌ Auto-fix gave up after {used} attempt(s)")
        return FixResult(success=False, attempts=used, error="All fix attempts failed",
                         history=history)


async def fix_file(loop: AutoFixLoop, applier, source_unit: SourceUnit, artifact_path: Path,
                   cancel: Optional[asyncio.Event] = None) -> FixResult:
    """Repair an existing test file in place; writes only when the repair passes."""
    artifact_path = Path(artifact_path)
    original = read_text_if_exists(artifact_path)
    result = await loop.run(source_unit, original, artifact_path, cancel=cancel)
    if result.success and result.final_content is not None and result.final_content != original:
        applier.commit(artifact_path, result.final_content)
        logger.info(f"✅ Wrote repaired {artifact_path}")
    return result
