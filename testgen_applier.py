"""
CandidateApplier: merge one candidate into a replica, validate, commit or discard.

Per candidate:
  1. Copy the current artifact bytes into a sibling replica file
  2. Merge the candidate's includes
  3. Skip the block if a test with that name is already declared
  4. Append the block under the generator marker
  5. Bypass: commit straight away. Otherwise build the replica, commit on
     success, then measure coverage and classify against the running snapshot

The canonical artifact is only ever written through commit().
"""

import re
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from testgen_coverage import CoverageProbe
from testgen_build import BuildRunner
from testgen_fsx import atomic_write, make_scratch, read_text_if_exists, remove_quietly
from testgen_includes import merge_includes, prepare_includes
from testgen_models import (
    BuildResult, CandidateTest, CoverageSnapshot, SourceUnit, Verdict,
)

logger = logging.getLogger(__name__)

MARKER = "// ─── AUTO-GENERATED TEST: {name} ───"
TEST_MACRO = re.compile(
    r"^\s*(?:TEST|TEST_F|TEST_P|TYPED_TEST|TYPED_TEST_P)\s*\(\s*(\w+)\s*,\s*(\w+)\s*\)",
    re.MULTILINE)


def declared_macros(text: str) -> List[Tuple[str, str]]:
    """(suite, test) pairs of every gtest macro header in `text`."""
    return [(m.group(1), m.group(2)) for m in TEST_MACRO.finditer(text)]


def declared_tests(text: str) -> Set[str]:
    """`Suite.Test` names of every test declared in `text`."""
    return {f"{suite}.{test}" for suite, test in declared_macros(text)}


def is_duplicate(candidate: CandidateTest, text: str) -> bool:
    """The candidate's macros, or failing that its name, are already declared.

    Only qualified names are compared when the code declares macros;
    gtest accepts the same test name under different suites.
    """
    own = declared_tests(candidate.code)
    if own:
        return bool(own & declared_tests(text))
    if "." in candidate.name:
        return candidate.name in declared_tests(text)
    return any(test == candidate.name for _, test in declared_macros(text))


def dropped_tests(before: str, after: str) -> Set[str]:
    """Tests declared in `before` that `after` no longer declares."""
    return declared_tests(before) - declared_tests(after)


def append_block(text: str, name: str, code: str) -> str:
    lines = text.split("\n") if text else []
    if lines and lines[-1].strip() != "":
        lines.append("")
    lines += [MARKER.format(name=name), code.strip(), ""]
    return "\n".join(lines)


def classify(before: CoverageSnapshot, after: CoverageSnapshot) -> Verdict:
    if after.file_pct > before.file_pct:
        return Verdict.PASS
    if after.project_pct > before.project_pct:
        return Verdict.OVERALL_INC
    return Verdict.NO_COV


@dataclass
class ApplyOutcome:
    verdict: Verdict
    build: Optional[BuildResult] = None
    coverage: Optional[CoverageSnapshot] = None
    replica_text: str = ""
    duplicate: bool = False
    committed: bool = False


class CandidateApplier:
    """Applies candidates to one artifact, strictly one after another.

    `coverage` is the running snapshot verdicts are classified against; it
    only advances on commits that raised coverage.
    """

    def __init__(
        self,
        build_runner: BuildRunner,
        coverage_probe: CoverageProbe,
        source_unit: Optional[SourceUnit] = None,
        root: Optional[Path] = None,
        include_dirs: Optional[List[str]] = None,
        verify_includes: bool = True,
        commit_no_coverage: bool = True,
    ):
        self.build_runner = build_runner
        self.coverage_probe = coverage_probe
        self.source_unit = source_unit
        self.root = Path(root) if root else None
        self.include_dirs = include_dirs or []
        self.verify_includes = verify_includes
        self.commit_no_coverage = commit_no_coverage
        self.coverage = CoverageSnapshot.empty()
        self._verdicts: Dict[str, Verdict] = {}

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    def commit(self, artifact_path: Path, text: str):
        """Atomically replace the canonical artifact with `text`."""
        atomic_write(Path(artifact_path), text)
        logger.debug(f"  💾 Committed {Path(artifact_path).name} ({len(text)} chars)")

    def _revert(self, artifact_path: Path, text: str, existed: bool):
        if existed:
            self.commit(artifact_path, text)
        else:
            remove_quietly(Path(artifact_path))

    # ------------------------------------------------------------------
    # Verdict memory
    # ------------------------------------------------------------------

    def remember(self, candidate: CandidateTest, verdict: Verdict):
        self._verdicts[candidate.name] = verdict
        for suite, test in declared_macros(candidate.code):
            self._verdicts[f"{suite}.{test}"] = verdict

    def prior_verdict(self, candidate: CandidateTest) -> Verdict:
        if candidate.name in self._verdicts:
            return self._verdicts[candidate.name]
        for suite, test in declared_macros(candidate.code):
            key = f"{suite}.{test}"
            if key in self._verdicts:
                return self._verdicts[key]
        return Verdict.NO_COV

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _includes(self, candidate: CandidateTest, artifact_text: str, artifact_path: Path) -> List[str]:
        if not self.verify_includes or self.source_unit is None:
            return list(candidate.includes)
        check = prepare_includes(
            candidate.includes, artifact_text, artifact_path,
            self.source_unit.path, self.root or artifact_path.parent, self.include_dirs)
        return check.includes

    async def apply(self, candidate: CandidateTest, artifact_path: Path,
                    bypass: bool = False, cancel: Optional[asyncio.Event] = None) -> ApplyOutcome:
        artifact_path = Path(artifact_path)
        existed = artifact_path.exists()
        original = read_text_if_exists(artifact_path)

        merged, added = merge_includes(original, self._includes(candidate, original, artifact_path))
        for inc in added:
            logger.debug(f"    + {inc}")

        duplicate = is_duplicate(candidate, original)
        if duplicate:
            prior = self.prior_verdict(candidate)
            logger.info(f"  ⚠️ Test {candidate.name} already present, skipping block")
            if not added:
                return ApplyOutcome(verdict=prior, coverage=self.coverage,
                                    replica_text=original, duplicate=True)
            text = merged
        else:
            text = append_block(merged, candidate.name, candidate.code)

        replica = make_scratch(artifact_path, text)
        try:
            if bypass:
                self.commit(artifact_path, text)
                verdict = self.prior_verdict(candidate) if duplicate else Verdict.PASS
                if not duplicate:
                    self.remember(candidate, verdict)
                logger.info(f"  ✅ {candidate.name}: committed without validation")
                return ApplyOutcome(verdict=verdict, coverage=self.coverage, replica_text=text,
                                    duplicate=duplicate, committed=True)

            build = await self.build_runner.build(replica, cancel=cancel)
            if not build.success:
                logger.info(f"  ❌ {candidate.name}: {build.stage} failed, replica discarded")
                return ApplyOutcome(verdict=Verdict.FAIL, build=build, coverage=self.coverage,
                                    replica_text=text, duplicate=duplicate)

            verdict, committed = await self.accept(candidate, artifact_path, text, original,
                                                   existed, build, cancel=cancel)
            if duplicate and committed:
                verdict = self.prior_verdict(candidate)
            return ApplyOutcome(verdict=verdict, build=build, coverage=self.coverage,
                                replica_text=text, duplicate=duplicate, committed=committed)
        finally:
            remove_quietly(replica)

    async def accept(self, candidate: CandidateTest, artifact_path: Path, text: str,
                     previous_text: str, existed: bool, build: BuildResult,
                     cancel: Optional[asyncio.Event] = None) -> Tuple[Verdict, bool]:
        """Commit validated content, measure, classify.

        Returns (verdict, committed). A commit that lowers file or project
        coverage below the running snapshot is always reverted; a noCov
        commit is reverted too when commit_no_coverage is off.
        """
        self.commit(artifact_path, text)

        if self.source_unit is None:
            snap = self.coverage  # nothing to measure against
        else:
            snap = await self.coverage_probe.measure(self.source_unit, build, cancel=cancel)
        verdict = classify(self.coverage, snap)

        if snap.file_pct < self.coverage.file_pct or snap.project_pct < self.coverage.project_pct:
            self._revert(artifact_path, previous_text, existed)
            logger.warning(f"  ↩️ {candidate.name}: coverage dropped to {snap.summary()}, reverted")
            return Verdict.NO_COV, False

        if verdict == Verdict.NO_COV and not self.commit_no_coverage:
            self._revert(artifact_path, previous_text, existed)
            logger.info(f"  ↩️ {candidate.name}: no coverage gain, reverted")
            return verdict, False

        if verdict != Verdict.NO_COV:
            self.coverage = snap
        self.remember(candidate, verdict)
        icon = "✅" if verdict == Verdict.PASS else "📊"
        logger.info(f"  {icon} {candidate.name}: {verdict.value} ({self.coverage.summary()})")
        return verdict, True
