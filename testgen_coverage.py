"""
CoverageProbe: per-line coverage for one source unit from LLVM profiles.

  1. llvm-profdata merge   raw .profraw files of one build → merged.profdata
  2. llvm-cov export       whole-project line coverage as JSON
  3. parse_llvm_export     keep only the lines of the source unit

A line is covered iff its execution count is nonzero. The project-wide
percentage is the exporter's own aggregate, not recomputed here.
"""

import json
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

from testgen_config import CoverageConfig
from testgen_errors import ToolInvocationError
from testgen_models import BuildResult, CoverageSnapshot, SourceUnit
from testgen_process import run_process

logger = logging.getLogger(__name__)


def _match_file_entry(files: list, source_path: Path) -> Optional[dict]:
    """Export entry for `source_path`: exact path, else longest path-suffix match."""
    target = Path(source_path).resolve()
    best, best_score = None, 0
    for entry in files:
        name = entry.get("filename", "")
        if not name:
            continue
        p = Path(name)
        try:
            if p.resolve() == target:
                return entry
        except OSError:
            pass
        if p.name != target.name:
            continue
        score = 0
        for a, b in zip(reversed(p.parts), reversed(target.parts)):
            if a != b:
                break
            score += 1
        if score > best_score:
            best, best_score = entry, score
    return best


def line_counts(segments: list) -> Dict[int, int]:
    """Max execution count per line over segments that carry a count.

    Segment layout: [line, col, count, has_count, is_region_entry, is_gap_region].
    """
    counts: Dict[int, int] = {}
    for seg in segments:
        if len(seg) < 3:
            continue
        line, count = int(seg[0]), int(seg[2])
        has_count = bool(seg[3]) if len(seg) > 3 else True
        is_gap = bool(seg[5]) if len(seg) > 5 else False
        if not has_count or is_gap:
            continue
        counts[line] = max(counts.get(line, 0), count)
    return counts


def parse_llvm_export(payload: dict, source_path: Path) -> CoverageSnapshot:
    data = (payload.get("data") or [{}])[0]
    totals = data.get("totals") or payload.get("totals") or {}
    project_pct = float(totals.get("lines", {}).get("percent", 0.0))

    entry = _match_file_entry(data.get("files", []), source_path)
    if entry is None:
        logger.warning(f"  ⚠️ {Path(source_path).name} not present in coverage export")
        counts = {}
    else:
        counts = line_counts(entry.get("segments", []))

    covered = frozenset(line for line, c in counts.items() if c > 0)
    missed = tuple(sorted(line for line, c in counts.items() if c == 0))
    total = len(covered) + len(missed)
    if total == 0:
        logger.warning(f"  ⚠️ No instrumented lines for {Path(source_path).name}; reporting 100% file coverage")
        file_pct = 100.0
    else:
        file_pct = len(covered) / total * 100.0

    return CoverageSnapshot(file_pct=file_pct, project_pct=project_pct,
                            missed_lines=missed, covered_lines=covered)


class CoverageProbe:
    """Turns the raw profiles of one successful build into a CoverageSnapshot."""

    def __init__(self, config: CoverageConfig, root: Path):
        self.config = config
        self.root = Path(root).resolve()

    async def measure(self, source: SourceUnit, build: Optional[BuildResult],
                      cancel: Optional[asyncio.Event] = None) -> CoverageSnapshot:
        if not self.config.enabled:
            return CoverageSnapshot.empty()
        if build is None or not build.success or build.profile_dir is None or build.binary is None:
            return CoverageSnapshot.empty()

        raw = sorted(Path(build.profile_dir).glob("*.profraw"))
        if not raw:
            logger.debug("  No raw profiles produced; coverage is empty")
            return CoverageSnapshot.empty()

        merged = Path(build.profile_dir) / "merged.profdata"
        merge = await run_process(
            [self.config.profdata_tool, "merge", "-sparse", *[str(p) for p in raw], "-o", str(merged)],
            cwd=self.root, timeout=self.config.timeout_seconds, cancel=cancel)
        if not merge.ok:
            raise ToolInvocationError(f"{self.config.profdata_tool} merge failed (exit {merge.returncode})",
                                      command=merge.command, output=merge.output)

        export = await run_process(
            [self.config.cov_tool, "export", str(build.binary),
             f"-instr-profile={merged}", "-format=text", "-skip-functions"],
            cwd=self.root, timeout=self.config.timeout_seconds, cancel=cancel)
        if not export.ok:
            raise ToolInvocationError(f"{self.config.cov_tool} export failed (exit {export.returncode})",
                                      command=export.command, output=export.output)

        try:
            payload = json.loads(export.stdout)
        except json.JSONDecodeError as e:
            raise ToolInvocationError(f"Unparseable coverage export: {e}",
                                      command=export.command, output=export.stdout[:2000])

        snap = parse_llvm_export(payload, source.path)
        logger.info(f"  📊 Coverage: {snap.summary()}")
        return snap
