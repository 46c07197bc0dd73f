"""
Data models for the test generation pipeline.

Zero external dependencies beyond Python stdlib.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, FrozenSet
from enum import Enum
import json

from testgen_fsx import read_text


class Verdict(Enum):
    PASS = "pass"
    FAIL = "fail"
    NO_COV = "noCov"
    OVERALL_INC = "overallInc"


class SessionPhase(Enum):
    INITIALIZING = "initializing"
    GENERATING = "generating"
    APPLYING = "applying"
    FIXING = "fixing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class SessionOutcome(Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    NO_CANDIDATES = "no_candidates"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class EventKind(Enum):
    ITERATION = "iteration"
    CANDIDATE = "candidate"
    VERDICT = "verdict"
    COVERAGE = "coverage"
    FIX = "fix"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class SourceUnit:
    """Source file under test. Content is fixed for the whole session."""
    path: Path
    text: str

    @classmethod
    def load(cls, path: Path) -> "SourceUnit":
        path = Path(path)
        return cls(path=path, text=read_text(path))


@dataclass
class TestArtifact:
    """The companion test file. Only ever mutated through a commit."""
    __test__ = False

    path: Path
    text: str = ""
    existed: bool = False

    @classmethod
    def load(cls, path: Path) -> "TestArtifact":
        path = Path(path)
        if path.exists():
            return cls(path=path, text=read_text(path), existed=True)
        return cls(path=path, text="", existed=False)


@dataclass
class CandidateTest:
    """One proposed test block from the candidate source."""
    name: str
    code: str
    includes: List[str] = field(default_factory=list)
    goal: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "goal": self.goal, "code": self.code, "includes": list(self.includes)}


@dataclass(frozen=True)
class CoverageSnapshot:
    file_pct: float = 0.0
    project_pct: float = 0.0
    missed_lines: Tuple[int, ...] = ()
    covered_lines: FrozenSet[int] = frozenset()

    @classmethod
    def empty(cls) -> "CoverageSnapshot":
        return cls()

    def to_dict(self) -> dict:
        return {
            "file_pct": self.file_pct,
            "project_pct": self.project_pct,
            "missed_lines": list(self.missed_lines),
            "covered_lines": sorted(self.covered_lines),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CoverageSnapshot":
        return cls(
            file_pct=data.get("file_pct", 0.0),
            project_pct=data.get("project_pct", 0.0),
            missed_lines=tuple(data.get("missed_lines", [])),
            covered_lines=frozenset(data.get("covered_lines", [])),
        )

    def summary(self) -> str:
        return f"file {self.file_pct:.1f}% / project {self.project_pct:.1f}% ({len(self.missed_lines)} missed)"


@dataclass
class BuildResult:
    """Outcome of one build-and-run invocation."""
    success: bool
    diagnostics: str = ""
    stdout: str = ""
    exit_code: int = 0
    stage: str = "run"  # "build" or "run": the last stage that executed
    binary: Optional[Path] = None
    profile_dir: Optional[Path] = None
    duration_seconds: float = 0.0


@dataclass
class FixAttempt:
    index: int
    diagnostics: str
    repaired_code: str = ""
    error: Optional[str] = None
    no_progress: bool = False


@dataclass
class FixResult:
    success: bool
    attempts: int
    final_content: Optional[str] = None
    error: Optional[str] = None
    history: List[FixAttempt] = field(default_factory=list)
    build: Optional[BuildResult] = None  # the passing build when success


@dataclass
class CandidateResult:
    name: str
    verdict: Verdict
    fixed: bool = False
    fix_attempts: int = 0
    duplicate: bool = False
    committed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name, "verdict": self.verdict.value,
            "fixed": self.fixed, "fix_attempts": self.fix_attempts,
            "duplicate": self.duplicate, "committed": self.committed,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateResult":
        return cls(
            name=data["name"], verdict=Verdict(data["verdict"]),
            fixed=data.get("fixed", False), fix_attempts=data.get("fix_attempts", 0),
            duplicate=data.get("duplicate", False), committed=data.get("committed", False),
            error=data.get("error"),
        )


@dataclass
class ProgressEvent:
    kind: EventKind
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message,
                "data": self.data, "timestamp": self.timestamp}


@dataclass
class SessionState:
    """Everything needed to roll a session back, plus its running progress."""
    session_id: str
    source_path: str
    artifact_path: str
    source_original: str
    artifact_original: str
    artifact_existed: bool
    iteration: int = 0
    phase: SessionPhase = SessionPhase.INITIALIZING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    initial_coverage: CoverageSnapshot = field(default_factory=CoverageSnapshot.empty)
    coverage: CoverageSnapshot = field(default_factory=CoverageSnapshot.empty)
    results: List[CandidateResult] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def add_result(self, result: CandidateResult):
        self.results.append(result)
        if result.verdict == Verdict.FAIL:
            self.failures.append(f"{result.name}: {(result.error or 'build failed')[:300]}")

    def committed_count(self) -> int:
        return sum(1 for r in self.results if r.committed and not r.duplicate)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "source_path": self.source_path,
            "artifact_path": self.artifact_path,
            "source_original": self.source_original,
            "artifact_original": self.artifact_original,
            "artifact_existed": self.artifact_existed,
            "iteration": self.iteration,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "initial_coverage": self.initial_coverage.to_dict(),
            "coverage": self.coverage.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "failures": self.failures,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        return cls(
            session_id=data["session_id"],
            source_path=data["source_path"],
            artifact_path=data["artifact_path"],
            source_original=data["source_original"],
            artifact_original=data["artifact_original"],
            artifact_existed=data.get("artifact_existed", True),
            iteration=data.get("iteration", 0),
            phase=SessionPhase(data.get("phase", "initializing")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            initial_coverage=CoverageSnapshot.from_dict(data.get("initial_coverage", {})),
            coverage=CoverageSnapshot.from_dict(data.get("coverage", {})),
            results=[CandidateResult.from_dict(r) for r in data.get("results", [])],
            failures=data.get("failures", []),
            error=data.get("error"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "SessionState":
        return cls.from_dict(json.loads(json_str))


@dataclass
class SessionReport:
    outcome: SessionOutcome
    artifact_path: Path
    results: List[CandidateResult] = field(default_factory=list)
    initial_coverage: CoverageSnapshot = field(default_factory=CoverageSnapshot.empty)
    final_coverage: CoverageSnapshot = field(default_factory=CoverageSnapshot.empty)
    iterations: int = 0
    events: List[ProgressEvent] = field(default_factory=list)

    def verdicts(self) -> List[Verdict]:
        return [r.verdict for r in self.results]

    def passed(self) -> int:
        return sum(1 for r in self.results if r.verdict == Verdict.PASS)
