"""
Shared fixtures and in-memory collaborators for the test suite.

FakeBuildRunner:    "compiles" by reading the file; fails when it sees a marker
FakeCoverageProbe:  coverage grows with the number of TEST macros built
ScriptedSource:     hands out pre-scripted candidate batches and repair replies
"""

from pathlib import Path

import pytest

from testgen_applier import declared_macros
from testgen_config import Config
from testgen_models import BuildResult, CandidateTest, CoverageSnapshot

BROKEN = "SYNTAX_ERROR"
SOURCE_LINES = 10


class FakeBuildRunner:
    def __init__(self, fail_marker: str = BROKEN):
        self.fail_marker = fail_marker
        self.calls = []
        self.last_success = None
        self.cleaned = False

    async def build(self, test_file, cancel=None):
        text = Path(test_file).read_text(encoding="utf-8")
        self.calls.append((Path(test_file), text))
        if self.fail_marker in text:
            return BuildResult(success=False, stage="build", exit_code=1,
                               diagnostics=f"{Path(test_file).name}:3:1: error: expected ';' before '}}' token")
        result = BuildResult(success=True, stage="run", stdout=text)
        self.last_success = result
        return result

    def cleanup(self):
        self.cleaned = True


class FakeCoverageProbe:
    """Each built TEST macro covers `lines_per_test` more of a 10-line source."""

    def __init__(self, lines_per_test: int = 2):
        self.lines_per_test = lines_per_test
        self.calls = 0

    async def measure(self, source, build, cancel=None):
        self.calls += 1
        if build is None or not build.success:
            return CoverageSnapshot.empty()
        covered = min(SOURCE_LINES, len(declared_macros(build.stdout)) * self.lines_per_test)
        pct = covered / SOURCE_LINES * 100.0
        return CoverageSnapshot(
            file_pct=pct,
            project_pct=pct / 2,
            missed_lines=tuple(range(covered + 1, SOURCE_LINES + 1)),
            covered_lines=frozenset(range(1, covered + 1)),
        )


class ScriptedSource:
    """Candidate batches and repair replies, consumed in order.

    A repair entry may be a string, a callable taking the failing content,
    or an exception instance to raise.
    """

    def __init__(self, batches=None, repairs=None):
        self.batches = list(batches or [])
        self.repairs = list(repairs or [])
        self.requests = []
        self.repair_calls = []

    async def generate(self, request, cancel=None):
        self.requests.append(request)
        return self.batches.pop(0) if self.batches else []

    async def repair(self, source_unit, artifact_text, diagnostics, cancel=None):
        self.repair_calls.append((artifact_text, diagnostics))
        if not self.repairs:
            return artifact_text
        reply = self.repairs.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(artifact_text)
        return reply


def make_candidate(name: str, suite: str = "Calc", body: str = "EXPECT_EQ(add(1, 1), 2);") -> CandidateTest:
    return CandidateTest(
        name=f"{suite}.{name}",
        code=f"TEST({suite}, {name}) {{\n  {body}\n}}",
        includes=['"calc.h"'],
        goal=f"checks {name}",
    )


@pytest.fixture
def project(tmp_path):
    """A tiny C++ project: src/calc.h + src/calc.cpp, no test file yet."""
    src_dir = tmp_path / "src"
    src_dir.mkdir()
    (src_dir / "calc.h").write_text("#pragma once\nint add(int a, int b);\n")
    source = src_dir / "calc.cpp"
    source.write_text('#include "calc.h"\n\nint add(int a, int b) {\n  return a + b;\n}\n')
    return tmp_path


@pytest.fixture
def source_file(project):
    return project / "src" / "calc.cpp"


@pytest.fixture
def artifact_path(project):
    return project / "src" / "calc_test.cpp"


@pytest.fixture
def config(project):
    cfg = Config()
    cfg.build.root = str(project)
    cfg.max_iterations = 1
    return cfg


@pytest.fixture
def build_runner():
    return FakeBuildRunner()


@pytest.fixture
def coverage_probe():
    return FakeCoverageProbe()
