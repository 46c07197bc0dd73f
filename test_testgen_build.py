"""Tests for the subprocess primitive and BuildRunner, using the Python interpreter as the toolchain."""

import sys
import time
import asyncio

import pytest

from conftest import BROKEN, FakeCoverageProbe, make_candidate
from testgen_applier import CandidateApplier
from testgen_build import BuildRunner, ensure_success, expand_command, resolve_mode
from testgen_config import BuildConfig, BuildMode
from testgen_errors import BuildFailure, ConfigurationError, OperationCancelled, ToolInvocationError
from testgen_models import BuildResult, SourceUnit, Verdict
from testgen_process import ProcessResult, run_cancellable, run_process

PY = sys.executable

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="runs a shell script as the test binary")

FAKE_COMPILER = """\
import os, sys
args = sys.argv[1:]
out = args[args.index("-o") + 1]
with open(os.path.join(os.path.dirname(out), "args.txt"), "w") as f:
    f.write("\\n".join(args))
if any("SYNTAX_ERROR" in open(a).read() for a in args if a.endswith(".cpp")):
    sys.stderr.write("calc_test.cpp:3:1: error: expected ';'\\n")
    sys.exit(1)
with open(out, "w") as f:
    f.write("#!/bin/sh\\necho '[  PASSED  ] 1 test.'\\n")
os.chmod(out, 0o755)
"""

# Echoes the file named on the command line; fails like a compiler on the marker.
FAKE_PROJECT_BUILD = """\
import sys
data = open(sys.argv[1], "rb").read()
sys.stdout.buffer.write(data)
if b"SYNTAX_ERROR" in data:
    sys.stderr.write("calc_test.cpp:3:1: error: expected ';'\\n")
    sys.exit(1)
"""


def project_config(root, build=None, run=None, timeout=30):
    return BuildConfig(
        mode=BuildMode.PROJECT,
        root=str(root),
        configure_command=[],
        build_command=build or [PY, "-c", "print('built ut_bin')", "{test_file}"],
        run_command=run or [PY, "-c", "import os; print(os.environ['LLVM_PROFILE_FILE'])"],
        timeout_seconds=timeout,
    )


def scratch_dirs(runner):
    if not runner.scratch_root.exists():
        return []
    return sorted(p for p in runner.scratch_root.iterdir() if p.is_dir())


class TestRunProcess:
    @pytest.mark.asyncio
    async def test_captures_stdout_and_stderr(self, tmp_path):
        result = await run_process(
            [PY, "-c", "import sys; print('out'); sys.stderr.write('err')"], cwd=tmp_path)
        assert result.ok
        assert result.stdout.strip() == "out"
        assert result.stderr == "err"
        assert result.output == "out\nSTDERR: err"

    @pytest.mark.parametrize("stdout, stderr, expected", [
        ("out", "err", "out\nSTDERR: err"),
        ("out\n", "err", "out\nSTDERR: err"),
        ("", "err", "STDERR: err"),
        ("out\n", "", "out\n"),
    ])
    def test_output_layout(self, stdout, stderr, expected):
        assert ProcessResult(["cc"], 1, stdout, stderr).output == expected

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_returned_not_raised(self, tmp_path):
        result = await run_process([PY, "-c", "raise SystemExit(4)"], cwd=tmp_path)
        assert result.returncode == 4
        assert not result.ok

    @pytest.mark.asyncio
    async def test_env_is_merged(self, tmp_path):
        result = await run_process([PY, "-c", "import os; print(os.environ['TESTGEN_EXTRA'])"],
                                   cwd=tmp_path, env={"TESTGEN_EXTRA": "42"})
        assert result.stdout.strip() == "42"

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        with pytest.raises(ToolInvocationError, match="Cannot start"):
            await run_process(["testgen-no-such-tool-xyz"], cwd=tmp_path)

    @pytest.mark.asyncio
    async def test_empty_command(self, tmp_path):
        with pytest.raises(ToolInvocationError):
            await run_process([], cwd=tmp_path)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        with pytest.raises(ToolInvocationError, match="timed out"):
            await run_process([PY, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout=0.5)

    @pytest.mark.asyncio
    async def test_cancel_kills_process_promptly(self, tmp_path):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        started = time.monotonic()
        with pytest.raises(OperationCancelled):
            await run_process([PY, "-c", "import time; time.sleep(30)"], cwd=tmp_path, cancel=cancel)
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            await run_cancellable(asyncio.sleep(10), cancel)

    @pytest.mark.asyncio
    async def test_result_passes_through_when_not_cancelled(self):
        async def answer():
            return 42
        assert await run_cancellable(answer(), asyncio.Event()) == 42


class TestHelpers:
    def test_expand_command(self):
        cmd = expand_command(["cmake", "--build", "{build_dir}", "--target", "{target}", "{other}"],
                             {"build_dir": "/p/build", "target": "ut_bin"})
        assert cmd == ["cmake", "--build", "/p/build", "--target", "ut_bin", "{other}"]

    @pytest.mark.parametrize("mode, explicit, expected", [
        (BuildMode.AUTO, True, BuildMode.ISOLATED),
        (BuildMode.AUTO, False, BuildMode.PROJECT),
        (BuildMode.PROJECT, True, BuildMode.PROJECT),
        (BuildMode.ISOLATED, False, BuildMode.ISOLATED),
    ])
    def test_resolve_mode(self, mode, explicit, expected):
        assert resolve_mode(mode, explicit) == expected

    def test_ensure_success(self):
        ok = BuildResult(success=True)
        assert ensure_success(ok) is ok
        with pytest.raises(BuildFailure) as exc:
            ensure_success(BuildResult(success=False, stage="build", exit_code=2, diagnostics="boom"))
        assert exc.value.diagnostics == "boom"
        assert exc.value.stage == "build"


class TestProjectMode:
    @pytest.mark.asyncio
    async def test_build_and_run_pass(self, project, artifact_path):
        artifact_path.write_text("TEST(Calc, Adds) {}\n")
        runner = BuildRunner(project_config(project))

        result = await runner.build(artifact_path)

        assert result.success
        assert result.stage == "run"
        assert "built ut_bin" in result.stdout
        assert result.profile_dir is not None and result.profile_dir.is_dir()
        assert str(result.profile_dir / "%p.profraw") in result.stdout
        assert runner.last_success is result
        assert artifact_path.read_text() == "TEST(Calc, Adds) {}\n"

    @pytest.mark.asyncio
    async def test_build_failure_diagnostics(self, project, artifact_path):
        artifact_path.write_text("")
        build = [PY, "-c", "import sys; print('compiling'); sys.stderr.write('error: nope'); sys.exit(2)",
                 "{test_file}"]
        runner = BuildRunner(project_config(project, build=build))

        result = await runner.build(artifact_path)

        assert not result.success
        assert result.stage == "build"
        assert result.exit_code == 2
        assert result.diagnostics.startswith("=== BUILD FAILED (exit 2) ===")
        assert "compiling" in result.diagnostics and "error: nope" in result.diagnostics
        assert scratch_dirs(runner) == []

    @pytest.mark.asyncio
    async def test_failing_test_run(self, project, artifact_path):
        artifact_path.write_text("")
        run = [PY, "-c", "import sys; print('[  FAILED  ] Calc.Adds'); sys.exit(1)"]
        runner = BuildRunner(project_config(project, run=run))

        result = await runner.build(artifact_path)

        assert not result.success
        assert result.stage == "run"
        assert "=== RUN FAILED (exit 1) ===" in result.diagnostics
        assert "[  FAILED  ] Calc.Adds" in result.diagnostics

    @pytest.mark.asyncio
    async def test_only_latest_success_is_kept(self, project, artifact_path):
        artifact_path.write_text("")
        runner = BuildRunner(project_config(project))

        first = await runner.build(artifact_path)
        second = await runner.build(artifact_path)

        assert not first.profile_dir.exists()
        assert scratch_dirs(runner) == [second.profile_dir.parent]
        runner.cleanup()
        assert not runner.scratch_root.exists()
        assert runner.last_success is None

    @pytest.mark.asyncio
    async def test_timeout_removes_scratch(self, project, artifact_path):
        artifact_path.write_text("")
        runner = BuildRunner(project_config(project, run=[PY, "-c", "import time; time.sleep(30)"],
                                            timeout=0.5))
        with pytest.raises(ToolInvocationError):
            await runner.build(artifact_path)
        assert scratch_dirs(runner) == []

    @pytest.mark.asyncio
    async def test_cancel_removes_scratch(self, project, artifact_path):
        artifact_path.write_text("")
        runner = BuildRunner(project_config(project, run=[PY, "-c", "import time; time.sleep(30)"]))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)

        with pytest.raises(OperationCancelled):
            await runner.build(artifact_path, cancel=cancel)
        assert scratch_dirs(runner) == []


class TestProjectModeBuildsTheGivenFile:
    def test_command_reading_the_canonical_file_is_refused(self, project, artifact_path):
        script = project / "fake_build.py"
        script.write_text(FAKE_PROJECT_BUILD)
        config = project_config(project, build=[PY, str(script), str(artifact_path)])
        with pytest.raises(ConfigurationError, match="test_file"):
            BuildRunner(config)

    def test_default_commands_pass_the_file_to_configure(self, project):
        runner = BuildRunner(BuildConfig(mode=BuildMode.PROJECT, root=str(project)))
        assert runner.mode == BuildMode.PROJECT
        assert "-DTESTGEN_TEST_FILE={test_file}" in runner.config.configure_command

    def test_isolated_mode_needs_no_placeholder(self, project):
        config = BuildConfig(mode=BuildMode.ISOLATED, root=str(project), configure_command=[],
                             build_command=["make"])
        assert BuildRunner(config).mode == BuildMode.ISOLATED

    @pytest.mark.asyncio
    async def test_configure_failure(self, project, artifact_path):
        artifact_path.write_text("")
        config = project_config(project)
        config.configure_command = [PY, "-c", "import sys; sys.stderr.write('bad cache'); sys.exit(3)",
                                    "-DTESTGEN_TEST_FILE={test_file}"]
        runner = BuildRunner(config)

        result = await runner.build(artifact_path)

        assert not result.success
        assert result.stage == "build"
        assert result.diagnostics.startswith("=== CONFIGURE FAILED (exit 3) ===")
        assert "bad cache" in result.diagnostics

    @pytest.mark.asyncio
    async def test_broken_replica_fails_and_good_one_passes(self, project, source_file, artifact_path):
        script = project / "fake_build.py"
        script.write_text(FAKE_PROJECT_BUILD)
        runner = BuildRunner(project_config(project, build=[PY, str(script), "{test_file}"]))
        applier = CandidateApplier(runner, FakeCoverageProbe(),
                                   source_unit=SourceUnit.load(source_file), root=project)

        broken = await applier.apply(make_candidate("Breaks", body=BROKEN), artifact_path)

        assert broken.verdict == Verdict.FAIL
        assert "error: expected ';'" in broken.build.diagnostics
        assert not artifact_path.exists()

        good = await applier.apply(make_candidate("Adds"), artifact_path)

        assert good.verdict == Verdict.PASS
        text = artifact_path.read_text()
        assert "TEST(Calc, Adds)" in text
        assert BROKEN not in text
        runner.cleanup()


@pytest.fixture
def isolated_runner(project, source_file):
    compiler = project / "fake_cxx.py"
    compiler.write_text(FAKE_COMPILER)
    config = BuildConfig(mode=BuildMode.AUTO, root=str(project),
                         compiler_command=[PY, str(compiler)], compile_flags=[], link_flags=[])
    return BuildRunner(config, source_file=source_file, explicit_test_file=True)


class TestIsolatedMode:
    def test_auto_mode_with_explicit_test_is_isolated(self, isolated_runner):
        assert isolated_runner.mode == BuildMode.ISOLATED
        assert isolated_runner.describe() == "isolated-file mode"

    def test_compile_units_include_implementation(self, isolated_runner, artifact_path, source_file):
        artifact_path.write_text('#include "calc.h"\n')
        assert isolated_runner.compile_units(artifact_path) == [artifact_path, source_file.resolve()]

    def test_compile_units_skip_included_implementation(self, isolated_runner, artifact_path):
        artifact_path.write_text('#include "calc.cpp"\n')
        assert isolated_runner.compile_units(artifact_path) == [artifact_path]

    @posix_only
    @pytest.mark.asyncio
    async def test_compiles_and_runs_binary(self, isolated_runner, artifact_path, source_file):
        artifact_path.write_text('#include "calc.h"\nTEST(Calc, Adds) {}\n')

        result = await isolated_runner.build(artifact_path)

        assert result.success
        assert "[  PASSED  ] 1 test." in result.stdout
        args = (result.binary.parent / "args.txt").read_text().split("\n")
        assert str(artifact_path.resolve()) in args
        assert str(source_file.resolve()) in args
        assert f"-I{source_file.resolve().parent}" in args

    @pytest.mark.asyncio
    async def test_compile_error(self, isolated_runner, artifact_path):
        artifact_path.write_text("TEST(Calc, Adds) { SYNTAX_ERROR }\n")

        result = await isolated_runner.build(artifact_path)

        assert not result.success
        assert result.stage == "build"
        assert "error: expected ';'" in result.diagnostics
