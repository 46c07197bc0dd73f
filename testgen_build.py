"""
BuildRunner: compile and execute a test file against the real toolchain.

Two modes:
  - project:  run the configure step (which points the target at the file
              being built), the build command for a named target, then the
              configured test-runner command on the resulting binary
  - isolated: compile the test file (plus the companion implementation unit)
              straight into a throwaway binary and execute it

Both the build step and the run step must exit 0. Output of both steps is
captured in full so the repair loop sees real diagnostics. Every build gets
its own scratch directory holding the raw coverage profiles (and, in isolated
mode, the binary); only the most recent successful one is kept.
"""

import re
import time
import shutil
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from testgen_config import BuildConfig, BuildMode
from testgen_discovery import is_cpp_source, corresponding_file
from testgen_errors import BuildFailure, ConfigurationError
from testgen_models import BuildResult
from testgen_process import ProcessResult, run_process

logger = logging.getLogger(__name__)


def resolve_mode(mode: BuildMode, explicit_test_file: bool) -> BuildMode:
    if mode == BuildMode.AUTO:
        return BuildMode.ISOLATED if explicit_test_file else BuildMode.PROJECT
    return mode


def expand_command(template: List[str], values: Dict[str, str]) -> List[str]:
    """Substitute {placeholders}; unknown braces are left alone."""
    out = []
    for arg in template:
        for key, val in values.items():
            arg = arg.replace("{" + key + "}", val)
        out.append(arg)
    return out


def references_test_file(config: BuildConfig) -> bool:
    return any("{test_file}" in arg
               for arg in list(config.configure_command) + list(config.build_command))


def format_diagnostics(stage: str, proc: ProcessResult) -> str:
    parts = [f"=== {stage.upper()} FAILED (exit {proc.returncode}) ===",
             f"$ {' '.join(proc.command)}"]
    if proc.stdout.strip():
        parts.append(proc.stdout.rstrip())
    if proc.stderr.strip():
        parts.append("STDERR:")
        parts.append(proc.stderr.rstrip())
    if not proc.stdout.strip() and not proc.stderr.strip():
        parts.append("(no output)")
    return "\n".join(parts)


def ensure_success(result: BuildResult) -> BuildResult:
    if not result.success:
        raise BuildFailure(f"{result.stage} step failed (exit {result.exit_code})",
                           diagnostics=result.diagnostics, stage=result.stage)
    return result


class BuildRunner:
    """Builds and runs one test file; never writes the file it is given."""

    def __init__(self, config: BuildConfig, source_file: Optional[Path] = None,
                 explicit_test_file: bool = False, scratch_root: Optional[Path] = None):
        self.config = config
        self.root = Path(config.root).resolve()
        self.source_file = Path(source_file).resolve() if source_file else None
        self.mode = resolve_mode(config.mode, explicit_test_file)
        if self.mode == BuildMode.PROJECT and not references_test_file(config):
            raise ConfigurationError(
                "project mode needs {test_file} in configure_command or build_command; "
                "otherwise the replica under validation is never compiled")
        self.scratch_root = Path(scratch_root) if scratch_root else self.root / ".testgen" / "builds"
        self.last_success: Optional[BuildResult] = None
        self._last_success_dir: Optional[Path] = None

    def describe(self) -> str:
        if self.mode == BuildMode.PROJECT:
            return f"project mode (target {self.config.target})"
        return "isolated-file mode"

    async def build(self, test_file: Path, cancel: Optional[asyncio.Event] = None) -> BuildResult:
        test_file = Path(test_file).resolve()
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="build-", dir=self.scratch_root))
        profile_dir = work_dir / "profiles"
        profile_dir.mkdir()
        started = time.monotonic()

        try:
            if self.mode == BuildMode.PROJECT:
                result = await self._build_project(test_file, profile_dir, cancel)
            else:
                result = await self._build_isolated(test_file, work_dir, profile_dir, cancel)
        except BaseException:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise

        result.duration_seconds = time.monotonic() - started
        self._retain(result, work_dir)
        if result.success:
            logger.info(f"  ✅ Build + run passed ({result.duration_seconds:.1f}s)")
        else:
            logger.info(f"  ❌ {result.stage} step failed (exit {result.exit_code})")
        return result

    def _values(self, test_file: Path, binary: Path) -> Dict[str, str]:
        return {
            "root": str(self.root),
            "build_dir": str(self.root / self.config.build_dir),
            "target": self.config.target,
            "test_file": str(test_file),
            "source_file": str(self.source_file or ""),
            "binary": str(binary),
        }

    async def _run_step(self, binary: Path, values: Dict[str, str], profile_dir: Path,
                        cancel: Optional[asyncio.Event]) -> ProcessResult:
        env = {"LLVM_PROFILE_FILE": str(profile_dir / "%p.profraw"), "GTEST_COLOR": "no"}
        return await run_process(
            expand_command(self.config.run_command, values),
            cwd=self.root, env=env, timeout=self.config.timeout_seconds, cancel=cancel)

    async def _build_project(self, test_file: Path, profile_dir: Path,
                             cancel: Optional[asyncio.Event]) -> BuildResult:
        binary = self.root / self.config.build_dir / self.config.target
        values = self._values(test_file, binary)

        if self.config.configure_command:
            configure = await run_process(
                expand_command(self.config.configure_command, values),
                cwd=self.root, timeout=self.config.timeout_seconds, cancel=cancel)
            if not configure.ok:
                return BuildResult(success=False, diagnostics=format_diagnostics("configure", configure),
                                   stdout=configure.stdout, exit_code=configure.returncode,
                                   stage="build")

        logger.debug(f"  ⚙️ cmake build: target {self.config.target}")
        build = await run_process(
            expand_command(self.config.build_command, values),
            cwd=self.root, timeout=self.config.timeout_seconds, cancel=cancel)
        if not build.ok:
            return BuildResult(success=False, diagnostics=format_diagnostics("build", build),
                               stdout=build.stdout, exit_code=build.returncode, stage="build")

        run = await self._run_step(binary, values, profile_dir, cancel)
        stdout = build.stdout + run.stdout
        if not run.ok:
            return BuildResult(success=False, diagnostics=format_diagnostics("run", run),
                               stdout=stdout, exit_code=run.returncode, stage="run")
        return BuildResult(success=True, stdout=stdout, stage="run",
                           binary=binary, profile_dir=profile_dir)

    def compile_units(self, test_file: Path) -> List[Path]:
        """Translation units for isolated mode.

        The implementation unit is left out when the test already
        #includes it, otherwise its symbols would be defined twice.
        """
        units = [test_file]
        impl = self.source_file
        if impl is not None and not is_cpp_source(impl):
            impl = corresponding_file(impl)
        if impl is None or not impl.exists():
            return units
        text = test_file.read_text(encoding="utf-8", errors="replace") if test_file.exists() else ""
        pattern = r'^\s*#\s*include\s+["<][^">]*\b' + re.escape(impl.name) + r'[">]'
        if not re.search(pattern, text, re.MULTILINE):
            units.append(impl)
        return units

    async def _build_isolated(self, test_file: Path, work_dir: Path, profile_dir: Path,
                              cancel: Optional[asyncio.Event]) -> BuildResult:
        binary = work_dir / "ut_bin"
        values = self._values(test_file, binary)

        include_flags = [f"-I{test_file.parent}", f"-I{self.root}"]
        if self.source_file is not None:
            include_flags.append(f"-I{self.source_file.parent}")
        include_flags += [f"-I{self.root / d}" for d in self.config.include_dirs]

        command = (list(self.config.compiler_command) + list(self.config.compile_flags)
                   + include_flags + [str(u) for u in self.compile_units(test_file)]
                   + ["-o", str(binary)] + list(self.config.link_flags))

        logger.debug(f"  ⚙️ compile: {test_file.name}")
        build = await run_process(command, cwd=self.root,
                                  timeout=self.config.timeout_seconds, cancel=cancel)
        if not build.ok:
            return BuildResult(success=False, diagnostics=format_diagnostics("build", build),
                               stdout=build.stdout, exit_code=build.returncode, stage="build")

        run = await self._run_step(binary, values, profile_dir, cancel)
        stdout = build.stdout + run.stdout
        if not run.ok:
            return BuildResult(success=False, diagnostics=format_diagnostics("run", run),
                               stdout=stdout, exit_code=run.returncode, stage="run")
        return BuildResult(success=True, stdout=stdout, stage="run",
                           binary=binary, profile_dir=profile_dir)

    def _retain(self, result: BuildResult, work_dir: Path):
        if not result.success:
            shutil.rmtree(work_dir, ignore_errors=True)
            return
        if self._last_success_dir and self._last_success_dir != work_dir:
            shutil.rmtree(self._last_success_dir, ignore_errors=True)
        self._last_success_dir = work_dir
        self.last_success = result

    def cleanup(self):
        """Remove all scratch build directories."""
        if self._last_success_dir:
            shutil.rmtree(self._last_success_dir, ignore_errors=True)
        self._last_success_dir = None
        self.last_success = None
        try:
            self.scratch_root.rmdir()
        except OSError:
            pass
