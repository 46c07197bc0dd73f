#!/usr/bin/env python3
"""
Test Generation Orchestrator: CLI Entry Point.

Usage:
    testgen run --src src/foo.cpp
    testgen run --src src/foo.cpp --test-file test/foo_test.cpp --max-iterations 3
    testgen prompt --src src/foo.cpp
    testgen compile --test-file test/foo_test.cpp --src src/foo.cpp
    testgen fix --test-file test/foo_test.cpp --src src/foo.cpp
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

from testgen_applier import CandidateApplier
from testgen_build import BuildRunner
from testgen_candidates import GenerationRequest, LLMCandidateSource, render_request
from testgen_config import BuildMode, Config, load_config
from testgen_coverage import CoverageProbe
from testgen_discovery import resolve_artifact_path
from testgen_errors import TestgenError
from testgen_fixer import AutoFixLoop, fix_file
from testgen_fsx import read_text_if_exists
from testgen_llm import LLMClient
from testgen_models import SessionOutcome, SourceUnit
from testgen_orchestrator import Orchestrator
from testgen_session import SessionManager
from testgen_trace_collector import TraceCollector

logger = logging.getLogger("testgen")


def setup_logging(verbose: bool = False, log_file: Path = None):
    """Configure logging with colors."""
    level = logging.DEBUG if verbose else logging.INFO

    COLORS = {
        'DEBUG': '\033[36m', 'INFO': '\033[32m', 'WARNING': '\033[33m',
        'ERROR': '\033[31m', 'CRITICAL': '\033[35m', 'RESET': '\033[0m',
    }

    class ColorFormatter(logging.Formatter):
        def format(self, record):
            color = COLORS.get(record.levelname, '')
            reset = COLORS['RESET']
            record.levelname = f"{color}{record.levelname:<8}{reset}"
            return super().format(record)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(ColorFormatter(
        '%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s',
        datefmt='%H:%M:%S'
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            '%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s'
        ))
        root.addHandler(fh)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> Config:
    """CLI flags win over the config file."""
    if getattr(args, "root", None) is not None:
        config.build.root = str(args.root)
    if getattr(args, "mode", None):
        config.build.mode = BuildMode(args.mode)
    if getattr(args, "bypass_validation", None) is not None:
        config.bypass_validation = args.bypass_validation
    if getattr(args, "auto_fix", None) is not None:
        config.enable_auto_fix = args.auto_fix
    for flag in ("max_fix_attempts", "max_iterations", "target_pct"):
        value = getattr(args, flag, None)
        if value is not None:
            setattr(config, flag, value)
    if getattr(args, "max_attempts", None) is not None:
        config.max_fix_attempts = args.max_attempts
    return config


def _artifact_path(config: Config, src: Path, test_file) -> Path:
    return resolve_artifact_path(src, config.root, explicit=test_file,
                                 allow_overwrite_fallback=config.allow_overwrite_fallback)


async def cmd_prompt(config: Config, args) -> int:
    source = SourceUnit.load(args.src)
    artifact = _artifact_path(config, args.src, args.test_file)
    request = GenerationRequest(source=source, artifact_path=artifact,
                                artifact_text=read_text_if_exists(artifact), root=config.root)
    print(render_request(request))
    return 0


async def cmd_llm(config: Config, args) -> int:
    source = SourceUnit.load(args.src)
    artifact = _artifact_path(config, args.src, args.test_file)
    request = GenerationRequest(source=source, artifact_path=artifact,
                                artifact_text=read_text_if_exists(artifact), root=config.root)
    client = LLMClient(config.model)
    try:
        reply = await LLMCandidateSource(client, root=config.root).raw_reply(request)
    finally:
        await client.aclose()
    print(reply)
    return 0


async def cmd_run(config: Config, args) -> int:
    root = config.root
    runner = BuildRunner(config.build, source_file=args.src,
                         explicit_test_file=args.test_file is not None)
    logger.info(f"🔧 Build: {runner.describe()}")
    probe = CoverageProbe(config.coverage, root)
    session = SessionManager(config.state_path())
    traces = TraceCollector(config.state_path(), model_used=config.model.model_id)

    client = LLMClient(config.model)
    try:
        source = LLMCandidateSource(client, root=root, artifact_path=args.test_file)
        orchestrator = Orchestrator(config, runner, probe, source,
                                    session=session, trace_collector=traces)
        report = await orchestrator.run(args.src, args.test_file)
    finally:
        await client.aclose()

    for r in report.results:
        print(f"{r.verdict.value:<11} {r.name}{'  (fixed)' if r.fixed else ''}")
    print(f"{report.outcome.value}: {report.artifact_path}")
    return 0 if report.outcome == SessionOutcome.COMMITTED else 1


async def cmd_compile(config: Config, args) -> int:
    runner = BuildRunner(config.build, source_file=args.src, explicit_test_file=True)
    logger.info(f"🔧 Build: {runner.describe()}")
    try:
        result = await runner.build(args.test_file)
    finally:
        runner.cleanup()
    if result.success:
        print(result.stdout)
        return 0
    print(result.diagnostics)
    return 1


async def cmd_fix(config: Config, args) -> int:
    runner = BuildRunner(config.build, source_file=args.src, explicit_test_file=True)
    probe = CoverageProbe(config.coverage, config.root)
    client = LLMClient(config.model)
    try:
        source_unit = SourceUnit.load(args.src)
        candidates = LLMCandidateSource(client, root=config.root, artifact_path=args.test_file)
        loop = AutoFixLoop(runner, candidates, max_attempts=config.max_fix_attempts)
        applier = CandidateApplier(runner, probe, source_unit=source_unit, root=config.root)
        result = await fix_file(loop, applier, source_unit, args.test_file)
    finally:
        await client.aclose()
        runner.cleanup()
    if result.success:
        print(f"fixed after {result.attempts} attempt(s): {args.test_file}")
        return 0
    print(f"could not fix {args.test_file} in {result.attempts} attempt(s)")
    return 1


COMMANDS = {
    "prompt": cmd_prompt,
    "llm": cmd_llm,
    "run": cmd_run,
    "compile": cmd_compile,
    "fix": cmd_fix,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testgen",
        description="Test Generation Orchestrator: model-proposed, toolchain-validated C++ unit tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run --src src/foo.cpp
  %(prog)s run --src src/foo.cpp --bypass-validation
  %(prog)s run --src src/foo.cpp --test-file test/foo_test.cpp --mode isolated
  %(prog)s fix --test-file test/foo_test.cpp --src src/foo.cpp -v
        """
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="Configuration JSON file path")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose/debug logging")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Write logs to file")

    sub = parser.add_subparsers(dest="command", required=True)

    def common(p, src_required=True, test_required=False):
        p.add_argument("--src", type=Path, required=src_required, help="Source file under test")
        p.add_argument("--test-file", type=Path, required=test_required, default=None,
                       help="Test file (default: discovered, or <name>_test.cpp)")
        p.add_argument("--root", type=Path, default=None, help="Project root (default: from config, else cwd)")

    common(sub.add_parser("prompt", help="Print the generation prompt"))
    common(sub.add_parser("llm", help="Send the generation prompt and print the raw reply"))

    run = sub.add_parser("run", help="Generate, validate and commit tests")
    common(run)
    run.add_argument("--bypass-validation", dest="bypass_validation", action="store_true", default=None,
                     help="Commit candidates without building them")
    run.add_argument("--validate", dest="bypass_validation", action="store_false",
                     help="Build and run every candidate (default)")
    run.add_argument("--auto-fix", dest="auto_fix", action="store_true", default=None,
                     help="Repair failing candidates with the model (default)")
    run.add_argument("--no-auto-fix", dest="auto_fix", action="store_false",
                     help="Discard failing candidates without repair")
    run.add_argument("--max-fix-attempts", type=int, default=None)
    run.add_argument("--max-iterations", type=int, default=None)
    run.add_argument("--target-pct", type=float, default=None)
    run.add_argument("--mode", choices=[m.value for m in BuildMode], default=None)

    common(sub.add_parser("compile", help="Build and run a test file once"),
           src_required=False, test_required=True)

    fix = sub.add_parser("fix", help="Repair a failing test file in place")
    common(fix, test_required=True)
    fix.add_argument("--max-attempts", type=int, default=None)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    config = apply_cli_overrides(load_config(args.config), args)

    try:
        code = asyncio.run(COMMANDS[args.command](config, args))
        sys.exit(code)
    except KeyboardInterrupt:
        logger.info("\n⚠️ Interrupted by user")
        sys.exit(130)
    except TestgenError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
