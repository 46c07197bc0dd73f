"""
Configuration for the test generation pipeline.

Defines the model endpoint, the native toolchain commands (project mode and
isolated-file mode), the coverage tools and the session policy knobs
(bypass, auto-fix budget, iteration budget, acceptance rule).
"""

import os
import json
import logging
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, List

logger = logging.getLogger(__name__)


class BuildMode(Enum):
    PROJECT = "project"
    ISOLATED = "isolated"
    AUTO = "auto"  # isolated when an explicit test file is supplied


class AcceptanceRule(Enum):
    COVERAGE_GAIN = "coverage_gain"  # file or project coverage went up
    FILE_GAIN = "file_gain"
    ANY_COMMIT = "any_commit"
    ALWAYS = "always"


@dataclass
class ModelConfig:
    """Configuration for a model endpoint."""
    name: str
    provider: str  # "ollama" or "anthropic"
    model_id: str
    endpoint: Optional[str] = None  # HTTP base URL for ollama
    api_key_env: Optional[str] = None  # env var name for API key
    temperature: float = 0.0
    max_tokens: int = 8192
    context_window: int = 32768
    timeout_seconds: int = 120


@dataclass
class BuildConfig:
    """Native toolchain commands. Argument lists accept {placeholders}."""
    mode: BuildMode = BuildMode.AUTO
    root: str = "."
    build_dir: str = "build"
    target: str = "ut_bin"
    # Points the target at the file under test; the project reads TESTGEN_TEST_FILE.
    configure_command: List[str] = field(
        default_factory=lambda: ["cmake", "-S", "{root}", "-B", "{build_dir}",
                                 "-DTESTGEN_TEST_FILE={test_file}"])
    build_command: List[str] = field(
        default_factory=lambda: ["cmake", "--build", "{build_dir}", "--target", "{target}"])
    run_command: List[str] = field(default_factory=lambda: ["{binary}"])
    compiler_command: List[str] = field(default_factory=lambda: ["clang++", "-std=c++17", "-g"])
    compile_flags: List[str] = field(
        default_factory=lambda: ["-fprofile-instr-generate", "-fcoverage-mapping"])
    link_flags: List[str] = field(default_factory=lambda: ["-lgtest", "-lgtest_main", "-pthread"])
    include_dirs: List[str] = field(default_factory=list)
    timeout_seconds: int = 600


@dataclass
class CoverageConfig:
    enabled: bool = True
    profdata_tool: str = "llvm-profdata"
    cov_tool: str = "llvm-cov"
    timeout_seconds: int = 120


@dataclass
class Config:
    """Main configuration container."""
    model: ModelConfig = field(default_factory=lambda: default_model())
    build: BuildConfig = field(default_factory=BuildConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    bypass_validation: bool = False
    enable_auto_fix: bool = True
    max_fix_attempts: int = 3
    max_iterations: int = 1
    target_pct: float = 100.0
    acceptance: AcceptanceRule = AcceptanceRule.COVERAGE_GAIN
    commit_no_coverage: bool = True
    allow_overwrite_fallback: bool = False
    state_dir: str = ".testgen"

    @property
    def root(self) -> Path:
        return Path(self.build.root).resolve()

    def state_path(self) -> Path:
        return self.root / self.state_dir

    @staticmethod
    def load_default() -> "Config":
        return default_config()


def default_model() -> ModelConfig:
    """Local Ollama endpoint; the model can be swapped via env or config file."""
    return ModelConfig(
        name="Local test generator",
        provider="ollama",
        endpoint=os.environ.get("OLLAMA_URL", "http://localhost:11434"),
        model_id=os.environ.get("TESTGEN_MODEL", "qwen2.5-coder:7b"),
        temperature=0.2,
        max_tokens=8192,
        context_window=32768,
        timeout_seconds=120,
    )


def default_config() -> Config:
    config = Config()
    mode = os.environ.get("TESTGEN_BUILD_MODE")
    if mode:
        config.build.mode = BuildMode(mode)
    return config


def _apply_model_overrides(model: ModelConfig, mo: dict):
    if "model" in mo:
        model.model_id = mo["model"]
    if "model_id" in mo:
        model.model_id = mo["model_id"]
    if "provider" in mo:
        model.provider = mo["provider"]
    if "endpoint" in mo:
        model.endpoint = mo["endpoint"]
    if "api_key_env" in mo:
        model.api_key_env = mo["api_key_env"]
    if "temperature" in mo:
        model.temperature = mo["temperature"]
    if "max_tokens" in mo:
        model.max_tokens = mo["max_tokens"]
    if "context_window" in mo:
        model.context_window = mo["context_window"]
    if "timeout" in mo:
        model.timeout_seconds = mo["timeout"]


def _apply_build_overrides(build: BuildConfig, bo: dict):
    if "mode" in bo:
        build.mode = BuildMode(bo["mode"])
    for key in ("root", "build_dir", "target"):
        if key in bo:
            setattr(build, key, bo[key])
    for key in ("configure_command", "build_command", "run_command", "compiler_command",
                "compile_flags", "link_flags", "include_dirs"):
        if key in bo:
            setattr(build, key, list(bo[key]))
    if "timeout" in bo:
        build.timeout_seconds = bo["timeout"]


def load_config(config_path: Optional[Path] = None, cwd: Optional[Path] = None) -> Config:
    """Load config from JSON file, falling back to defaults.

    A `.utg.json` in the working directory is honored too; only its
    `llm.model` and `llm.temperature` keys are read.
    """
    config = default_config()

    legacy = (cwd or Path.cwd()) / ".utg.json"
    if legacy.exists():
        try:
            llm = json.loads(legacy.read_text()).get("llm", {})
            if "model" in llm:
                config.model.model_id = llm["model"]
            if "temperature" in llm:
                config.model.temperature = llm["temperature"]
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable {legacy}: {e}")

    if config_path and config_path.exists():
        with open(config_path) as f:
            overrides = json.load(f)

        if "model" in overrides:
            _apply_model_overrides(config.model, overrides["model"])

        if "build" in overrides:
            _apply_build_overrides(config.build, overrides["build"])

        if "coverage" in overrides:
            co = overrides["coverage"]
            if "enabled" in co:
                config.coverage.enabled = co["enabled"]
            if "profdata_tool" in co:
                config.coverage.profdata_tool = co["profdata_tool"]
            if "cov_tool" in co:
                config.coverage.cov_tool = co["cov_tool"]
            if "timeout" in co:
                config.coverage.timeout_seconds = co["timeout"]

        for key in ("bypass_validation", "enable_auto_fix", "max_fix_attempts",
                    "max_iterations", "target_pct", "commit_no_coverage",
                    "allow_overwrite_fallback", "state_dir"):
            if key in overrides:
                setattr(config, key, overrides[key])

        if "acceptance" in overrides:
            config.acceptance = AcceptanceRule(overrides["acceptance"])

    return config
