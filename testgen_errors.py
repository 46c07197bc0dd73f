"""
Error taxonomy for the test generation pipeline.

Recoverable failures (BuildFailure, SchemaError) are turned into verdicts or
empty candidate batches close to where they happen. Gateway and tool failures
propagate out of the session unless the repair loop absorbs them.
"""

from typing import Optional


class TestgenError(Exception):
    """Base class for all pipeline errors."""

    # Keep pytest from collecting these as test classes.
    __test__ = False


class ToolInvocationError(TestgenError):
    """An external tool could not be started, timed out, or produced unusable output."""

    def __init__(self, message: str, command: Optional[list] = None, output: str = ""):
        super().__init__(message)
        self.command = command or []
        self.output = output


class OperationCancelled(ToolInvocationError):
    """The session cancel signal was raised while an operation was in flight."""


class BuildFailure(TestgenError):
    """Compile or run step exited non-zero."""

    def __init__(self, message: str, diagnostics: str = "", stage: str = "build"):
        super().__init__(message)
        self.diagnostics = diagnostics
        self.stage = stage


class GatewayError(TestgenError):
    """Transport failure while talking to the model endpoint."""


class SchemaError(TestgenError):
    """Model reply did not match the expected structure."""


class ArtifactPathConflict(TestgenError):
    """The naming-convention fallback path points at an unrelated existing file."""


class NoProgressWarning(UserWarning):
    """A repair attempt returned empty or unchanged content."""


class ConfigurationError(TestgenError):
    """Settings that cannot produce a valid session."""
