"""Tests for the bounded auto-repair loop."""

import pytest

from conftest import BROKEN, FakeBuildRunner, FakeCoverageProbe, ScriptedSource
from testgen_applier import CandidateApplier
from testgen_errors import GatewayError, NoProgressWarning, OperationCancelled, ToolInvocationError
from testgen_fixer import AutoFixLoop, fix_file
from testgen_models import SourceUnit

GOOD = "#include <gtest/gtest.h>\nTEST(Calc, Adds) { EXPECT_EQ(2, 2); }\n"
BAD = f"#include <gtest/gtest.h>\nTEST(Calc, Adds) {{ {BROKEN} }}\n"


@pytest.fixture
def source_unit(source_file):
    return SourceUnit.load(source_file)


def still_broken(text):
    return text + f"// attempt\n{BROKEN}\n"


class TestAutoFixLoop:
    @pytest.mark.asyncio
    async def test_repairs_on_first_reply(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[GOOD])
        loop = AutoFixLoop(runner, source, max_attempts=3)

        result = await loop.run(source_unit, BAD, artifact_path, diagnostics="error: expected ';'")

        assert result.success
        assert result.final_content == GOOD
        assert result.attempts == 2  # the failed build handed in + one validation
        assert len(runner.calls) == 1
        assert source.repair_calls == [(BAD, "error: expected ';'")]
        assert result.build is not None and result.build.success
        assert not artifact_path.exists()

    @pytest.mark.asyncio
    async def test_validates_first_without_diagnostics(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        loop = AutoFixLoop(runner, ScriptedSource(repairs=[GOOD]), max_attempts=3)

        result = await loop.run(source_unit, BAD, artifact_path)

        assert result.success
        assert result.attempts == 2
        assert [text for _, text in runner.calls] == [BAD, GOOD]

    @pytest.mark.parametrize("max_attempts", [1, 2, 3, 5])
    @pytest.mark.asyncio
    async def test_never_exceeds_attempt_budget(self, source_unit, artifact_path, max_attempts):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[still_broken] * 10)
        loop = AutoFixLoop(runner, source, max_attempts=max_attempts)

        result = await loop.run(source_unit, BAD, artifact_path)

        assert not result.success
        assert result.attempts == max_attempts
        assert len(runner.calls) == max_attempts
        assert len(source.repair_calls) == max_attempts - 1

    @pytest.mark.asyncio
    async def test_handed_in_failure_counts_as_first_attempt(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[still_broken] * 10)
        loop = AutoFixLoop(runner, source, max_attempts=3)

        result = await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")

        assert not result.success
        assert result.attempts == 3
        assert len(runner.calls) == 2

    @pytest.mark.asyncio
    async def test_single_attempt_with_diagnostics_does_nothing(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[GOOD])
        result = await AutoFixLoop(runner, source, max_attempts=1).run(
            source_unit, BAD, artifact_path, diagnostics="boom")
        assert not result.success
        assert runner.calls == [] and source.repair_calls == []

    @pytest.mark.asyncio
    async def test_unchanged_reply_consumes_an_attempt(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[BAD, "", GOOD])
        loop = AutoFixLoop(runner, source, max_attempts=3)

        with pytest.warns(NoProgressWarning):
            result = await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")

        assert not result.success
        assert result.attempts == 3
        assert [a.no_progress for a in result.history] == [True, True]
        assert [a.index for a in result.history] == [2, 3]
        assert runner.calls == []
        assert len(source.repair_calls) == 2

    @pytest.mark.asyncio
    async def test_unchanged_reply_is_not_rebuilt(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[BAD, GOOD])
        loop = AutoFixLoop(runner, source, max_attempts=4)

        with pytest.warns(NoProgressWarning):
            result = await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")

        assert result.success
        assert result.attempts == 3
        assert [text for _, text in runner.calls] == [GOOD]
        assert source.repair_calls[1][0] == BAD

    @pytest.mark.asyncio
    async def test_gateway_error_is_retried(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        source = ScriptedSource(repairs=[GatewayError("connection refused"), GOOD])
        loop = AutoFixLoop(runner, source, max_attempts=3)

        result = await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")

        assert result.success
        assert result.attempts == 3
        assert result.history[0].error == "connection refused"

    @pytest.mark.asyncio
    async def test_tool_error_during_validation_is_retried(self, source_unit, artifact_path):
        class FlakyRunner(FakeBuildRunner):
            async def build(self, test_file, cancel=None):
                if not self.calls:
                    self.calls.append((test_file, ""))
                    raise ToolInvocationError("clang++ timed out", output="partial")
                return await super().build(test_file, cancel)

        runner = FlakyRunner()
        loop = AutoFixLoop(runner, ScriptedSource(repairs=[GOOD]), max_attempts=3)

        result = await loop.run(source_unit, BAD, artifact_path)

        assert result.success
        assert result.attempts == 2
        assert "timed out" in result.history[0].diagnostics

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, source_unit, artifact_path):
        source = ScriptedSource(repairs=[OperationCancelled("stop"), GOOD])
        loop = AutoFixLoop(FakeBuildRunner(), source, max_attempts=3)

        with pytest.raises(OperationCancelled):
            await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")
        assert len(source.repair_calls) == 1

    @pytest.mark.asyncio
    async def test_fenced_reply_is_unwrapped(self, source_unit, artifact_path):
        runner = FakeBuildRunner()
        loop = AutoFixLoop(runner, ScriptedSource(repairs=[f"```cpp\n{GOOD}```"]), max_attempts=2)

        result = await loop.run(source_unit, BAD, artifact_path, diagnostics="boom")

        assert result.success
        assert result.final_content == GOOD

    @pytest.mark.asyncio
    async def test_no_scratch_files_left_behind(self, source_unit, artifact_path):
        loop = AutoFixLoop(FakeBuildRunner(), ScriptedSource(repairs=[still_broken] * 3), max_attempts=3)
        await loop.run(source_unit, BAD, artifact_path)
        assert [p for p in artifact_path.parent.iterdir() if p.name.startswith(".")] == []


class TestFixFile:
    @pytest.mark.asyncio
    async def test_commits_only_on_success(self, source_unit, artifact_path, project):
        artifact_path.write_text(BAD)
        runner = FakeBuildRunner()
        applier = CandidateApplier(runner, FakeCoverageProbe(), source_unit=source_unit, root=project)

        failed = await fix_file(AutoFixLoop(runner, ScriptedSource(repairs=[still_broken] * 5), 2),
                                applier, source_unit, artifact_path)
        assert not failed.success
        assert artifact_path.read_text() == BAD

        fixed = await fix_file(AutoFixLoop(runner, ScriptedSource(repairs=[GOOD]), 2),
                               applier, source_unit, artifact_path)
        assert fixed.success
        assert artifact_path.read_text() == GOOD
