"""
Prompt construction and reply parsing for the candidate source.

Generation prompts are assembled from named parts (header, source, existing
test file, target lines, output spec) and passed through a middleware chain
before being joined. Replies are JSON objects matching REPLY_SCHEMA.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from testgen_errors import SchemaError
from testgen_models import CandidateTest

logger = logging.getLogger(__name__)


# ============================================================
# Context Budget Utilities
# ============================================================

def estimate_tokens(text: str) -> int:
    """~4 chars/token; close enough for budget management."""
    return len(text) // 4


def truncate_to_budget(text: str, max_chars: int, label: str = "") -> str:
    """
    Truncation that keeps the head and tail of the content.

    Compiler output puts the first error near the top and the summary /
    exit status at the bottom; the middle is mostly repeated notes.

    Guarantees output length <= max_chars.
    """
    if len(text) <= max_chars:
        return text

    marker = f"\n\n... ({label + ': ' if label else ''}truncated {len(text) - max_chars} chars) ...\n\n"
    usable = max_chars - len(marker)
    if usable < 20:
        return text[:max_chars]

    # 60% head, 40% tail
    head_budget = int(usable * 0.6)
    tail_budget = usable - head_budget
    return text[:head_budget] + marker + text[-tail_budget:]


_FENCE = re.compile(r"^\s*```[\w+#.-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Drop one wrapping ```lang ... ``` fence pair, if the whole reply is fenced."""
    if text is None:
        return ""
    m = _FENCE.match(text)
    if m:
        body = m.group(1)
        return body if body.endswith("\n") else body + "\n"
    return text


# ============================================================
# Reply schema
# ============================================================

REPLY_SCHEMA = {
    "type": "object",
    "required": ["tests"],
    "properties": {
        "tests": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "goal", "code"],
                "properties": {
                    "name": {"type": "string"},
                    "goal": {"type": "string"},
                    "code": {"type": "string"},
                    "includes": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

_NAME = re.compile(r"^[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)?$")


def _parse_entry(entry, index: int) -> Optional[CandidateTest]:
    if not isinstance(entry, dict):
        logger.warning(f"  ⚠️ Dropping test #{index}: not an object")
        return None
    name, code = entry.get("name"), entry.get("code")
    if not isinstance(name, str) or not _NAME.match(name.strip()):
        logger.warning(f"  ⚠️ Dropping test #{index}: invalid name {name!r}")
        return None
    if not isinstance(code, str) or not code.strip():
        logger.warning(f"  ⚠️ Dropping test {name}: empty code")
        return None

    includes = entry.get("includes") or []
    if isinstance(includes, str):
        # tolerate the YAML-ish "- <x>\n- \"y.h\"" block some models emit
        includes = [ln.strip().lstrip("-").strip() for ln in includes.splitlines() if ln.strip()]
    if not isinstance(includes, list):
        includes = []

    goal = entry.get("goal", "")
    return CandidateTest(
        name=name.strip(),
        code=strip_code_fences(code).strip(),
        includes=[str(i) for i in includes if str(i).strip()],
        goal=goal if isinstance(goal, str) else "",
    )


def parse_reply(raw: str) -> List[CandidateTest]:
    """Candidates from a raw model reply.

    Raises SchemaError when the reply is not a JSON object with a `tests`
    array. Bad entries and repeated names are dropped with a warning.
    """
    if raw is None or not raw.strip():
        raise SchemaError("Empty reply")
    try:
        data = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        raise SchemaError(f"Reply is not valid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("tests"), list):
        raise SchemaError("Reply has no 'tests' array")

    candidates: List[CandidateTest] = []
    seen = set()
    for i, entry in enumerate(data["tests"]):
        cand = _parse_entry(entry, i)
        if cand is None:
            continue
        if cand.name in seen:
            logger.warning(f"  ⚠️ Dropping duplicate test name in reply: {cand.name}")
            continue
        seen.add(cand.name)
        candidates.append(cand)
    return candidates


# ============================================================
# Generation prompt
# ============================================================

@dataclass
class PromptParts:
    header: str = ""
    source: str = ""
    existing: str = ""
    coverage: str = ""
    footer: str = ""

    def assemble(self) -> str:
        blocks = [self.header, self.source, self.existing, self.coverage, self.footer]
        return "\n\n".join(b.strip("\n") for b in blocks if b.strip()).strip() + "\n"


@dataclass
class BuildContext:
    missed: Sequence[int] = ()
    prev_failures: Sequence[str] = ()


Middleware = Callable[[PromptParts, BuildContext], PromptParts]

GOALS = """GOALS:
  1. Achieve comprehensive test coverage for the C++ source code provided below.
  2. Specifically, ensure the generated tests cover the following missed lines:
      - {missed}
  3. Produce valid, modern C++17 Google Test code that is well-structured and easy to understand.
  4. The tests should be self-contained and not require any external dependencies beyond the standard library and Google Test.

CONSTRAINTS:
  - Reply with a single JSON object matching OUTPUT_SPEC, nothing else.
  - Use only the C++17 standard library and the Google Test framework.
  - Do not redefine tests that already exist in CURRENT_TEST_FILE.
  - Do not use mock objects unless explicitly requested.

TESTING GUIDELINES:
  - Create a separate TEST or TEST_F block for each function or method.
  - Cover typical use cases, edge cases (empty input, zero, large values) and invalid input.
  - Use descriptive test names and an Arrange, Act, Assert layout.
  - Prefer expressive assertions (ASSERT_EQ, EXPECT_TRUE, ASSERT_THROW)."""

OUTPUT_SPEC = """=== OUTPUT_SPEC ===
{
  "tests": [
    {
      "name": "Suite.CamelCaseName",
      "goal": "Short behaviour description.",
      "includes": ["<gtest/gtest.h>", "\\"foo.h\\""],
      "code": "TEST(Suite, CamelCaseName) { ... }"
    }
  ]
}"""


def inject_goals_constraints(parts: PromptParts, ctx: BuildContext) -> PromptParts:
    missed = ", ".join(str(n) for n in ctx.missed) or "ANY new line"
    return replace(parts, header=parts.header + "\n\n" + GOALS.format(missed=missed))


def inject_prev_failures(parts: PromptParts, ctx: BuildContext) -> PromptParts:
    if not ctx.prev_failures:
        return parts
    return replace(parts, footer=parts.footer + "\n\nPREVIOUS_FAILURES:\n" + "\n\n".join(ctx.prev_failures))


DEFAULT_MIDDLEWARE: List[Middleware] = [inject_goals_constraints, inject_prev_failures]


def _rel(path: Optional[Path], root: Optional[Path]) -> str:
    if path is None:
        return "No test file specified"
    try:
        return os.path.relpath(Path(path).resolve(), Path(root or ".").resolve())
    except ValueError:
        return str(path)


def build_generation_prompt(
    src_path: Path,
    src_text: str,
    test_text: str = "",
    test_path: Optional[Path] = None,
    missed_lines: Sequence[int] = (),
    prev_failures: Sequence[str] = (),
    root: Optional[Path] = None,
    middlewares: Sequence[Middleware] = (),
    max_chars: Optional[int] = None,
) -> str:
    existing = test_text if test_text.strip() else "No existing test file provided."
    if max_chars:
        # source and existing tests share the budget; keep room for the fixed parts
        share = max(2000, (max_chars - 4000) // 2)
        src_text = truncate_to_budget(src_text, share, "source")
        existing = truncate_to_budget(existing, share, "existing tests")

    parts = PromptParts(
        header="C++ Unit Test Generation Request",
        source=f"=== C++ Source Code to be Tested: ===\nFile: {_rel(src_path, root)}\n{src_text}",
        existing=f"=== CURRENT_TEST_FILE ===\nFile: {_rel(test_path, root)}\n{existing}",
        coverage="=== TARGET_LINES ===\n" + (" ".join(str(n) for n in missed_lines) or "ALL"),
        footer=OUTPUT_SPEC,
    )
    ctx = BuildContext(missed=list(missed_lines), prev_failures=list(prev_failures))
    for mw in [*DEFAULT_MIDDLEWARE, *middlewares]:
        parts = mw(parts, ctx)
    return parts.assemble()


# ============================================================
# Repair prompt
# ============================================================

REPAIR_INSTRUCTIONS = """=== INSTRUCTIONS ===
1. Analyze the compilation errors and test file for issues
2. Fix include statements, missing dependencies, or incorrect test syntax
3. Ensure all Google Test macros are properly formatted
4. Verify that the test file correctly includes the source file being tested
5. Make sure all necessary standard library includes are present
6. Fix any namespace issues or scope problems
7. Pay attention to the specific error messages from the compiler

=== OUTPUT FORMAT ===
Provide ONLY the corrected test file content without any markdown formatting or explanations.
The output should be a complete, compilable C++ test file.

=== CORRECTED TEST FILE ==="""


def build_repair_prompt(
    src_path: Path,
    src_text: str,
    test_text: str,
    diagnostics: str = "",
    test_path: Optional[Path] = None,
    root: Optional[Path] = None,
    max_chars: Optional[int] = None,
) -> str:
    if max_chars:
        diagnostics = truncate_to_budget(diagnostics, max(2000, max_chars // 4), "diagnostics")

    sections = [
        "C++ Test File Fix Request",
        "The following test file is failing to compile or run. "
        "Please fix the issues and provide a corrected version.",
        f"=== SOURCE FILE ===\nFile: {_rel(src_path, root)}\n{src_text}",
        f"=== CURRENT TEST FILE (WITH ERRORS) ===\nFile: {_rel(test_path, root)}\n{test_text}",
    ]
    if diagnostics.strip():
        sections.append(f"=== COMPILATION ERRORS ===\n{diagnostics}")
    sections.append(REPAIR_INSTRUCTIONS)
    return "\n\n".join(s.strip("\n") for s in sections) + "\n"
