"""
Candidate source: where test candidates and repaired test files come from.

The orchestrator and repair loop only see the CandidateSource protocol, so a
scripted source can stand in for the model in tests.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from testgen_errors import SchemaError
from testgen_llm import LLMClient
from testgen_models import CandidateTest, SourceUnit
from testgen_prompts import (
    REPLY_SCHEMA, build_generation_prompt, build_repair_prompt, parse_reply,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a senior C++ engineer writing Google Test unit tests. "
    "Follow the requested output format exactly."
)


@dataclass
class GenerationRequest:
    source: SourceUnit
    artifact_path: Path
    artifact_text: str = ""
    missed_lines: Sequence[int] = ()
    prev_failures: Sequence[str] = ()
    root: Optional[Path] = None
    extra: List[str] = field(default_factory=list)  # free-form notes appended to the prompt


class CandidateSource(Protocol):
    async def generate(self, request: GenerationRequest,
                       cancel: Optional[asyncio.Event] = None) -> List[CandidateTest]:
        ...

    async def repair(self, source_unit: SourceUnit, artifact_text: str, diagnostics: str,
                     cancel: Optional[asyncio.Event] = None) -> str:
        ...


def render_request(request: GenerationRequest, max_chars: Optional[int] = None) -> str:
    prompt = build_generation_prompt(
        src_path=request.source.path,
        src_text=request.source.text,
        test_text=request.artifact_text,
        test_path=request.artifact_path,
        missed_lines=request.missed_lines,
        prev_failures=request.prev_failures,
        root=request.root,
        max_chars=max_chars,
    )
    if request.extra:
        prompt += "\n" + "\n".join(request.extra) + "\n"
    return prompt


class LLMCandidateSource:
    """CandidateSource backed by a chat model."""

    def __init__(self, client: LLMClient, root: Optional[Path] = None,
                 artifact_path: Optional[Path] = None):
        self.client = client
        self.root = root
        self.artifact_path = artifact_path
        # prompt budget in chars, leaving a quarter of the window for the reply
        self.max_chars = int(client.config.context_window * 4 * 0.75)

    def _messages(self, prompt: str) -> list:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    async def raw_reply(self, request: GenerationRequest,
                        cancel: Optional[asyncio.Event] = None) -> str:
        prompt = render_request(request, self.max_chars)
        logger.debug(f"  Generation prompt: {len(prompt)} chars")
        return await self.client.chat(self._messages(prompt), schema=REPLY_SCHEMA, cancel=cancel)

    async def generate(self, request: GenerationRequest,
                       cancel: Optional[asyncio.Event] = None) -> List[CandidateTest]:
        raw = await self.raw_reply(request, cancel=cancel)
        try:
            candidates = parse_reply(raw)
        except SchemaError as e:
            logger.warning(f"  ⚠️ Unusable model reply ({e}); no candidates this round")
            logger.debug(f"Raw reply: {raw[:500]}")
            return []
        logger.info(f"  🤖 Model proposed {len(candidates)} test(s)")
        return candidates

    async def repair(self, source_unit: SourceUnit, artifact_text: str, diagnostics: str,
                     cancel: Optional[asyncio.Event] = None) -> str:
        prompt = build_repair_prompt(
            src_path=source_unit.path,
            src_text=source_unit.text,
            test_text=artifact_text,
            diagnostics=diagnostics,
            test_path=self.artifact_path,
            root=self.root,
            max_chars=self.max_chars,
        )
        return await self.client.chat(self._messages(prompt), cancel=cancel)
