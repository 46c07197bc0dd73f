"""
Include directive handling for generated test blocks.

normalize_include / merge_includes are pure text transforms: system-bracket
includes pass through, bare or quoted tokens become `#include "x.h"`, and new
directives go right after the last existing include line. resolve_include is
the only place that probes the filesystem for include paths.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from testgen_discovery import corresponding_file

logger = logging.getLogger(__name__)

INCLUDE_LINE = re.compile(r'^\s*#\s*include\s+[<"].+[>"]')
_DIRECTIVE = re.compile(r'^#\s*include\s*(.*)$')
COMMON_INCLUDE_DIRS = ["include", "src", "lib", "headers", "inc"]
GTEST_INCLUDE = "#include <gtest/gtest.h>"


def normalize_include(token: str) -> Optional[str]:
    """Canonical `#include ...` form of one directive or bare token.

    Returns None for tokens that cannot name a header.
    """
    t = token.strip()
    if not t:
        return None
    m = _DIRECTIVE.match(t)
    if m:
        t = m.group(1).strip()
        if not t:
            return None
    if t.startswith("<"):
        return f"#include {t}" if t.endswith(">") and len(t) > 2 else None
    if t[0] in "\"'":
        t = t.strip("\"'").strip()
    if not t or any(c in t for c in '<>"\n'):
        return None
    return f'#include "{t}"'


def include_path(token: str) -> Optional[str]:
    """The header path inside a directive: `#include "a/b.h"` -> `a/b.h`."""
    norm = normalize_include(token)
    if norm is None:
        return None
    return norm[len("#include "):][1:-1]


def is_system_include(token: str) -> bool:
    norm = normalize_include(token)
    return bool(norm) and norm.startswith("#include <")


def existing_includes(text: str) -> List[str]:
    found = []
    for line in text.split("\n"):
        if INCLUDE_LINE.match(line):
            norm = normalize_include(line)
            if norm:
                found.append(norm)
    return found


def merge_includes(text: str, includes: Iterable[str]) -> Tuple[str, List[str]]:
    """Insert the missing includes into `text`.

    Returns (new_text, added). When nothing is missing the input string is
    returned unchanged, byte for byte.
    """
    present = set(existing_includes(text))
    missing: List[str] = []
    for inc in includes:
        norm = normalize_include(inc)
        if norm is None:
            logger.warning(f"  ⚠️ Ignoring malformed include: {inc!r}")
            continue
        if norm not in present and norm not in missing:
            missing.append(norm)
    if not missing:
        return text, []

    lines = text.split("\n")
    last = -1
    for i, line in enumerate(lines):
        if INCLUDE_LINE.match(line):
            last = i
    lines[last + 1:last + 1] = missing
    return "\n".join(lines), missing


def resolve_include(token: str, search_dirs: Sequence[Path]) -> Optional[Path]:
    """First directory in `search_dirs` that contains the included header."""
    rel = include_path(token)
    if rel is None:
        return None
    for d in search_dirs:
        candidate = Path(d) / rel
        if candidate.is_file():
            return candidate
    return None


def include_search_dirs(test_file: Path, src_file: Path, root: Path,
                        extra: Sequence[str] = ()) -> List[Path]:
    """Ordered directories a local include may resolve against."""
    test_dir = Path(test_file).resolve().parent
    src_dir = Path(src_file).resolve().parent
    root = Path(root).resolve()

    dirs = [test_dir, src_dir]
    dirs += [root / e for e in extra]
    dirs += [root / d for d in COMMON_INCLUDE_DIRS]
    dirs.append(root)
    parent = test_dir
    for _ in range(3):
        parent = parent.parent
        dirs.append(parent)
    dirs.append(src_dir.parent)

    unique = []
    for d in dirs:
        if d not in unique:
            unique.append(d)
    return unique


@dataclass
class IncludeCheck:
    includes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def prepare_includes(
    includes: Iterable[str],
    artifact_text: str,
    test_file: Path,
    src_file: Path,
    root: Path,
    extra_dirs: Sequence[str] = (),
) -> IncludeCheck:
    """Verify a candidate's includes against the project before merging.

    Local headers that resolve nowhere are dropped with a warning (the
    compiler would reject them anyway). The source unit's companion header
    and gtest are added when neither the candidate nor the file has them.
    """
    result = IncludeCheck()
    dirs = include_search_dirs(test_file, src_file, root, extra_dirs)

    for inc in includes:
        norm = normalize_include(inc)
        if norm is None:
            result.warnings.append(f"Invalid include format: {inc}")
            continue
        if is_system_include(norm) or resolve_include(norm, dirs) is not None:
            result.includes.append(norm)
        else:
            result.warnings.append(f"Include file not found: {include_path(norm)}")

    known = result.includes + existing_includes(artifact_text)

    companion = corresponding_file(src_file)
    if companion is not None:
        names = {companion.name, Path(src_file).name}
        if not any(Path(include_path(k) or "").name in names for k in known):
            rel = os.path.relpath(companion.resolve(), Path(test_file).resolve().parent)
            result.includes.append(f'#include "{Path(rel).as_posix()}"')
            logger.debug(f"    ➕ {result.includes[-1]} (companion header)")

    if not any("gtest/gtest.h" in k for k in known):
        result.includes.append(GTEST_INCLUDE)

    for w in result.warnings:
        logger.warning(f"  ⚠️ {w}")
    return result
