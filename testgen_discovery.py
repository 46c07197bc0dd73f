"""
Locating the companion test file for a C++ source unit.

  1. Conventional siblings (<name>_test.cpp, test_<name>.cpp, ...)
  2. Recursive scan of the project, preferring test/ directories
  3. Nothing found: the caller falls back to fallback_test_path()
"""

import re
import logging
from pathlib import Path
from typing import Optional

from testgen_errors import ArtifactPathConflict

logger = logging.getLogger(__name__)

CPP_SOURCE_EXTENSIONS = [".cpp", ".cc", ".cxx", ".c++", ".C"]
CPP_HEADER_EXTENSIONS = [".h", ".hpp", ".hxx", ".hh"]

IGNORED_DIRS = {"build", ".git", ".testgen", "node_modules", "third_party", "_deps"}
TEST_DIRS = {"test", "tests", "unittests", "ut"}
TEST_MARKERS = re.compile(r"^\s*(?:TEST\w*\s*\(|#\s*include\s*[<\"]gtest/)", re.MULTILINE)


def is_cpp_source(path: Path) -> bool:
    return Path(path).suffix in CPP_SOURCE_EXTENSIONS


def is_cpp_header(path: Path) -> bool:
    return Path(path).suffix in CPP_HEADER_EXTENSIONS


def corresponding_file(path: Path) -> Optional[Path]:
    """Header for an implementation file, or implementation for a header."""
    path = Path(path)
    if is_cpp_source(path):
        exts = CPP_HEADER_EXTENSIONS
    elif is_cpp_header(path):
        exts = CPP_SOURCE_EXTENSIONS
    else:
        return None
    for ext in exts:
        candidate = path.with_suffix(ext)
        if candidate.exists():
            return candidate
    return None


def _ignored(path: Path, root: Path) -> bool:
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        parts = path.parts
    return any(p in IGNORED_DIRS or p.startswith("cmake-build") for p in parts[:-1])


def looks_like_test_file(path: Path) -> bool:
    """Empty, or declares at least one gtest macro / includes gtest."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    if not text.strip():
        return True
    return bool(TEST_MARKERS.search(text))


def find_test_file(src_file: Path, root: Path) -> Optional[Path]:
    """Best guess at an existing test file for `src_file`, or None."""
    src_file = Path(src_file)
    root = Path(root)
    base = src_file.stem
    ext = src_file.suffix if is_cpp_source(src_file) else ".cpp"

    for name in (f"{base}_test{ext}", f"test_{base}{ext}", f"{base}.test{ext}", f"{base}Test{ext}"):
        candidate = src_file.parent / name
        if candidate.is_file() and looks_like_test_file(candidate):
            logger.debug(f"  Found sibling test file: {candidate}")
            return candidate

    hits = []
    for ext_ in CPP_SOURCE_EXTENSIONS:
        for hit in root.rglob(f"*{base}*{ext_}"):
            if hit == src_file or _ignored(hit, root) or "test" not in hit.name.lower():
                continue
            if hit.is_file() and looks_like_test_file(hit):
                hits.append(hit)
    if not hits:
        return None

    # Files under a test directory first, then the shortest path.
    hits.sort(key=lambda p: (not any(part in TEST_DIRS for part in p.parts), len(str(p)), str(p)))
    logger.debug(f"  Found {len(hits)} test file candidate(s), using {hits[0]}")
    return hits[0]


def fallback_test_path(src_file: Path) -> Path:
    """Naming-convention path used when no test file could be found."""
    src_file = Path(src_file)
    ext = src_file.suffix if is_cpp_source(src_file) else ".cpp"
    return src_file.parent / f"{src_file.stem}_test{ext}"


def resolve_artifact_path(
    src_file: Path,
    root: Path,
    explicit: Optional[Path] = None,
    allow_overwrite_fallback: bool = False,
) -> Path:
    """Pick the test artifact path for a session.

    An explicit path always wins. The invented fallback path is refused if a
    file already sits there: discovery skipped it because it does not look
    like a test file, so writing to it could clobber unrelated work.
    """
    if explicit is not None:
        return Path(explicit)

    found = find_test_file(src_file, root)
    if found is not None:
        return found

    fallback = fallback_test_path(src_file)
    if fallback.exists() and not allow_overwrite_fallback:
        raise ArtifactPathConflict(
            f"Fallback test path {fallback} already exists but was not recognized as a "
            f"test for {src_file}; pass the test file explicitly or allow overwriting")
    logger.info(f"📝 No existing test file found, using {fallback}")
    return fallback
