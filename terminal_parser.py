"""Heuristic hints extracted from agent terminal output.

The agent prints free-form text, so everything here is best-effort:
progress markers, files the agent reports touching, test summaries and
error/warning lines.  ``ParserState`` accumulates what has been seen so
repeated lines do not produce repeated events.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Set

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
MOUSE_TRACKING_RE = re.compile(r"\x1b\[\?100[0-4][hl]|\x1b\[\?1006[hl]|\x1b\[\?1015[hl]")

EXPLICIT_PROGRESS_RE = re.compile(r"\[(?:Agent|Claude)\].*?(\d{1,3})%\s*(?:complete|done|progress)", re.I)
PROGRESS_LABEL_RE = re.compile(r"(?:Progress|Completion):\s*(\d{1,3})%", re.I)

FILE_CREATED_RES = [
    re.compile(r"Created\s+(?:file)?:?\s*[`'\"]*([^\s`'\"]+)[`'\"]*$", re.I | re.M),
    re.compile(r"\[File\]\s+Created:?\s*(\S+)", re.I),
    re.compile(r"Writing\s+to\s+(\S+)", re.I),
    re.compile(r"✓\s+Created\s+(\S+)", re.I),
    re.compile(r"Write\(([^)]+)\)", re.I),
    re.compile(r"Wrote\s+\d+\s+lines?\s+to\s+(\S+)", re.I),
]
FILE_MODIFIED_RES = [
    re.compile(r"Modified\s+(?:file)?:?\s*[`'\"]*([^\s`'\"]+)[`'\"]*$", re.I | re.M),
    re.compile(r"\[File\]\s+Modified:?\s*(\S+)", re.I),
    re.compile(r"Updated\s+(\S+)", re.I),
    re.compile(r"✓\s+Updated\s+(\S+)", re.I),
    re.compile(r"Edit\(([^)]+)\)", re.I),
    re.compile(r"Edited\s+(\S+)", re.I),
]
FILE_DELETED_RES = [
    re.compile(r"Deleted\s+(?:file)?:?\s*[`'\"]*([^\s`'\"]+)[`'\"]*$", re.I | re.M),
    re.compile(r"\[File\]\s+Deleted:?\s*(\S+)", re.I),
    re.compile(r"Removed\s+(\S+\.\w+)", re.I),
]
TEST_RESULT_RES = [
    re.compile(r"(\d+)\s*(?:/|of)\s*(\d+)\s+(?:tests?\s+)?pass(?:ing|ed)?", re.I),
    re.compile(r"Tests?:\s*(\d+)\s+passed,\s*(\d+)\s+failed", re.I),
    re.compile(r"✓\s*(\d+)\s+passed.*?(?:✗|✕)\s*(\d+)\s+failed", re.I),
    re.compile(r"PASS.*?(\d+)\s+passed.*?(\d+)\s+failed", re.I),
]
ALL_TESTS_PASSED_RES = [
    re.compile(r"All\s+(\d+)\s+tests?\s+passed", re.I),
    re.compile(r"✓\s+(\d+)\s+tests?\s+passing", re.I),
]
ERROR_RES = [
    re.compile(r"(?:Error|ERROR):\s*(.+)"),
    re.compile(r"(?:Failed|FAILED):\s*(.+)"),
    re.compile(r"✗\s+(.+)"),
    re.compile(r"\[ERROR\]\s*(.+)"),
]
WARNING_RES = [
    re.compile(r"(?:Warning|WARN):\s*(.+)", re.I),
    re.compile(r"⚠️?\s*(.+)"),
]

FILE_WEIGHT = 5
TEST_WEIGHT = 10
MAX_ESTIMATE = 90


@dataclass
class ProgressHint:
    progress: int
    source: str = "explicit"


@dataclass
class FileHint:
    action: str
    file_path: str


@dataclass
class TestHint:
    passed: int
    failed: int
    total: int

    __test__ = False


@dataclass
class ProblemHint:
    message: str
    severity: str


Hint = ProgressHint | FileHint | TestHint | ProblemHint


@dataclass
class ParserState:
    last_progress: int = 0
    files_created: Set[str] = field(default_factory=set)
    files_modified: Set[str] = field(default_factory=set)
    files_deleted: Set[str] = field(default_factory=set)
    tests_passed: int = 0
    tests_failed: int = 0
    tests_total: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def filter_mouse_sequences(text: str) -> str:
    """Drop mouse-tracking mode switches so clients keep native text selection."""
    return MOUSE_TRACKING_RE.sub("", text)


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def clean_file_path(raw: str) -> Optional[str]:
    cleaned = raw.strip().strip("`'\"")
    if cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.strip()
    if len(cleaned) < 2 or "..." in cleaned or cleaned.startswith("http"):
        return None
    if "/" not in cleaned and "." not in cleaned:
        return None
    return cleaned


def _first_match(patterns: List[re.Pattern], line: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.search(line)
        if match and match.group(1):
            return match
    return None


def _clamp(value: str) -> int:
    return min(100, max(0, int(value)))


def parse_output(chunk: str, state: ParserState) -> List[Hint]:
    """Scan a chunk line by line and return hints not already recorded in ``state``."""
    hints: List[Hint] = []
    for raw_line in strip_ansi(chunk).splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = EXPLICIT_PROGRESS_RE.search(line) or PROGRESS_LABEL_RE.search(line)
        if match:
            progress = _clamp(match.group(1))
            if progress != state.last_progress:
                state.last_progress = progress
                hints.append(ProgressHint(progress))
            continue

        for action, patterns, seen in (
            ("created", FILE_CREATED_RES, state.files_created),
            ("modified", FILE_MODIFIED_RES, state.files_modified),
            ("deleted", FILE_DELETED_RES, state.files_deleted),
        ):
            match = _first_match(patterns, line)
            if not match:
                continue
            path = clean_file_path(match.group(1))
            if path and path not in seen:
                seen.add(path)
                hints.append(FileHint(action, path))

        match = _first_match(TEST_RESULT_RES, line)
        if match:
            passed = int(match.group(1))
            failed = int(match.group(2)) if match.lastindex and match.lastindex >= 2 and match.group(2) else 0
            total = passed + failed
            if total > 0 and (passed, failed) != (state.tests_passed, state.tests_failed):
                state.tests_passed, state.tests_failed, state.tests_total = passed, failed, total
                hints.append(TestHint(passed, failed, total))
        else:
            match = _first_match(ALL_TESTS_PASSED_RES, line)
            if match:
                passed = int(match.group(1))
                if passed > 0 and passed != state.tests_passed:
                    state.tests_passed, state.tests_failed, state.tests_total = passed, 0, passed
                    hints.append(TestHint(passed, 0, passed))

        for severity, patterns, seen_list in (
            ("error", ERROR_RES, state.errors),
            ("warning", WARNING_RES, state.warnings),
        ):
            match = _first_match(patterns, line)
            if not match:
                continue
            message = match.group(1).strip()
            if message and message not in seen_list:
                seen_list.append(message)
                hints.append(ProblemHint(message, severity))
    return hints


def estimate_progress(state: ParserState) -> int:
    """Progress implied by activity alone; never above 90 so only completion reaches 100."""
    estimated = float(min(50, (len(state.files_created) + len(state.files_modified)) * FILE_WEIGHT))
    if state.tests_total > 0:
        estimated += min(40.0, state.tests_passed / state.tests_total * TEST_WEIGHT)
    return int(min(MAX_ESTIMATE, max(state.last_progress, estimated)))
