from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field

# "=== 2 failed, 10 passed, 1 skipped in 3.21s ==="
_PYTEST_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed|errors?|skipped)\b")
_PYTEST_SUMMARY_RE = re.compile(r"^=+ .*\b(passed|failed|errors?)\b.* in [\d.]+m?s.*=+\s*$")
# "test result: FAILED. 8 passed; 2 failed; 0 ignored"
_CARGO_RE = re.compile(r"test result: \w+\. (\d+) passed; (\d+) failed")
# "tests/test_api.py::test_create PASSED" and "FAILED tests/test_api.py::test_create - ..."
_PYTEST_TRAILING_RE = re.compile(r"^(\S+::\S+)\s+(PASSED|FAILED|ERROR)\b")
_PYTEST_LEADING_RE = re.compile(r"^(PASSED|FAILED|ERROR)\s+(\S+::\S+)")
# "test parser::tests::roundtrip ... ok"
_CARGO_TEST_RE = re.compile(r"^test (\S+) \.\.\. (ok|FAILED)\b")
_CHECKBOX_RE = re.compile(r"^\s*[-*]\s+\[( |x|X)\]")


class ProgressSummary(BaseModel):
    made_progress: bool = False
    score: float = 0.0
    failing_tests: Optional[int] = None
    passed_tests: Optional[int] = None
    total_tests: Optional[int] = None
    passed_names: list[str] = Field(default_factory=list)
    failed_names: list[str] = Field(default_factory=list)
    checked_items: int = 0
    total_items: int = 0


def _parse_counts(output: str) -> tuple[Optional[int], Optional[int]]:
    passed: Optional[int] = None
    failed: Optional[int] = None
    for line in output.splitlines():
        cargo = _CARGO_RE.search(line)
        if cargo:
            passed = (passed or 0) + int(cargo.group(1))
            failed = (failed or 0) + int(cargo.group(2))
            continue
        if not _PYTEST_SUMMARY_RE.match(line.strip()):
            continue
        # The last pytest summary wins over earlier runs in the same output.
        passed, failed = 0, 0
        for count, label in _PYTEST_COUNT_RE.findall(line):
            if label == "passed":
                passed += int(count)
            elif label != "skipped":
                failed += int(count)
    return passed, failed


def _parse_names(output: str) -> tuple[list[str], list[str]]:
    results: dict[str, bool] = {}
    for raw in output.splitlines():
        line = raw.strip()
        match = _PYTEST_TRAILING_RE.match(line)
        if match:
            results[match.group(1)] = match.group(2) == "PASSED"
            continue
        match = _PYTEST_LEADING_RE.match(line)
        if match:
            results[match.group(2)] = match.group(1) == "PASSED"
            continue
        match = _CARGO_TEST_RE.match(line)
        if match:
            results[match.group(1)] = match.group(2) == "ok"
    passed = [name for name, ok in results.items() if ok]
    failed = [name for name, ok in results.items() if not ok]
    return passed, failed


class ProgressTracker:
    """Reads test summaries and checklists out of iteration output.

    Progress means fewer failing tests, more passing tests or more checked
    items than the last output that reported them.
    """

    def __init__(self) -> None:
        self._last: Optional[ProgressSummary] = None

    @property
    def last(self) -> Optional[ProgressSummary]:
        return self._last

    def reset(self) -> None:
        self._last = None

    def analyze(self, output: str) -> ProgressSummary:
        passed, failed = _parse_counts(output)
        passed_names, failed_names = _parse_names(output)
        if passed is None and (passed_names or failed_names):
            passed, failed = len(passed_names), len(failed_names)
        total = (passed or 0) + (failed or 0) if passed is not None else None

        checked = 0
        items = 0
        for line in output.splitlines():
            match = _CHECKBOX_RE.match(line)
            if match:
                items += 1
                if match.group(1) != " ":
                    checked += 1

        if total:
            score = (passed or 0) / total
        elif items:
            score = checked / items
        else:
            score = 0.0

        summary = ProgressSummary(
            score=score,
            failing_tests=failed,
            passed_tests=passed,
            total_tests=total,
            passed_names=passed_names,
            failed_names=failed_names,
            checked_items=checked,
            total_items=items,
        )
        summary.made_progress = self._compare(summary)
        if total is not None or items:
            self._last = summary
        return summary

    def _compare(self, current: ProgressSummary) -> bool:
        previous = self._last
        if current.total_tests is None and not current.total_items:
            return False
        if previous is None:
            return bool(current.passed_tests) or current.checked_items > 0
        if current.failing_tests is not None and previous.failing_tests is not None:
            if current.failing_tests < previous.failing_tests:
                return True
        if current.passed_tests is not None and previous.passed_tests is not None:
            if current.passed_tests > previous.passed_tests:
                return True
        return current.checked_items > previous.checked_items
