"""Project-structure rules for BC task lists.

BC projects use heading tasks numbered 1000/2000/3000/4000 to open a section.
Headings are never synchronized, neither are ``TOTAL`` rows, and every task
inside the Revenue section is skipped until the next heading.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Set

HEADING_TASK_SECTIONS: Dict[int, str] = {
    1000: "Pre-Construction",
    2000: "Installation",
    3000: "Revenue",
    4000: "Change Orders",
}
REVENUE_SECTION = "Revenue"

_DIGITS = re.compile(r"\d+")
_NATURAL_CHUNKS = re.compile(r"(\d+)")


def parse_task_number(task_no: Any) -> Optional[int]:
    """First run of digits in a task number (``"T-2000"`` -> 2000)."""
    match = _DIGITS.search(str(task_no or ""))
    return int(match.group(0)) if match else None


def task_number_parts(task_no: Any) -> List[int]:
    return [int(part) for part in _DIGITS.findall(str(task_no or "").strip())]


def _natural_key(value: str):
    return [
        (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk.lower())
        for chunk in _NATURAL_CHUNKS.split(value)
        if chunk
    ]


def _sort_key(task: Dict[str, Any]):
    # A missing numeric part sorts before any present part: [1] < [1, 0].
    parts = task_number_parts(task.get("taskNo"))
    numeric = [(1, part) for part in parts]
    return (numeric, _natural_key(str(task.get("taskNo") or "").strip()))


def sort_tasks_by_task_no(tasks: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort by the numeric parts of ``taskNo``, then natural string order."""
    return sorted(tasks, key=_sort_key)


class SectionTracker:
    """Walks a sorted task list and reports which tasks must be skipped."""

    def __init__(self):
        self.current: Optional[str] = None

    def should_skip(self, task: Dict[str, Any]) -> bool:
        description = str(task.get("description") or "").strip()
        if description.upper() == "TOTAL":
            return True
        number = parse_task_number(task.get("taskNo"))
        if number is not None and number in HEADING_TASK_SECTIONS:
            self.current = HEADING_TASK_SECTIONS[number]
            return True
        return self.current == REVENUE_SECTION


def build_allowed_task_numbers(values: Iterable[str]) -> Set[int]:
    allowed: Set[int] = set()
    for value in values:
        number = parse_task_number(value)
        if number is not None:
            allowed.add(number)
    return allowed


def is_allowed_task_no(task_no: Any, allowlist: Set[int]) -> bool:
    """An empty allowlist admits every task."""
    if not allowlist:
        return True
    number = parse_task_number(task_no)
    return number is not None and number in allowlist
