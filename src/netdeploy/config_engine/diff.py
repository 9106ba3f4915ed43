"""Diff engine for configuration text.

Computes normalized line differences between rendered configs, baselines
and live device state.
"""
import difflib
import re
from typing import Iterable, Optional

from ..config.settings import DEFAULT_VOLATILE, CriticalityRule
from .schema import DiffLine, DiffOp


def _compile(patterns: Optional[Iterable[str]]) -> list[re.Pattern]:
    return [re.compile(p) for p in (DEFAULT_VOLATILE if patterns is None else patterns)]


def normalize_lines(text: str, volatile_patterns: Optional[Iterable[str]] = None) -> list[str]:
    """
    Normalize configuration text into comparable lines.

    Drops blank lines, comment-only lines ('!' or '#') and lines matching a
    volatile pattern (timestamps, counters, banners). Trailing whitespace is
    stripped; leading indentation is kept because it carries hierarchy.
    """
    volatile = _compile(volatile_patterns)
    lines = []
    for raw in text.splitlines():
        line = raw.rstrip()
        if not line.strip():
            continue
        if any(p.search(line) for p in volatile):
            continue
        if line.lstrip().startswith(("!", "#")):
            continue
        lines.append(line)
    return lines


def normalize(text: str, volatile_patterns: Optional[Iterable[str]] = None) -> str:
    """Normalized text, one line per statement."""
    lines = normalize_lines(text, volatile_patterns)
    return "\n".join(lines) + "\n" if lines else ""


def _raw_changes(left: list[str], right: list[str]) -> list[tuple]:
    """(op, old, new, left_index, right_index) tuples for left -> right."""
    changes = []
    matcher = difflib.SequenceMatcher(a=left, b=right, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if tag == "delete":
            changes.extend((DiffOp.REMOVED, left[i], None, i, j1) for i in range(i1, i2))
        elif tag == "insert":
            changes.extend((DiffOp.ADDED, None, right[j], i1, j) for j in range(j1, j2))
        else:
            # Pair replaced lines positionally, then spill the rest
            paired = min(i2 - i1, j2 - j1)
            for k in range(paired):
                changes.append((DiffOp.CHANGED, left[i1 + k], right[j1 + k], i1 + k, j1 + k))
            changes.extend((DiffOp.REMOVED, left[i], None, i, j1 + paired) for i in range(i1 + paired, i2))
            changes.extend((DiffOp.ADDED, None, right[j], i1 + paired, j) for j in range(j1 + paired, j2))
    return changes


def _to_line(op: DiffOp, old: Optional[str], new: Optional[str], left_index: int, right_index: int) -> DiffLine:
    position = right_index if op == DiffOp.ADDED else left_index
    return DiffLine(op=op, old=old, new=new, position=position)


def diff(a: str, b: str, volatile_patterns: Optional[Iterable[str]] = None) -> list[DiffLine]:
    """
    Compute the ordered normalized difference from a to b.

    The result is empty when both sides normalize equal, and diff(b, a) is
    diff(a, b) with added/removed and old/new swapped. The matcher always
    runs on the canonically ordered pair so both directions see the same
    alignment.

    Args:
        a: Left text (e.g. baseline)
        b: Right text (e.g. live config)
        volatile_patterns: Overrides the default volatile line patterns

    Returns:
        List of DiffLine in left-text order
    """
    left = normalize_lines(a, volatile_patterns)
    right = normalize_lines(b, volatile_patterns)
    if left == right:
        return []

    if left <= right:
        return [_to_line(*change) for change in _raw_changes(left, right)]

    return [
        _to_line(op.inverse(), new, old, right_index, left_index)
        for op, old, new, left_index, right_index in _raw_changes(right, left)
    ]


def line_weight(line: str, rules: Iterable[CriticalityRule], default: float = 1.0) -> float:
    """Highest weight among matching criticality rules, or the default."""
    weights = [rule.weight for rule in rules if re.search(rule.pattern, line)]
    return max(weights) if weights else default


def severity_score(diffs: Iterable[DiffLine], rules: Iterable[CriticalityRule]) -> float:
    """Sum of per-line weights. A changed line counts its heavier side."""
    rules = list(rules)
    total = 0.0
    for d in diffs:
        sides = [s for s in (d.old, d.new) if s is not None]
        total += max(line_weight(s, rules) for s in sides)
    return total


def summarize_diff(diffs: list[DiffLine], limit: Optional[int] = None) -> str:
    """
    Create a human-readable summary of a diff.

    Useful for dry-run output and logging.
    """
    if not diffs:
        return "No changes - configurations match"

    lines = [f"Changes ({len(diffs)} total):"]
    shown = diffs if limit is None else diffs[:limit]
    for d in shown:
        if d.op == DiffOp.ADDED:
            lines.append(f"  [+] {d.new.strip()}")
        elif d.op == DiffOp.REMOVED:
            lines.append(f"  [-] {d.old.strip()}")
        else:
            lines.append(f"  [~] {d.old.strip()}  ->  {d.new.strip()}")
    if limit is not None and len(diffs) > limit:
        lines.append(f"  ... and {len(diffs) - limit} more")
    return "\n".join(lines)
