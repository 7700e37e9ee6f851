"""
text_edit.py - Position-based multi-range text replacement

A batch of changes is computed against one snapshot of a document's text.
Each change is spliced in at its original offsets.

Application order depends on whether any two ranges overlap:

- Disjoint batches are sorted by position and applied rightmost first, so
  the result does not depend on the order the changes were sent in. This
  differs from plain reverse-input application, which corrupts offsets
  when a disjoint batch arrives in descending or mixed order. For a batch
  sent in ascending position order the two give the same sequence.
- Overlapping batches are applied strictly from the last input entry to
  the first. The entry that appears earlier in the batch lands last and
  wins the overlapped region.

Example:
    >>> apply_changes("abcdef", [Change(1, 4, "X"), Change(2, 5, "Y")])
    'aX'
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from errors import ValidationError

REPLACE = "replace"


@dataclass(frozen=True)
class Change:
    """Replace ``[start, end)`` of the current text with ``text``."""
    start: int
    end: int
    text: str
    operation: str = REPLACE

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "range": {"start": self.start, "end": self.end},
            "text": self.text,
        }


def _as_integer(value: Any) -> Optional[int]:
    """Return value as an int when it is integral, otherwise None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _check_entry(index: int, operation: Any, start: Any, end: Any,
                 text: Any, text_length: int) -> Optional[str]:
    if operation != REPLACE:
        return f'changes[{index}].operation must be "replace"'
    start, end = _as_integer(start), _as_integer(end)
    if start is None or end is None:
        return f"changes[{index}].range.start/end must be integers"
    if start < 0 or end < 0 or start > end or end > text_length:
        return f"changes[{index}].range out of bounds (0..{text_length})"
    if not isinstance(text, str):
        return f"changes[{index}].text must be a string"
    return None


def parse_changes(payload: Any, text_length: int) -> List[Change]:
    """
    Convert a request payload into validated changes

    Args:
        payload: ``[{"operation": "replace", "range": {"start", "end"}, "text"}]``
        text_length: Length of the text the offsets refer to

    Returns:
        List of Change objects in input order

    Raises:
        ValidationError: On the first malformed or out-of-range entry. The
            message names the entry index and the violated bound.
    """
    if not isinstance(payload, list) or not payload:
        raise ValidationError("changes[] required")

    changes = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise ValidationError(f'changes[{index}].operation must be "replace"')

        rng = entry.get("range")
        if not isinstance(rng, dict):
            rng = {}

        error = _check_entry(
            index, entry.get("operation"), rng.get("start"), rng.get("end"),
            entry.get("text"), text_length
        )
        if error:
            raise ValidationError(error)

        changes.append(Change(
            start=_as_integer(rng["start"]),
            end=_as_integer(rng["end"]),
            text=entry["text"],
        ))
    return changes


def validate_changes(changes: Sequence[Change], text_length: int) -> None:
    """Reject the whole batch if any change is invalid for ``text_length``"""
    if not changes:
        raise ValidationError("changes[] required")

    for index, change in enumerate(changes):
        error = _check_entry(
            index, change.operation, change.start, change.end, change.text, text_length
        )
        if error:
            raise ValidationError(error)


def has_overlaps(changes: Sequence[Change]) -> bool:
    """True when any two ranges share at least one position.

    Touching ranges and insertions at a range boundary do not overlap.
    """
    ordered = sorted(changes, key=lambda c: (c.start, c.end))
    for previous, current in zip(ordered, ordered[1:]):
        if current.start < previous.end:
            return True
    return False


def application_order(changes: Sequence[Change]) -> List[Change]:
    """
    Order in which a validated batch is spliced into the working text

    Disjoint batches are applied rightmost first (start, then end, then input
    index, all descending), which makes the result independent of input
    order. A batch with overlapping ranges is applied strictly from the last
    input entry to the first, so the entry declared earliest lands last and
    wins the overlapped region. For batches given in ascending position
    order both rules produce the same sequence.
    """
    if has_overlaps(changes):
        return list(reversed(changes))

    indexed = sorted(
        enumerate(changes),
        key=lambda item: (item[1].start, item[1].end, item[0]),
        reverse=True
    )
    return [change for _, change in indexed]


def apply_changes(original: str, changes: Sequence[Change]) -> str:
    """
    Apply a batch of replacements and return the new text

    The batch is validated against ``len(original)`` first; nothing is applied
    unless every change is valid. Each change is spliced in using its
    original, unshifted offsets, in the order given by application_order().
    """
    validate_changes(changes, len(original))

    updated = original
    for change in application_order(changes):
        updated = updated[:change.start] + change.text + updated[change.end:]
    return updated
