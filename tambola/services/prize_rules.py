"""Prize pattern evaluation.

Pure functions only: given a ticket grid, the numbers a player claims and
the numbers actually called, decide whether a named prize pattern is
satisfied. Patterns are resolved by canonical identifier, never by
substring matching on display names.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from tambola.errors import UnknownRule

EARLY_FIVE = 'early_five'
TOP_LINE = 'top_line'
MIDDLE_LINE = 'middle_line'
BOTTOM_LINE = 'bottom_line'
FOUR_CORNERS = 'four_corners'
FULL_HOUSE = 'full_house'

EARLY_FIVE_COUNT = 5

_SYNONYMS = {
    EARLY_FIVE: ('earlyfive', 'early5', 'jaldifive', 'jaldi5', 'quickfive'),
    TOP_LINE: ('topline', 'line1', 'firstline', 'row1', 'toprow'),
    MIDDLE_LINE: ('middleline', 'line2', 'secondline', 'row2', 'centreline', 'centerline', 'middlerow'),
    BOTTOM_LINE: ('bottomline', 'line3', 'thirdline', 'row3', 'bottomrow'),
    FOUR_CORNERS: ('corners', 'fourcorners', '4corners', 'corner'),
    FULL_HOUSE: ('fullhouse', 'housie', 'house', 'fullhousie'),
}
PATTERN_ALIASES = {alias: pattern for pattern, aliases in _SYNONYMS.items() for alias in aliases}

LINE_ROWS = {TOP_LINE: 0, MIDDLE_LINE: 1, BOTTOM_LINE: 2}


@dataclass
class Evaluation:
    valid: bool
    effectively_claimed: List[int] = field(default_factory=list)
    reason: Optional[str] = None
    pattern: Optional[str] = None


def _compact(text: str) -> str:
    return re.sub(r'[\s_\-]+', '', text)


def _candidate_keys(identifier):
    text = str(identifier).strip().lower()
    # Generated ids carry a trailing position, e.g. "rule_topline_2"
    for variant in (text, re.sub(r'[\s_\-]+\d+$', '', text)):
        key = _compact(variant)
        yield key
        if key.startswith('rule'):
            yield key[4:]


def canonical_pattern(identifier) -> str:
    """Map a rule identifier or one of its synonyms to a canonical pattern."""
    if identifier is None:
        raise UnknownRule(identifier)
    for key in _candidate_keys(identifier):
        if key in PATTERN_ALIASES:
            return PATTERN_ALIASES[key]
    raise UnknownRule(identifier)


def _pattern_identifier(rule):
    if isinstance(rule, str):
        return rule
    return getattr(rule, 'pattern', None) or getattr(rule, 'rule_id', None)


def ticket_numbers(grid) -> List[int]:
    return [n for row in grid for n in row if n is not None]


def corner_numbers(grid) -> List[int]:
    """First and last numbers of the top and bottom rows, deduplicated."""
    corners = []
    for row in (grid[0], grid[-1]):
        filled = [n for n in row if n is not None]
        if filled:
            corners.append(filled[0])
            corners.append(filled[-1])
    seen = []
    for n in corners:
        if n not in seen:
            seen.append(n)
    return seen


def _covers(required: Iterable[int], effective: set) -> bool:
    required = list(required)
    return bool(required) and all(n in effective for n in required)


def evaluate(ticket_grid, claimed_numbers, called_numbers, rule) -> Evaluation:
    """Decide whether ``claimed_numbers`` satisfy ``rule`` on this ticket.

    Raises ``UnknownRule`` when the rule's pattern cannot be resolved.
    """
    pattern = canonical_pattern(_pattern_identifier(rule))

    called = set(called_numbers or [])
    on_ticket = set(ticket_numbers(ticket_grid))
    claimed = list(dict.fromkeys(claimed_numbers or []))

    not_called = [n for n in claimed if n not in called]
    if not_called:
        return Evaluation(False, [], f"Numbers not yet called: {sorted(not_called)}.", pattern)
    not_on_ticket = [n for n in claimed if n not in on_ticket]
    if not_on_ticket:
        return Evaluation(False, [], f"Numbers not on this ticket: {sorted(not_on_ticket)}.", pattern)

    effective = sorted(n for n in claimed if n in called and n in on_ticket)
    effective_set = set(effective)

    if pattern == EARLY_FIVE:
        valid = len(effective) >= EARLY_FIVE_COUNT
        reason = None if valid else f"Early five needs {EARLY_FIVE_COUNT} numbers, got {len(effective)}."
    elif pattern in LINE_ROWS:
        row = [n for n in ticket_grid[LINE_ROWS[pattern]] if n is not None]
        valid = _covers(row, effective_set)
        reason = None if valid else f"Not every number of the {pattern.replace('_', ' ')} is claimed."
    elif pattern == FOUR_CORNERS:
        corners = corner_numbers(ticket_grid)
        if len(corners) < 2:
            valid, reason = False, "Ticket does not have enough corner numbers."
        else:
            valid = _covers(corners, effective_set)
            reason = None if valid else "Not every corner number is claimed."
    else:
        valid = _covers(on_ticket, effective_set)
        reason = None if valid else "Not every number on the ticket is claimed."

    return Evaluation(valid, effective, reason, pattern)
