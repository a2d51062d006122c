"""Tambola ticket generation.

A ticket is a 3x9 grid with 15 numbers: 5 per row, 1-3 per column,
column ``j`` drawing from its own band (1-9, 10-19, ..., 80-90) and
values ascending down each column.
"""
import random
from typing import List, Optional

from flask import current_app, has_app_context

from tambola.errors import GenerationFailure

ROWS = 3
COLUMNS = 9
NUMBERS_PER_ROW = 5
NUMBERS_PER_TICKET = ROWS * NUMBERS_PER_ROW
MAX_PER_COLUMN = 3
DEFAULT_GENERATION_ATTEMPTS = 10

Grid = List[List[Optional[int]]]


def column_band(col: int) -> range:
    if col == 0:
        return range(1, 10)
    if col == COLUMNS - 1:
        return range(80, 91)
    return range(col * 10, col * 10 + 10)


def ticket_violations(grid) -> List[str]:
    """Return every ticket invariant the grid breaks (empty when valid)."""
    problems = []
    if not isinstance(grid, list) or len(grid) != ROWS or any(
        not isinstance(row, list) or len(row) != COLUMNS for row in grid
    ):
        return [f"grid must be {ROWS}x{COLUMNS}"]

    values = [n for row in grid for n in row if n is not None]
    if len(values) != NUMBERS_PER_TICKET:
        problems.append(f"expected {NUMBERS_PER_TICKET} numbers, found {len(values)}")
    if len(set(values)) != len(values):
        problems.append("numbers are not distinct")

    for r, row in enumerate(grid):
        filled = sum(1 for n in row if n is not None)
        if filled != NUMBERS_PER_ROW:
            problems.append(f"row {r} has {filled} numbers")

    for c in range(COLUMNS):
        column = [grid[r][c] for r in range(ROWS) if grid[r][c] is not None]
        if not 1 <= len(column) <= MAX_PER_COLUMN:
            problems.append(f"column {c} has {len(column)} numbers")
        band = column_band(c)
        if any(n not in band for n in column):
            problems.append(f"column {c} has numbers outside {band.start}-{band.stop - 1}")
        if column != sorted(column):
            problems.append(f"column {c} is not ascending")
    return problems


def _place(rng: random.Random) -> Optional[Grid]:
    """One greedy randomized placement; None when it paints itself into a corner."""
    pools = []
    for c in range(COLUMNS):
        pool = list(column_band(c))
        rng.shuffle(pool)
        pools.append(pool)

    grid = [[None] * COLUMNS for _ in range(ROWS)]
    row_counts = [0] * ROWS
    col_counts = [0] * COLUMNS

    # Every column gets one number first
    columns = list(range(COLUMNS))
    rng.shuffle(columns)
    for c in columns:
        open_rows = [r for r in range(ROWS) if row_counts[r] < NUMBERS_PER_ROW]
        if not open_rows:
            return None
        r = rng.choice(open_rows)
        grid[r][c] = pools[c].pop()
        row_counts[r] += 1
        col_counts[c] += 1

    # Then top every row up to five
    for r in range(ROWS):
        while row_counts[r] < NUMBERS_PER_ROW:
            open_cols = [
                c for c in range(COLUMNS)
                if grid[r][c] is None and col_counts[c] < MAX_PER_COLUMN and pools[c]
            ]
            if not open_cols:
                return None
            c = rng.choice(open_cols)
            grid[r][c] = pools[c].pop()
            row_counts[r] += 1
            col_counts[c] += 1

    for c in range(COLUMNS):
        ordered = iter(sorted(grid[r][c] for r in range(ROWS) if grid[r][c] is not None))
        for r in range(ROWS):
            if grid[r][c] is not None:
                grid[r][c] = next(ordered)
    return grid


def generate_ticket(rng: Optional[random.Random] = None, max_attempts: Optional[int] = None) -> Grid:
    """Generate a valid ticket or raise ``GenerationFailure``."""
    rng = rng or random.SystemRandom()
    if max_attempts is None:
        max_attempts = DEFAULT_GENERATION_ATTEMPTS
        if has_app_context():
            max_attempts = int(current_app.config.get('TICKET_GENERATION_ATTEMPTS', max_attempts))

    for attempt in range(1, max_attempts + 1):
        grid = _place(rng)
        if grid is None:
            continue
        problems = ticket_violations(grid)
        if problems:
            # Placement should never produce this; treat it as a failed attempt
            if has_app_context():
                current_app.logger.error(f"[ticket-invalid] attempt={attempt} problems={problems}")
            continue
        return grid
    raise GenerationFailure(f"Failed to generate a valid Tambola ticket after {max_attempts} attempts.")
