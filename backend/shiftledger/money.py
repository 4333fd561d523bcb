# Overview: Integer-cent arithmetic helpers for totals and split allocations.

from __future__ import annotations

from .errors import InvalidAllocation


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"


def allocate_equal(total_cents: int, parts: int) -> list[int]:
    """
    Split total_cents into `parts` shares that sum exactly to the total.

    The remainder cents go one each to the first shares, in creation order.
    e.g. 1000 over 3 -> [334, 333, 333]
    """
    if parts < 1:
        raise InvalidAllocation("parts must be at least 1", {"parts": parts})
    base, remainder = divmod(total_cents, parts)
    return [base + 1 if i < remainder else base for i in range(parts)]


def allocate_weighted(total_cents: int, weights: list[int]) -> list[int]:
    """
    Split total_cents proportionally to integer weights (largest remainder).

    Each share gets floor(total * w / W); leftover cents go to the shares with
    the largest fractional remainder, ties broken by position.
    """
    if not weights or any(w < 0 for w in weights):
        raise InvalidAllocation("weights must be non-negative", {"weights": weights})
    weight_total = sum(weights)
    if weight_total <= 0:
        raise InvalidAllocation("weights must not all be zero", {"weights": weights})

    shares = []
    remainders = []
    for index, weight in enumerate(weights):
        share, rem = divmod(total_cents * weight, weight_total)
        shares.append(share)
        remainders.append((rem, index))

    leftover = total_cents - sum(shares)
    for _, index in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        shares[index] += 1
    return shares


def allocate_grid(row_totals: list[int], column_totals: list[int]) -> list[list[int]]:
    """
    Fill a rows x columns grid of cents whose rows and columns both sum exactly.

    The column amounts are laid end to end and cut at the running row totals;
    each cell is the overlap of its row's and its column's stretch. Used to
    break split shares down by category without losing a cent.
    e.g. rows [2250, 2250], columns [4000, 500] -> [[2250, 0], [1750, 500]]
    """
    if any(v < 0 for v in row_totals) or any(v < 0 for v in column_totals):
        raise InvalidAllocation(
            "grid amounts must be non-negative",
            {"rows": row_totals, "columns": column_totals},
        )
    if sum(row_totals) != sum(column_totals):
        raise InvalidAllocation(
            "row and column totals differ",
            {"rows": row_totals, "columns": column_totals},
        )

    grid = []
    row_start = 0
    for row_total in row_totals:
        row_end = row_start + row_total
        cells = []
        column_start = 0
        for column_total in column_totals:
            column_end = column_start + column_total
            cells.append(max(0, min(row_end, column_end) - max(row_start, column_start)))
            column_start = column_end
        grid.append(cells)
        row_start = row_end
    return grid
