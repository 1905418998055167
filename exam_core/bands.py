"""Raw-score to band conversion tables and the half-band rounding rule.

Tables are ordered lists of closed integer ranges on a 40-mark scale. Every
integer 0..40 must land in exactly one row; `validate_table` reports gaps,
overlaps and non-monotonic bands so a bad edit is caught by the catalog audit
and the test suite rather than at request time.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence

from .config import LISTENING_MAX_SCORE


@dataclass(frozen=True)
class BandRange:
    min: int
    max: int
    band: float


LISTENING_BAND_TABLE: tuple[BandRange, ...] = (
    BandRange(39, 40, 9.0),
    BandRange(37, 38, 8.5),
    BandRange(35, 36, 8.0),
    BandRange(32, 34, 7.5),
    BandRange(30, 31, 7.0),
    BandRange(26, 29, 6.5),
    BandRange(23, 25, 6.0),
    BandRange(18, 22, 5.5),
    BandRange(16, 17, 5.0),
    BandRange(13, 15, 4.5),
    BandRange(10, 12, 4.0),
    BandRange(7, 9, 3.5),
    BandRange(5, 6, 3.0),
    BandRange(3, 4, 2.5),
    BandRange(1, 2, 2.0),
    BandRange(0, 0, 1.0),
)

READING_ACADEMIC_BAND_TABLE: tuple[BandRange, ...] = (
    BandRange(39, 40, 9.0),
    BandRange(37, 38, 8.5),
    BandRange(35, 36, 8.0),
    BandRange(33, 34, 7.5),
    BandRange(30, 32, 7.0),
    BandRange(27, 29, 6.5),
    BandRange(23, 26, 6.0),
    BandRange(19, 22, 5.5),
    BandRange(15, 18, 5.0),
    BandRange(13, 14, 4.5),
    BandRange(10, 12, 4.0),
    BandRange(8, 9, 3.5),
    BandRange(6, 7, 3.0),
    BandRange(4, 5, 2.5),
    BandRange(2, 3, 2.0),
    BandRange(0, 1, 1.0),
)

READING_GENERAL_BAND_TABLE: tuple[BandRange, ...] = (
    BandRange(40, 40, 9.0),
    BandRange(39, 39, 8.5),
    BandRange(37, 38, 8.0),
    BandRange(36, 36, 7.5),
    BandRange(34, 35, 7.0),
    BandRange(32, 33, 6.5),
    BandRange(30, 31, 6.0),
    BandRange(27, 29, 5.5),
    BandRange(23, 26, 5.0),
    BandRange(19, 22, 4.5),
    BandRange(15, 18, 4.0),
    BandRange(12, 14, 3.5),
    BandRange(9, 11, 3.0),
    BandRange(6, 8, 2.5),
    BandRange(3, 5, 2.0),
    BandRange(0, 2, 1.0),
)

BAND_TABLES: Dict[str, tuple[BandRange, ...]] = {
    "listening": LISTENING_BAND_TABLE,
    "reading": READING_ACADEMIC_BAND_TABLE,
    "reading:academic": READING_ACADEMIC_BAND_TABLE,
    "reading:general": READING_GENERAL_BAND_TABLE,
}


def table_for(module: str, variant: str | None = None) -> tuple[BandRange, ...]:
    key = f"{module}:{variant}" if variant else module
    table = BAND_TABLES.get(key) or BAND_TABLES.get(module)
    if table is None:
        raise KeyError(f"no band table for module {module!r}")
    return table


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def normalize_to_40(raw_score: float, total_questions: int) -> int:
    """Clamp to [0, total] and linearly rescale to the 40-mark scale."""
    if total_questions <= 0:
        raise ValueError("total_questions must be positive")
    clamped = max(0.0, min(float(raw_score), float(total_questions)))
    if total_questions == LISTENING_MAX_SCORE:
        return _round_half_up(clamped)
    return _round_half_up(clamped / total_questions * LISTENING_MAX_SCORE)


def lookup_band(score_40: int, table: Sequence[BandRange] = LISTENING_BAND_TABLE) -> float:
    score = max(0, min(LISTENING_MAX_SCORE, int(score_40)))
    for row in table:
        if row.min <= score <= row.max:
            return row.band
    raise LookupError(f"band table has no row for {score}")


def raw_to_band(
    raw_score: float,
    total_questions: int,
    module: str = "listening",
    variant: str | None = None,
) -> float:
    return lookup_band(normalize_to_40(raw_score, total_questions), table_for(module, variant))


def round_half_ielts(value: float) -> float:
    """Round an averaged band up to the reporting half-band.

    Any fraction above a half-band boundary moves up to the next one, so .25
    reports as .5, .75 as the next whole band and 6.67 as 7.0. Exact whole and
    half bands are left alone.
    """
    if math.isnan(value):
        raise ValueError("band average is NaN")
    # absorb float noise such as 6.0000000001 from (a + 2b) / 3
    v = round(float(value), 6)
    out = math.ceil(v * 2) / 2
    return max(0.0, min(9.0, out))


def validate_table(table: Sequence[BandRange], max_score: int = LISTENING_MAX_SCORE) -> List[str]:
    """Return a list of defects; empty when the table is total and monotonic."""
    problems: List[str] = []
    hits: Dict[int, int] = {n: 0 for n in range(max_score + 1)}
    for row in table:
        if row.min > row.max:
            problems.append(f"row [{row.min},{row.max}] is inverted")
            continue
        for n in range(row.min, row.max + 1):
            if n in hits:
                hits[n] += 1
            else:
                problems.append(f"row [{row.min},{row.max}] exceeds 0..{max_score}")
                break
    for n, count in hits.items():
        if count == 0:
            problems.append(f"score {n} has no band")
        elif count > 1:
            problems.append(f"score {n} matches {count} rows")
    if not problems:
        bands = [lookup_band(n, table) for n in range(max_score + 1)]
        for n, (a, b) in enumerate(zip(bands, bands[1:])):
            if b < a:
                problems.append(f"band drops from {a} to {b} between {n} and {n + 1}")
    return problems


__all__ = [
    "BandRange",
    "BAND_TABLES",
    "LISTENING_BAND_TABLE",
    "READING_ACADEMIC_BAND_TABLE",
    "READING_GENERAL_BAND_TABLE",
    "table_for",
    "normalize_to_40",
    "lookup_band",
    "raw_to_band",
    "round_half_ielts",
    "validate_table",
]
