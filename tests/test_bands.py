from __future__ import annotations

import math

import pytest

from exam_core.bands import (
    BAND_TABLES,
    BandRange,
    LISTENING_BAND_TABLE,
    lookup_band,
    normalize_to_40,
    raw_to_band,
    round_half_ielts,
    validate_table,
)


@pytest.mark.parametrize("name", sorted(BAND_TABLES))
def test_tables_are_total_and_monotonic(name):
    table = BAND_TABLES[name]
    assert validate_table(table) == []
    bands = [lookup_band(n, table) for n in range(41)]
    assert bands == sorted(bands)
    assert bands[0] >= 1.0 and bands[-1] == 9.0


@pytest.mark.parametrize(
    "raw,total,band",
    [
        (39, 40, 9.0),
        (30, 40, 7.0),
        (23, 40, 6.0),
        (16, 20, 7.5),
        (0, 40, 1.0),
        (40, 40, 9.0),
    ],
)
def test_listening_scenarios(raw, total, band):
    assert raw_to_band(raw, total) == band


def test_reading_variants_use_their_own_table():
    assert raw_to_band(30, 40, "reading", "academic") == 7.0
    assert raw_to_band(30, 40, "reading", "general") == 6.0
    # unknown variant falls back to the module table
    assert raw_to_band(30, 40, "reading", "unknown") == 7.0


def test_normalize_clamps_and_rescales():
    assert normalize_to_40(45, 40) == 40
    assert normalize_to_40(-3, 40) == 0
    assert normalize_to_40(16, 20) == 32
    # 7/13 * 40 = 21.54 -> 22
    assert normalize_to_40(7, 13) == 22
    with pytest.raises(ValueError):
        normalize_to_40(5, 0)


@pytest.mark.parametrize(
    "value,expected",
    [
        (6.0, 6.0),
        (6.5, 6.5),
        (6.25, 6.5),
        (6.75, 7.0),
        (6.1, 6.5),
        (6.6, 7.0),
        ((6.0 + 2 * 7.0) / 3, 7.0),
        (9.0, 9.0),
        (0.0, 0.0),
    ],
)
def test_round_half_ielts(value, expected):
    assert round_half_ielts(value) == expected


def test_round_half_ielts_rejects_nan():
    with pytest.raises(ValueError):
        round_half_ielts(math.nan)


def test_validate_table_reports_gaps_overlaps_and_drops():
    gappy = tuple(r for r in LISTENING_BAND_TABLE if r.min != 23)
    assert any("score 23 has no band" in p for p in validate_table(gappy))

    overlapping = LISTENING_BAND_TABLE + (BandRange(0, 1, 1.5),)
    assert any("matches 2 rows" in p for p in validate_table(overlapping))

    dropping = (BandRange(0, 20, 5.0), BandRange(21, 40, 4.0))
    assert any("band drops" in p for p in validate_table(dropping))


def test_lookup_gap_raises():
    with pytest.raises(LookupError):
        lookup_band(23, (BandRange(0, 22, 1.0),))
