"""Shared fixtures: synthetic MEPS FYC extracts with year-suffixed column names."""

import polars as pl
import pytest

from meps_exchange.meps_acquire import (
    COVERAGE_PREFIXES,
    DEFAULT_CONFIG,
    MONTH_CODES,
    SUFFIXED_PATTERNS,
    load_config,
    year_token,
)

YEARS = [2018, 2019, 2020, 2021, 2022]


def raw_monthly_name(source: str, month: str, yr2d: str) -> str:
    if source == "INS":
        return f"INS{month}{yr2d}X"
    return f"{source}{month}{yr2d}"


def build_raw_year(year: int, n_persons: int = 4, coverage: dict | None = None, id_offset: int = 0) -> pl.DataFrame:
    """
    One year's raw FYC extract.

    coverage: {person index: {source: [12 raw codes]}}; anything not given is 2 (not covered).
    """
    yr2d = year_token(year)
    coverage = coverage or {}
    idx = range(n_persons)

    data = {
        "DUID": [f"{2300000 + id_offset + i}" for i in idx],
        "DUPERSID": [f"{2300000 + id_offset + i}101" for i in idx],
        "PANEL": [23] * n_persons,
        "VARPSU": [1 + i % 2 for i in idx],
        "VARSTR": [2001 + i // 2 for i in idx],
        "RACETHX": [1 + i % 5 for i in idx],
        "DOBYY": [1980] * n_persons,
        "DOBMM": [6] * n_persons,
        "SEX": [1 + i % 2 for i in idx],
        "DIABDX_M18": [2] * n_persons,
        "ASTHDX": [2] * n_persons,
        "CANCERDX": [2] * n_persons,
        "EMPHDX": [2] * n_persons,
        "ADAPPT42": [-1] * n_persons,  # not selected
    }
    for pattern in SUFFIXED_PATTERNS:
        data[pattern.format(yy=yr2d)] = [0] * n_persons
    data[f"PERWT{yr2d}F"] = [1000.0 * (i + 1) for i in idx]
    data[f"INSCOV{yr2d}"] = [1] * n_persons
    data[f"REGION{yr2d}"] = [3] * n_persons
    data[f"POVCAT{yr2d}"] = [4] * n_persons
    data[f"AGE{yr2d}X"] = [30 + i for i in idx]
    data[f"MARRY{yr2d}X"] = [1] * n_persons

    for src in COVERAGE_PREFIXES:
        for m, mm in enumerate(MONTH_CODES):
            data[raw_monthly_name(src, mm, yr2d)] = [
                coverage.get(i, {}).get(src, [2] * 12)[m] for i in idx
            ]
    return pl.DataFrame(data)


def build_linkage(raw_frames: list[pl.DataFrame]) -> pl.DataFrame:
    persons = pl.concat([f.select("DUPERSID", "PANEL") for f in raw_frames]).unique(maintain_order=True)
    n = persons.height
    return persons.with_columns(
        pl.Series("STRA9622", [1 + i // 2 for i in range(n)]),
        pl.Series("PSU9622", [1 + i % 2 for i in range(n)]),
    )


@pytest.fixture
def labels():
    return load_config(DEFAULT_CONFIG).meps.labels


@pytest.fixture
def raw_year():
    return build_raw_year


@pytest.fixture
def exchange_person_coverage():
    """Person 0: exchange plan and insured Jan-Mar, nothing Apr-Dec."""
    on_q1 = [1, 1, 1] + [2] * 9
    return {0: {"PRX": on_q1, "INS": on_q1}}


@pytest.fixture
def linkage_for():
    return build_linkage


@pytest.fixture
def years():
    return list(YEARS)
