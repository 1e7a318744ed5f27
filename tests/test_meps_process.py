"""Tests for pooling, the monthly coverage reshape, exposure and the exchange cohort."""

from dataclasses import replace

import pandas as pd
import polars as pl
import pyreadstat
import pytest

from meps_exchange.meps_acquire import CoverageCodePolicy, concatenate_years, extract_year, load_config
from meps_exchange.meps_process import (
    FINAL_SOURCES,
    add_age_groups,
    add_pooled_weight,
    attach_cohort,
    attach_linkage,
    cohort_flags,
    coverage_by_month,
    coverage_long,
    decode_labels,
    derive_synthetic_sources,
    exposure_months,
    monthly_coverage_facts,
    monthly_wide,
    pool_years,
    qc_exposure,
    qc_monthly,
    recode_enrollment,
    resolve_labels,
    run_pipeline,
)

PERSON_0 = "2300000101"


@pytest.fixture
def two_years(raw_year, exchange_person_coverage):
    """Raw 2018 (person 0 on the exchange Jan-Mar) and 2019 (nobody covered)."""
    return [raw_year(2018, coverage=exchange_person_coverage), raw_year(2019)]


@pytest.fixture
def combined(two_years):
    return concatenate_years([extract_year(raw, y) for raw, y in zip(two_years, (2018, 2019))])


@pytest.fixture
def pooled(combined, two_years, labels, linkage_for):
    return pool_years(combined, linkage_for(two_years), n_years=2, labels=labels)


def _row(df: pl.DataFrame, year: int, **match) -> dict:
    expr = (pl.col("DUPERSID") == PERSON_0) & (pl.col("meps_year") == year)
    for col, value in match.items():
        expr = expr & (pl.col(col) == value)
    rows = df.filter(expr).to_dicts()
    assert len(rows) == 1
    return rows[0]


class TestLinkage:
    """Joining the pooled variance strata/PSUs."""

    def test_all_matched(self, combined, two_years, linkage_for):
        out = attach_linkage(combined, linkage_for(two_years))
        assert out.height == combined.height
        assert out.get_column("STRA9622").null_count() == 0
        assert out.get_column("PSU9622").to_list()[:4] == [1, 2, 1, 2]

    def test_unmatched_rows_kept_with_nulls(self, combined, two_years, linkage_for):
        linkage = linkage_for(two_years).filter(pl.col("DUPERSID") != PERSON_0)
        out = attach_linkage(combined, linkage)

        assert out.height == combined.height
        unmatched = out.filter(pl.col("DUPERSID") == PERSON_0)
        assert unmatched.get_column("STRA9622").null_count() == 2

    def test_duplicate_linkage_rows_are_fatal(self, combined, two_years, linkage_for):
        linkage = linkage_for(two_years)
        with pytest.raises(pl.exceptions.PolarsError):
            attach_linkage(combined, pl.concat([linkage, linkage.head(1)]))

    def test_missing_linkage_column(self, combined, two_years, linkage_for):
        with pytest.raises(KeyError, match="PSU9622"):
            attach_linkage(combined, linkage_for(two_years).drop("PSU9622"))


class TestPooledWeight:
    def test_divides_by_year_count(self, combined):
        out = add_pooled_weight(combined, 2)
        assert out.get_column("POOLWTYYF").to_list()[:4] == [500.0, 1000.0, 1500.0, 2000.0]

    def test_zero_years(self, combined):
        with pytest.raises(ValueError):
            add_pooled_weight(combined, 0)


class TestDecodeLabels:
    """Explicit code -> label tables."""

    def test_labels_stripped_and_title_cased(self, pooled):
        row = pooled.row(1, named=True)
        assert row["RACETHX_DSC"] == "Non-Hispanic White Only"
        assert row["SEX_DSC"] == "Female"
        assert row["REGION_DSC"] == "South"
        assert row["POVCAT_DSC"] == "Middle Income"
        assert row["DIABDX_DSC"] == "No"

    def test_null_code_gives_null_label(self, labels):
        df = pl.DataFrame({"RACETHX": [1, None]}, schema={"RACETHX": pl.Int64})
        out = decode_labels(df, labels, columns={"RACETHX_DSC": "RACETHX"})
        assert out.get_column("RACETHX_DSC").to_list() == ["Hispanic", None]

    def test_unmapped_code_is_fatal(self, labels):
        df = pl.DataFrame({"RACETHX": [1, 9]})
        with pytest.raises(KeyError, match="RACETHX"):
            decode_labels(df, labels, columns={"RACETHX_DSC": "RACETHX"})

    def test_missing_table_is_fatal(self):
        df = pl.DataFrame({"RACETHX": [1]})
        with pytest.raises(KeyError, match="No label table"):
            decode_labels(df, {}, columns={"RACETHX_DSC": "RACETHX"})

    def test_only_code_prefix_removed(self):
        df = pl.DataFrame({"MARRYYYX": [6]})
        out = decode_labels(df, {"MARRYYYX": {6: "6 UNDER 16 - INAPPLICABLE"}}, columns={"MARRY_DSC": "MARRYYYX"})
        assert out.get_column("MARRY_DSC").to_list() == ["Under 16 - Inapplicable"]


class TestAgeGroups:
    def test_boundaries(self):
        ages = [-1, 0, 4, 5, 17, 18, 29, 64, 65, 79, 80, None]
        out = add_age_groups(pl.DataFrame({"AGEYYX": ages}, schema={"AGEYYX": pl.Int64}))

        assert out.get_column("AGE_GRP_3").to_list() == [
            "Under 18", "Under 18", "Under 18", "Under 18", "Under 18",
            "18 - 64", "18 - 64", "18 - 64",
            "65 and over", "65 and over", "65 and over",
            "N/A",
        ]
        assert out.get_column("AGE_GRP_9").to_list() == [
            "Under 5", "Under 5", "Under 5", "5 - 17", "5 - 17",
            "18 - 29", "18 - 29", "60 - 69", "60 - 69", "70 - 79", "80 and over",
            "N/A",
        ]

    def test_nan_age_is_not_applicable(self):
        out = add_age_groups(pl.DataFrame({"AGEYYX": [float("nan"), 40.0]}))
        assert out.get_column("AGE_GRP_3").to_list() == ["N/A", "18 - 64"]
        assert out.get_column("AGE_GRP_9").to_list() == ["N/A", "40 - 49"]


class TestReshape:
    """Wide monthly grid -> person-month facts."""

    def test_coverage_long_shape_and_months(self, pooled):
        long = coverage_long(pooled)
        assert long.columns == ["DUPERSID", "meps_year", "source", "month", "raw_code"]
        assert long.height == pooled.height * 96
        assert sorted(long.get_column("month").unique().to_list()) == list(range(1, 13))

        prx = long.filter(
            (pl.col("DUPERSID") == PERSON_0) & (pl.col("meps_year") == 2018) & (pl.col("source") == "PRX")
        ).sort("month")
        assert prx.get_column("raw_code").to_list() == [1, 1, 1] + [2] * 9

    def test_duplicate_person_months_are_fatal(self, pooled):
        long = recode_enrollment(coverage_long(pooled))
        with pytest.raises(pl.exceptions.PolarsError):
            coverage_by_month(pl.concat([long, long.head(1)]))

    def test_final_sources(self, pooled):
        facts = monthly_coverage_facts(pooled)
        assert set(facts.get_column("source").unique().to_list()) == set(FINAL_SOURCES)
        assert facts.height == pooled.height * 12 * len(FINAL_SOURCES)
        assert "PRI" not in facts.get_column("source").to_list()
        assert "INS" not in facts.get_column("source").to_list()

    def test_derive_synthetic_sources(self):
        wide = pl.DataFrame({
            "INS": [True, True, True, False],
            "PRI": [False, True, False, False],
            "MCR": [False, False, False, False],
            "MCD": [False, False, True, False],
        })
        out = derive_synthetic_sources(wide)
        assert out.get_column("OTH").to_list() == [True, False, False, False]
        assert out.get_column("SLF").to_list() == [False, False, False, True]

    def test_oth_and_slf_rules_hold(self, pooled):
        wide = monthly_wide(pooled)
        assert qc_monthly(wide).height == 0
        assert (wide.get_column("SLF") == ~wide.get_column("TOT")).all()


class TestRecodeEnrollment:
    """Raw code policy."""

    @pytest.fixture
    def long(self):
        return pl.DataFrame({
            "DUPERSID": ["a"] * 4,
            "meps_year": [2018] * 4,
            "source": ["PRI"] * 4,
            "month": [1, 2, 3, 4],
            "raw_code": [1, 2, 3, None],
        })

    def test_invalid_code_raises_by_default(self, long):
        with pytest.raises(ValueError, match="PRI=3"):
            recode_enrollment(long)

    def test_invalid_as_not_covered(self, long):
        out = recode_enrollment(long, CoverageCodePolicy(on_invalid="not_covered"))
        assert out.get_column("enrolled").to_list() == [True, False, False, False]

    def test_invalid_as_covered(self, long):
        out = recode_enrollment(long, CoverageCodePolicy(on_invalid="covered"))
        assert out.get_column("enrolled").to_list() == [True, False, True, False]

    def test_null_as(self, long):
        out = recode_enrollment(long, CoverageCodePolicy(on_invalid="covered", null_as=True))
        assert out.get_column("enrolled").to_list() == [True, False, True, True]


class TestExposureAndCohort:
    def test_exposure_range(self, pooled):
        exp = exposure_months(monthly_coverage_facts(pooled))
        assert exp.height == pooled.height * len(FINAL_SOURCES)
        assert exp.get_column("exposure_months").min() >= 0
        assert exp.get_column("exposure_months").max() <= 12
        assert qc_exposure(exp).height == 0

    def test_unknown_cohort_source(self, pooled):
        exp = exposure_months(monthly_coverage_facts(pooled))
        with pytest.raises(ValueError, match="PRI"):
            cohort_flags(exp, "PRI")

    def test_attach_cohort_fills_missing(self, pooled):
        flags = pl.DataFrame({
            "DUPERSID": [PERSON_0],
            "meps_year": [2018],
            "in_exchange_cohort": [True],
            "exchange_exposure_months": [3],
        })
        out = attach_cohort(pooled, flags)
        assert out.height == pooled.height
        assert int(out.get_column("in_exchange_cohort").sum()) == 1
        assert out.get_column("exchange_exposure_months").null_count() == 0


class TestPipeline:
    """End to end: pool -> reshape -> exposure -> cohort."""

    def test_exchange_person(self, combined, two_years, labels, linkage_for):
        out = run_pipeline(combined, linkage_for(two_years), n_years=2, labels=labels)
        exp = out["exposure"]

        assert _row(exp, 2018, source="PRX")["exposure_months"] == 3
        assert _row(exp, 2018, source="TOT")["exposure_months"] == 3
        assert _row(exp, 2018, source="OTH")["exposure_months"] == 3
        assert _row(exp, 2018, source="SLF")["exposure_months"] == 9
        assert _row(exp, 2018, source="PRV")["exposure_months"] == 0
        assert _row(exp, 2019, source="SLF")["exposure_months"] == 12

        cohort = out["pooled"]
        assert _row(cohort, 2018)["in_exchange_cohort"] is True
        assert _row(cohort, 2018)["exchange_exposure_months"] == 3
        assert _row(cohort, 2019)["in_exchange_cohort"] is False
        assert int(cohort.get_column("in_exchange_cohort").sum()) == 1

    def test_outputs_keep_person_year_count(self, combined, two_years, labels, linkage_for):
        out = run_pipeline(combined, linkage_for(two_years), n_years=2, labels=labels)
        assert out["pooled"].height == combined.height
        assert out["monthly"].height == combined.height * 12 * len(FINAL_SOURCES)


class TestResolveLabels:
    """Config label tables, topped up from Stata metadata."""

    def test_config_complete_needs_no_files(self, tmp_path):
        mcfg = load_config().meps
        assert resolve_labels(tmp_path, mcfg) == mcfg.labels

    def test_missing_table_read_from_dta(self, tmp_path):
        (tmp_path / "meps").mkdir()
        pyreadstat.write_dta(
            pd.DataFrame({"DUPERSID": ["2320001101"], "RACETHX": [1]}),
            str(tmp_path / "meps" / "h209.dta"),
            variable_value_labels={"RACETHX": {1: "1 HISPANIC", 2: "2 OTHER CODING"}},
        )
        base = load_config().meps
        config_labels = {k: v for k, v in base.labels.items() if k != "RACETHX"}
        mcfg = replace(base, labels=config_labels, years_list=[2018], file_ids={2018: "h209"})

        labels = resolve_labels(tmp_path, mcfg)
        assert labels["RACETHX"] == {1: "1 HISPANIC", 2: "2 OTHER CODING"}
        assert labels["SEX"] == base.labels["SEX"]
