#!/usr/bin/env python3
"""
MEPS post-processing (Polars)

- Loads the harmonized multi-year FYC file written by meps_acquire.py.
- Pools years: joins the pooled variance linkage file (STRA9622/PSU9622),
  builds the pooled weight, decodes categorical labels, adds age groups.
- Reshapes the 12-month x 8-source coverage grid into person-month facts,
  derives the OTH and SLF categories, and aggregates exposure months.
- Flags the exchange cohort (>= 1 month of PRX coverage in the year).
- Saves outputs under data/processed/meps.

Requires: polars >= 1.20
"""
from __future__ import annotations

import re
import os
import sys
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import polars as pl

from .meps_acquire import (
    COVERAGE_PREFIXES,
    DEFAULT_CONFIG,
    MONTH_NUMBERS,
    REPO_ROOT,
    CoverageCodePolicy,
    MepsConfig,
    expected_monthly_columns,
    find_raw_file,
    harmonized_path,
    load_config,
    read_raw_extract,
    read_stata_value_labels,
    year_token,
)


# ANSI color codes for enhanced logging
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    BLACK = '\033[30m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    BRIGHT_RED = '\033[91m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_CYAN = '\033[96m'

    BG_RED = '\033[41m'


# Stage prefixes highlighted in log lines
_STAGE_COLORS = {
    'Pool:': Colors.MAGENTA,
    'Reshape:': Colors.BLUE,
    'Exposure:': Colors.CYAN,
    'Cohort:': Colors.GREEN,
    'Estimate:': Colors.YELLOW,
    'QC:': Colors.BRIGHT_RED,
}


class ColorFormatter(logging.Formatter):
    """Custom formatter to add colors to log messages"""

    def format(self, record):
        level_colors = {
            'DEBUG': Colors.DIM + Colors.WHITE,
            'INFO': Colors.GREEN,
            'WARNING': Colors.YELLOW,
            'ERROR': Colors.BRIGHT_RED,
            'CRITICAL': Colors.BG_RED + Colors.WHITE
        }

        timestamp = f"{Colors.DIM}{Colors.BLACK}{self.formatTime(record)}{Colors.RESET}"
        level_color = level_colors.get(record.levelname, Colors.WHITE)
        level_text = f"{level_color}{record.levelname}{Colors.RESET}"
        message = self.enhance_message(record.getMessage())

        return f"{timestamp} - {level_text} - {message}"

    def enhance_message(self, message: str) -> str:
        """Highlight counts, percentages, paths and stage prefixes; shorten repo paths."""
        def _shorten_abs_repo_paths(msg: str) -> str:
            pattern = r'(/[^/\s]+(?:/[^/\s]+)*\.(?:csv(?:\.gz)?|dta|json|ya?ml|parquet|ssp|log))'

            def _repl(m: re.Match) -> str:
                p = m.group(1)
                root = str(REPO_ROOT)
                if p.startswith(root):
                    return os.path.relpath(p, root).replace(os.sep, '/')
                return p
            return re.sub(pattern, _repl, msg)

        message = _shorten_abs_repo_paths(message)

        # Numbers with commas (row counts)
        message = re.sub(r'(\d{1,3}(?:,\d{3})+)', f'{Colors.BRIGHT_CYAN}\\1{Colors.RESET}', message)
        message = re.sub(r'(\d+\.?\d*%)', f'{Colors.BRIGHT_YELLOW}\\1{Colors.RESET}', message)

        path_pattern = r'((?:/|)(?:[^/\s]+/)*[^/\s]+\.(?:csv(?:\.gz)?|dta|json|ya?ml|parquet|ssp|log))'
        message = re.sub(path_pattern, f'{Colors.CYAN}\\1{Colors.RESET}', message)

        keywords = {
            'failed': Colors.BRIGHT_RED,
            'error': Colors.BRIGHT_RED,
            'missing': Colors.YELLOW,
            'unmatched': Colors.YELLOW,
            'saved': Colors.GREEN,
            'loaded': Colors.GREEN,
            'joined': Colors.BLUE,
            'aggregated': Colors.BLUE,
        }
        for keyword, color in keywords.items():
            pattern = re.compile(rf'\b({keyword})\b', re.IGNORECASE)
            message = pattern.sub(f'{color}\\1{Colors.RESET}', message)

        for prefix, color in _STAGE_COLORS.items():
            if prefix in message:
                message = message.replace(prefix, f'{Colors.BOLD}{color}{prefix}{Colors.RESET}')

        return message


def setup_colored_logging() -> logging.Logger:
    """Configure colored console logging for the processing stages"""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColorFormatter())

    logging.root.addHandler(console_handler)
    logging.root.setLevel(logging.INFO)

    return logging.getLogger("meps_process")


logger = logging.getLogger("meps_process")

# ------- config you might tweak -------
PERSON_KEYS = ["DUPERSID", "meps_year"]
LINKAGE_KEYS = ["DUPERSID", "PANEL"]
WEIGHT_COL = "PERWTYYF"
POOLED_WEIGHT_COL = "POOLWTYYF"
AGE_COL = "AGEYYX"

# Decoded label column -> coded source column
LABEL_COLUMNS = {
    "RACETHX_DSC": "RACETHX",
    "INSCOV_DSC": "INSCOVYY",
    "REGION_DSC": "REGIONYY",
    "MARRY_DSC": "MARRYYYX",
    "POVCAT_DSC": "POVCATYY",
    "DIABDX_DSC": "DIABDX_M18",
    "ASTHDX_DSC": "ASTHDX",
    "CANCERDX_DSC": "CANCERDX",
    "EMPHDX_DSC": "EMPHDX",
    "SEX_DSC": "SEX",
}

# Coverage sources after the monthly reshape
SOURCE_RENAMES = {"PRI": "PRV", "INS": "TOT"}
SYNTHETIC_SOURCES = ("OTH", "SLF")
FINAL_SOURCES = tuple(SOURCE_RENAMES.get(s, s) for s in COVERAGE_PREFIXES) + SYNTHETIC_SOURCES
# --------------------------------------


# ---------------- Pooling ---------------- #
def attach_linkage(
    df: pl.DataFrame,
    linkage: pl.DataFrame,
    stratum_col: str = "STRA9622",
    psu_col: str = "PSU9622",
) -> pl.DataFrame:
    """
    Left-join pooled-panel strata/PSUs on (DUPERSID, PANEL).
    Each person-panel has at most one linkage row; unmatched rows keep nulls.
    """
    need = LINKAGE_KEYS + [stratum_col, psu_col]
    missing = [c for c in need if c not in linkage.columns]
    if missing:
        raise KeyError(f"Linkage file missing columns: {missing}")

    link = linkage.select(
        pl.col("DUPERSID").cast(pl.Utf8),
        pl.col("PANEL").cast(pl.Int64),
        pl.col(stratum_col),
        pl.col(psu_col),
    )
    base = df.with_columns(
        pl.col("DUPERSID").cast(pl.Utf8),
        pl.col("PANEL").cast(pl.Int64),
    )

    out = base.join(link, on=LINKAGE_KEYS, how="left", validate="m:1", maintain_order="left")

    n_unmatched = base.join(link, on=LINKAGE_KEYS, how="anti").height
    if n_unmatched:
        logger.warning(f"Pool: {n_unmatched:,} person-years unmatched in linkage file; {stratum_col}/{psu_col} left null")
    else:
        logger.info(f"Pool: all {out.height:,} person-years joined to linkage file")
    return out


def add_pooled_weight(df: pl.DataFrame, n_years: int) -> pl.DataFrame:
    if n_years < 1:
        raise ValueError("n_years must be >= 1")
    return df.with_columns((pl.col(WEIGHT_COL).cast(pl.Float64) / n_years).alias(POOLED_WEIGHT_COL))


def _clean_label(code: int, text: str) -> str:
    # "2 NON-HISPANIC WHITE ONLY" -> "Non-Hispanic White Only"
    return text.replace(f"{code} ", "", 1).strip().title()


def decode_labels(
    df: pl.DataFrame,
    labels: Dict[str, Dict[int, str]],
    columns: Optional[Dict[str, str]] = None,
) -> pl.DataFrame:
    """
    Add *_DSC label columns from explicit code -> label tables.
    A non-null code without a label is an error, never a default label.
    """
    columns = columns if columns is not None else LABEL_COLUMNS
    exprs = []
    for dsc_col, src_col in columns.items():
        if src_col not in labels:
            raise KeyError(f"No label table configured for {src_col}")
        table = labels[src_col]

        codes = df.get_column(src_col).cast(pl.Int64).drop_nulls().unique().to_list()
        unmapped = sorted(c for c in codes if c not in table)
        if unmapped:
            raise KeyError(f"{src_col}: codes without a label: {unmapped}")

        mapping = {code: _clean_label(code, text) for code, text in table.items()}
        exprs.append(
            pl.col(src_col).cast(pl.Int64)
            .replace_strict(mapping, default=None, return_dtype=pl.Utf8)
            .alias(dsc_col)
        )
    return df.with_columns(exprs)


def resolve_labels(raw_dir: Path, mcfg: MepsConfig) -> Dict[str, Dict[int, str]]:
    """
    Label tables from config; tables config leaves out are read from the
    Stata releases' value labels. Config wins on conflicts.
    """
    missing = sorted({src for src in LABEL_COLUMNS.values() if src not in mcfg.labels})
    if not missing:
        return dict(mcfg.labels)

    labels: Dict[str, Dict[int, str]] = {}
    for year in mcfg.years:
        path = find_raw_file(raw_dir, mcfg.file_ids[year])
        if path.suffix.lower() != ".dta":
            continue
        for col, table in read_stata_value_labels(path, year_token(year)).items():
            labels.setdefault(col, {}).update(table)

    still_missing = [c for c in missing if c not in labels]
    if still_missing:
        logger.warning(f"Pool: no label table in config or Stata metadata for {still_missing}")
    else:
        logger.info(f"Pool: label tables for {missing} loaded from Stata metadata")
    labels.update(mcfg.labels)
    return labels


def add_age_groups(df: pl.DataFrame, age_col: str = AGE_COL) -> pl.DataFrame:
    age = pl.col(age_col).cast(pl.Float64).fill_nan(None)
    return df.with_columns(
        pl.when(age < 18).then(pl.lit("Under 18"))
        .when(age < 65).then(pl.lit("18 - 64"))
        .when(age >= 65).then(pl.lit("65 and over"))
        .otherwise(pl.lit("N/A"))
        .alias("AGE_GRP_3"),

        pl.when(age < 5).then(pl.lit("Under 5"))
        .when(age < 18).then(pl.lit("5 - 17"))
        .when(age < 30).then(pl.lit("18 - 29"))
        .when(age < 40).then(pl.lit("30 - 39"))
        .when(age < 50).then(pl.lit("40 - 49"))
        .when(age < 60).then(pl.lit("50 - 59"))
        .when(age < 70).then(pl.lit("60 - 69"))
        .when(age < 80).then(pl.lit("70 - 79"))
        .when(age >= 80).then(pl.lit("80 and over"))
        .otherwise(pl.lit("N/A"))
        .alias("AGE_GRP_9"),
    )


def pool_years(
    combined: pl.DataFrame,
    linkage: pl.DataFrame,
    n_years: int,
    labels: Dict[str, Dict[int, str]],
    stratum_col: str = "STRA9622",
    psu_col: str = "PSU9622",
) -> pl.DataFrame:
    """Harmonized multi-year table -> pooled table (linkage, weight, labels, age groups)."""
    pooled = attach_linkage(combined, linkage, stratum_col, psu_col)
    pooled = add_pooled_weight(pooled, n_years)
    pooled = decode_labels(pooled, labels)
    pooled = add_age_groups(pooled)
    logger.info(f"Pool: {pooled.height:,} person-years across {n_years} years")
    return pooled


# ---------------- Monthly coverage reshape ---------------- #
def coverage_long(df: pl.DataFrame) -> pl.DataFrame:
    """
    Wide monthly coverage grid -> one row per (person, year, source, month)
    with the raw indicator code.
    """
    monthly = expected_monthly_columns()
    missing = [c for c in monthly if c not in df.columns]
    if missing:
        raise KeyError(f"Monthly coverage columns missing: {missing[:10]}{'...' if len(missing) > 10 else ''}")

    return (
        df.select(PERSON_KEYS + [pl.col(c).cast(pl.Int64) for c in monthly])
        .unpivot(on=monthly, index=PERSON_KEYS, variable_name="coverage_col", value_name="raw_code")
        .with_columns(
            pl.col("coverage_col").str.slice(0, 3).alias("source"),
            pl.col("coverage_col").str.slice(3, 2)
            .replace_strict(MONTH_NUMBERS, return_dtype=pl.Int64)
            .alias("month"),
        )
        .select(PERSON_KEYS + ["source", "month", "raw_code"])
    )


def recode_enrollment(long: pl.DataFrame, policy: CoverageCodePolicy | None = None) -> pl.DataFrame:
    """Raw coverage codes -> boolean `enrolled` under an explicit code policy."""
    policy = policy or CoverageCodePolicy()
    code = pl.col("raw_code")
    valid = list(policy.covered) + list(policy.not_covered)

    invalid = long.filter(code.is_not_null() & ~code.is_in(valid))
    if invalid.height:
        counts = (
            invalid.group_by(["source", "raw_code"]).len()
            .sort(["source", "raw_code"])
        )
        detail = ", ".join(f"{s}={c} x{n:,}" for s, c, n in counts.iter_rows())
        if policy.on_invalid == "raise":
            raise ValueError(
                f"{invalid.height:,} person-months with coverage codes outside "
                f"{sorted(valid)}: {detail}"
            )
        logger.warning(
            f"Reshape: {invalid.height:,} person-months with codes outside {sorted(valid)} "
            f"treated as {policy.on_invalid}: {detail}"
        )

    n_null = long.get_column("raw_code").null_count()
    if n_null:
        logger.warning(f"Reshape: {n_null:,} missing coverage codes treated as enrolled={policy.null_as}")

    enrolled = (
        pl.when(code.is_null()).then(pl.lit(policy.null_as))
        .when(code.is_in(list(policy.covered))).then(pl.lit(True))
        .when(code.is_in(list(policy.not_covered))).then(pl.lit(False))
        .otherwise(pl.lit(policy.on_invalid == "covered"))
    )
    return long.with_columns(enrolled.alias("enrolled")).drop("raw_code")


def coverage_by_month(long: pl.DataFrame) -> pl.DataFrame:
    """
    Long enrolled flags -> one row per (person, year, month) with a boolean
    column per source. Duplicate keys are an error, not aggregated.
    """
    wide = long.pivot(on="source", index=PERSON_KEYS + ["month"], values="enrolled")
    missing = [s for s in COVERAGE_PREFIXES if s not in wide.columns]
    if missing:
        raise KeyError(f"Sources missing after pivot: {missing}")
    return wide.select(PERSON_KEYS + ["month"] + list(COVERAGE_PREFIXES))


def derive_synthetic_sources(wide: pl.DataFrame) -> pl.DataFrame:
    """
    OTH: insured, but not through Medicare, private or Medicaid.
    SLF: not insured at all.
    """
    return wide.with_columns(
        (~pl.col("MCR") & ~pl.col("PRI") & ~pl.col("MCD") & pl.col("INS")).alias("OTH"),
        (~pl.col("INS")).alias("SLF"),
    )


def rename_sources(wide: pl.DataFrame) -> pl.DataFrame:
    return wide.rename(SOURCE_RENAMES)


def flatten_coverage(wide: pl.DataFrame) -> pl.DataFrame:
    return (
        wide.unpivot(on=list(FINAL_SOURCES), index=PERSON_KEYS + ["month"],
                     variable_name="source", value_name="enrolled")
        .sort(PERSON_KEYS + ["month"], maintain_order=True)
    )


def monthly_wide(pooled: pl.DataFrame, policy: CoverageCodePolicy | None = None) -> pl.DataFrame:
    """Person-month table with one boolean column per final source."""
    long = recode_enrollment(coverage_long(pooled), policy)
    wide = coverage_by_month(long)
    return rename_sources(derive_synthetic_sources(wide))


def monthly_coverage_facts(pooled: pl.DataFrame, policy: CoverageCodePolicy | None = None) -> pl.DataFrame:
    """
    Pooled person-years -> (DUPERSID, meps_year, month, source, enrolled).

    The composition of OTH/SLF needs every source of a person-month on one
    row, so the grid goes long -> wide -> long.
    """
    facts = flatten_coverage(monthly_wide(pooled, policy))
    logger.info(f"Reshape: {facts.height:,} person-month-source facts ({len(FINAL_SOURCES)} sources)")
    return facts


# ---------------- Exposure and cohort ---------------- #
def exposure_months(facts: pl.DataFrame) -> pl.DataFrame:
    """Collapse person-months to months enrolled per (person, year, source)."""
    exp = (
        facts.group_by(PERSON_KEYS + ["source"], maintain_order=True)
        .agg(pl.col("enrolled").cast(pl.Int64).sum().alias("exposure_months"))
    )
    logger.info(f"Exposure: aggregated {exp.height:,} person-year-source rows")
    return exp


def cohort_flags(exposure: pl.DataFrame, source: str = "PRX") -> pl.DataFrame:
    """In cohort = at least one month of `source` coverage in the year."""
    if source not in FINAL_SOURCES:
        raise ValueError(f"Unknown cohort source {source!r}; expected one of {FINAL_SOURCES}")
    return (
        exposure.filter(pl.col("source") == source)
        .select(
            PERSON_KEYS
            + [
                (pl.col("exposure_months") > 0).alias("in_exchange_cohort"),
                pl.col("exposure_months").alias("exchange_exposure_months"),
            ]
        )
    )


def attach_cohort(pooled: pl.DataFrame, flags: pl.DataFrame) -> pl.DataFrame:
    out = (
        pooled.join(flags, on=PERSON_KEYS, how="left", validate="1:1", maintain_order="left")
        .with_columns(
            pl.col("in_exchange_cohort").fill_null(False),
            pl.col("exchange_exposure_months").fill_null(0),
        )
    )
    n_cohort = int(out.get_column("in_exchange_cohort").sum())
    logger.info(f"Cohort: {n_cohort:,} of {out.height:,} person-years with >= 1 exchange month")
    return out


# ---------------- QC ---------------- #
def qc_monthly(wide: pl.DataFrame) -> pl.DataFrame:
    """
    Return person-months violating the category rules:
    - OTH while PRV, MCR or MCD is on, or while not insured
    - SLF not the exact complement of TOT
    """
    bad_oth = pl.col("OTH") & (pl.col("PRV") | pl.col("MCR") | pl.col("MCD") | ~pl.col("TOT"))
    bad_slf = pl.col("SLF") == pl.col("TOT")
    return wide.filter(bad_oth | bad_slf)


def qc_exposure(exposure: pl.DataFrame) -> pl.DataFrame:
    """Rows with exposure outside 0..12 or a person-year missing a source."""
    out_of_range = exposure.filter((pl.col("exposure_months") < 0) | (pl.col("exposure_months") > 12))
    incomplete = (
        exposure.group_by(PERSON_KEYS).agg(pl.col("source").n_unique().alias("n_sources"))
        .filter(pl.col("n_sources") != len(FINAL_SOURCES))
    )
    return pl.concat([
        out_of_range.select(PERSON_KEYS),
        incomplete.select(PERSON_KEYS),
    ]).unique(maintain_order=True)


# ---------------- Pipeline ---------------- #
def run_pipeline(
    combined: pl.DataFrame,
    linkage: pl.DataFrame,
    n_years: int,
    labels: Dict[str, Dict[int, str]],
    policy: CoverageCodePolicy | None = None,
    cohort_source: str = "PRX",
    stratum_col: str = "STRA9622",
    psu_col: str = "PSU9622",
) -> Dict[str, pl.DataFrame]:
    """Pool -> reshape -> exposure -> cohort. Returns every intermediate output."""
    pooled = pool_years(combined, linkage, n_years, labels, stratum_col, psu_col)
    wide = monthly_wide(pooled, policy)

    bad = qc_monthly(wide)
    if bad.height:
        logger.warning(f"QC: {bad.height:,} person-months break the OTH/SLF rules")

    facts = flatten_coverage(wide)
    logger.info(f"Reshape: {facts.height:,} person-month-source facts ({len(FINAL_SOURCES)} sources)")
    exposure = exposure_months(facts)

    bad_exp = qc_exposure(exposure)
    if bad_exp.height:
        logger.warning(f"QC: {bad_exp.height:,} person-years with out-of-range or incomplete exposure")

    cohort = attach_cohort(pooled, cohort_flags(exposure, cohort_source))
    return {"pooled": cohort, "monthly": facts, "exposure": exposure}


def main(argv: list[str] | None = None) -> int:
    log = setup_colored_logging()

    argv = argv if argv is not None else sys.argv[1:]
    cfg_path = Path(argv[0]) if argv else DEFAULT_CONFIG
    root_cfg = load_config(cfg_path)
    mcfg = root_cfg.meps
    years = mcfg.years

    out_dir = (Path(root_cfg.processed_dir) / "meps").resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    fh = logging.FileHandler(out_dir / f"meps_process_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
    fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    logging.root.addHandler(fh)

    in_path = harmonized_path(root_cfg.raw_dir, mcfg.output_basename, years)
    try:
        if not in_path.exists():
            raise FileNotFoundError(f"Harmonized MEPS file not found: {in_path}. Run meps-acquire first.")
        log.info(f"Loading harmonized MEPS: {in_path}")
        combined = pl.read_parquet(in_path)
        linkage = read_raw_extract(find_raw_file(root_cfg.raw_dir, mcfg.linkage_file_id))
        log.info(f"Loaded linkage file {mcfg.linkage_file_id}: {linkage.height:,} rows")

        outputs = run_pipeline(
            combined,
            linkage,
            n_years=len(years),
            labels=resolve_labels(root_cfg.raw_dir, mcfg),
            policy=mcfg.coverage_policy,
            cohort_source=mcfg.cohort_source,
            stratum_col=mcfg.linkage_stratum_col,
            psu_col=mcfg.linkage_psu_col,
        )
    except (KeyError, ValueError, FileNotFoundError, pl.exceptions.PolarsError) as e:
        log.error(f"MEPS processing failed: {e}")
        return 1

    paths = {
        "pooled": out_dir / "meps_pooled_cohort.parquet",
        "monthly": out_dir / "meps_monthly_coverage.parquet",
        "exposure": out_dir / "meps_exposure.parquet",
    }
    for key, path in paths.items():
        outputs[key].write_parquet(path)
        log.info(f"Saved: {path}")

    summary = {
        "years": years,
        "person_years": int(outputs["pooled"].height),
        "cohort_person_years": int(outputs["pooled"].get_column("in_exchange_cohort").sum()),
        "timestamp": datetime.now().isoformat(),
    }
    (out_dir / "meps_process_summary.json").write_text(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
