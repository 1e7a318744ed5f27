"""
MEPS Full-Year Consolidated extractor (config-driven, Polars)

- Reads settings from src/meps_exchange/config.yml (top-level 'meps' section + paths)
- Locates each year's FYC public use file under raw_dir/meps by its AHRQ file id
- Selects fixed, year-suffixed and monthly coverage columns (regex matched)
- Normalizes year-suffixed names to a year-agnostic schema (e.g. PERWT18F -> PERWTYYF)
- Parallel per-year extraction via ThreadPoolExecutor
- Strict concatenation of the per-year record sets; saves Parquet
"""
from __future__ import annotations

import re
import sys
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Any, Optional
from concurrent.futures import ThreadPoolExecutor, as_completed

import pandas as pd
import polars as pl
import pyreadstat
import yaml
from tqdm import tqdm


# ---------------- Logging ---------------- #
LOGGER = logging.getLogger("meps_acquire")
LOGGER.setLevel(logging.INFO)
LOGGER.propagate = False
_console = logging.StreamHandler(sys.stdout)
_console.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
LOGGER.addHandler(_console)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = Path(__file__).resolve().parent / "config.yml"


# ---------------- Schema constants ---------------- #
YEAR_TOKEN = "YY"

# Chronic-condition flag carried unchanged across releases
YEAR_INVARIANT_COLUMN = "DIABDX_M18"

SOURCE_PREFIXES = ("PRI", "PEG", "PNG", "POG", "PRX", "MCR", "MCD")
TOTAL_INSURED_PREFIX = "INS"
COVERAGE_PREFIXES = SOURCE_PREFIXES + (TOTAL_INSURED_PREFIX,)

# MEPS month abbreviations, in calendar order (JA=1 ... DE=12)
MONTH_CODES = ("JA", "FE", "MA", "AP", "MY", "JU", "JL", "AU", "SE", "OC", "NO", "DE")
MONTH_NUMBERS = {code: i for i, code in enumerate(MONTH_CODES, start=1)}

_MONTH_ALT = "|".join(MONTH_CODES)
_SOURCE_ALT = "|".join(SOURCE_PREFIXES)

# Patterns used by the normalizer
_SOURCE_MONTH_RE = re.compile(rf"^({_SOURCE_ALT})[A-Z]{{2}}\d{{2}}$")
_INS_MONTH_RE = re.compile(r"^INS[A-Z]{2}\d{2}X$")

# Patterns used to pick the raw monthly coverage columns
_RAW_SOURCE_MONTH_RE = re.compile(rf"^({_SOURCE_ALT})({_MONTH_ALT})\d{{2}}$")
_RAW_INS_MONTH_RE = re.compile(rf"^INS({_MONTH_ALT})\d{{2}}X$")

FIXED_COLUMNS = [
    "DUPERSID", "PANEL", "VARPSU", "VARSTR",
    "RACETHX", "DOBYY", "DOBMM", "SEX",
    YEAR_INVARIANT_COLUMN, "ASTHDX", "CANCERDX", "EMPHDX",
]

# Year-suffixed columns; {yy} is the 2-digit year token
SUFFIXED_PATTERNS = [
    "PERWT{yy}F",
    # Expenditure, all health services
    "TOTEXP{yy}", "TOTPRV{yy}", "TOTMCR{yy}", "TOTMCD{yy}", "TOTSLF{yy}",
    # Office-based visits
    "OBTOTV{yy}",
    "OBVEXP{yy}", "OBVPRV{yy}", "OBVMCR{yy}", "OBVMCD{yy}", "OBVSLF{yy}",
    # Hospital outpatient visits
    "OPTOTV{yy}",
    "OPTEXP{yy}", "OPTPRV{yy}", "OPTMCR{yy}", "OPTMCD{yy}", "OPTSLF{yy}",
    # ED visits
    "ERTOT{yy}",
    "ERTEXP{yy}", "ERTPRV{yy}", "ERTMCR{yy}", "ERTMCD{yy}", "ERTSLF{yy}",
    # Inpatient stays
    "IPDIS{yy}", "IPNGTD{yy}",
    "IPTEXP{yy}", "IPTPRV{yy}", "IPTMCR{yy}", "IPTMCD{yy}", "IPTSLF{yy}",
    # Prescribed medicines
    "RXTOT{yy}",
    "RXEXP{yy}", "RXPRV{yy}", "RXMCR{yy}", "RXMCD{yy}", "RXSLF{yy}",
    # Dental
    "DVTOT{yy}",
    "DVTEXP{yy}", "DVTPRV{yy}", "DVTMCR{yy}", "DVTMCD{yy}", "DVTSLF{yy}",
    # Coverage summary, geography, poverty, demographics
    "INSCOV{yy}", "REGION{yy}", "POVLEV{yy}", "POVCAT{yy}",
    "AGE{yy}X", "MARRY{yy}X",
]

# Raw file extensions tried in order
_RAW_EXTENSIONS = (".parquet", ".csv", ".csv.gz", ".dta", ".ssp", ".xpt")


# ---------------- Config ---------------- #
@dataclass
class CoverageCodePolicy:
    """How raw monthly coverage codes become enrolled flags.

    on_invalid:
        "raise"       -> codes outside covered/not_covered abort the run
        "not_covered" -> such codes are logged and treated as not enrolled
        "covered"     -> such codes are logged and treated as enrolled
                         (the historical "anything but 2" reading)
    null_as: enrolled value assigned to missing codes.
    """
    covered: List[int] = field(default_factory=lambda: [1])
    not_covered: List[int] = field(default_factory=lambda: [2])
    on_invalid: str = "raise"
    null_as: bool = False

    def __post_init__(self) -> None:
        if self.on_invalid not in ("raise", "not_covered", "covered"):
            raise ValueError(
                f"on_invalid must be 'raise', 'not_covered' or 'covered', got {self.on_invalid!r}"
            )
        overlap = set(self.covered) & set(self.not_covered)
        if overlap:
            raise ValueError(f"Codes listed as both covered and not covered: {sorted(overlap)}")


@dataclass
class EstimationConfig:
    group_by: List[str] = field(default_factory=lambda: ["RACETHX_DSC"])
    measure: str = "composition"
    psu_col: str = "PSU9622"
    stratum_col: str = "STRA9622"
    weight_col: str = "POOLWTYYF"
    lonely_psu: str = "adjust"
    output_filename: str = "meps_exchange_estimates.csv"


@dataclass
class MepsConfig:
    years_start: int | None
    years_end: int | str | None
    years_list: List[int] | None
    file_ids: Dict[int, str]
    linkage_file_id: str
    linkage_stratum_col: str
    linkage_psu_col: str
    max_workers: int
    output_basename: str  # e.g., "meps_fyc_{start}_{end}"
    cohort_source: str
    coverage_policy: CoverageCodePolicy
    labels: Dict[str, Dict[int, str]]
    estimation: EstimationConfig

    @property
    def years(self) -> List[int]:
        if self.years_list:
            return [int(y) for y in self.years_list]
        return year_range(self.years_start, self.years_end)


@dataclass
class RootConfig:
    raw_dir: Path
    processed_dir: Path
    meps: MepsConfig


def _to_abs(p: str | None, default: str) -> Path:
    if not p:
        p = default
    return (REPO_ROOT / p).resolve() if not str(p).startswith("/") else Path(p).resolve()


def load_config(cfg_path: str | Path | None = None) -> RootConfig:
    cfg_path = Path(cfg_path) if cfg_path is not None else DEFAULT_CONFIG
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config not found: {cfg_path}")

    with open(cfg_path, "r") as f:
        raw = yaml.safe_load(f) or {}

    paths = raw.get("paths", {}) or {}
    meps_raw = raw.get("meps", {}) or {}
    years = meps_raw.get("years", {}) or {}
    linkage = meps_raw.get("linkage", {}) or {}
    policy_raw = meps_raw.get("coverage_codes", {}) or {}
    est_raw = raw.get("estimation", {}) or {}

    policy = CoverageCodePolicy(
        covered=[int(c) for c in policy_raw.get("covered", [1])],
        not_covered=[int(c) for c in policy_raw.get("not_covered", [2])],
        on_invalid=policy_raw.get("on_invalid", "raise"),
        null_as=bool(policy_raw.get("null_as", False)),
    )

    est_defaults = EstimationConfig()
    estimation = EstimationConfig(
        group_by=list(est_raw.get("group_by", est_defaults.group_by)),
        measure=est_raw.get("measure", est_defaults.measure),
        psu_col=est_raw.get("psu_col", est_defaults.psu_col),
        stratum_col=est_raw.get("stratum_col", est_defaults.stratum_col),
        weight_col=est_raw.get("weight_col", est_defaults.weight_col),
        lonely_psu=est_raw.get("lonely_psu", est_defaults.lonely_psu),
        output_filename=est_raw.get("output_filename", est_defaults.output_filename),
    )

    # YAML keys may come back as str or int; labels are keyed by integer code
    labels = {
        col: {int(code): str(text) for code, text in (table or {}).items()}
        for col, table in (raw.get("labels", {}) or {}).items()
    }

    mcfg = MepsConfig(
        years_start=years.get("start"),
        years_end=years.get("end"),
        years_list=years.get("list"),
        file_ids={int(y): str(fid) for y, fid in (meps_raw.get("file_ids", {}) or {}).items()},
        linkage_file_id=str(linkage.get("file_id", "h036")),
        linkage_stratum_col=linkage.get("stratum_col", "STRA9622"),
        linkage_psu_col=linkage.get("psu_col", "PSU9622"),
        max_workers=int(meps_raw.get("max_workers", 4)),
        output_basename=meps_raw.get("output_basename", "meps_fyc_{start}_{end}"),
        cohort_source=meps_raw.get("cohort_source", "PRX"),
        coverage_policy=policy,
        labels=labels,
        estimation=estimation,
    )
    return RootConfig(
        raw_dir=_to_abs(paths.get("raw_dir"), "data/raw"),
        processed_dir=_to_abs(paths.get("processed_dir"), "data/processed"),
        meps=mcfg,
    )


def year_range(start: int | None, end: int | str | None) -> List[int]:
    if start is None and end is None:
        raise ValueError("Provide years.list or years.start/end in YAML.")
    if isinstance(end, str) and end.lower() == "present":
        end_year = datetime.now().year
    else:
        end_year = int(end) if end is not None else int(start)
    return list(range(int(start), end_year + 1))


def year_token(year: int | str) -> str:
    """2-digit suffix MEPS uses for a survey year (2018 -> '18')."""
    return str(year)[-2:]


# ---------------- Column normalizer ---------------- #
def normalize_column_name(name: str, yr2d: str) -> str:
    """Map a year-specific MEPS column name to its year-agnostic name.

    Rules are checked most specific first:
      1. DIABDX_M18 is never renamed
      2. monthly source columns PRIJA18 -> PRIJAYY
      3. monthly total-insured columns INSJA18X -> INSJAYY
      4. any other name carrying the year token, first occurrence -> YY
    """
    if name == YEAR_INVARIANT_COLUMN:
        return name
    if _SOURCE_MONTH_RE.match(name):
        return name[:-2] + YEAR_TOKEN
    if _INS_MONTH_RE.match(name):
        return re.sub(r"\d{2}X", "", name, count=1) + YEAR_TOKEN
    if yr2d in name:
        return name.replace(yr2d, YEAR_TOKEN, 1)
    return name


def normalize_columns(names: List[str], yr2d: str) -> List[str]:
    return [normalize_column_name(n, yr2d) for n in names]


# ---------------- Column selection ---------------- #
def selected_columns(yr2d: str) -> List[str]:
    """Explicitly listed columns (fixed + year-suffixed) for one year."""
    return FIXED_COLUMNS + [p.format(yy=yr2d) for p in SUFFIXED_PATTERNS]


def monthly_coverage_columns(columns: List[str]) -> List[str]:
    """
    Pick the monthly coverage columns from a raw header, ordered by
    source then calendar month so every year yields the same layout.
    """
    have = [c for c in columns if _RAW_SOURCE_MONTH_RE.match(c) or _RAW_INS_MONTH_RE.match(c)]

    def _key(c: str) -> tuple[int, int]:
        return COVERAGE_PREFIXES.index(c[:3]), MONTH_NUMBERS[c[3:5]]

    return sorted(have, key=_key)


def expected_monthly_columns() -> List[str]:
    """Logical names of the 96 monthly coverage columns after normalization."""
    return [f"{src}{mm}{YEAR_TOKEN}" for src in COVERAGE_PREFIXES for mm in MONTH_CODES]


# ---------------- Raw readers ---------------- #
def find_raw_file(raw_dir: Path, file_id: str) -> Path:
    """Find the first existing <raw_dir>/meps/<file_id>.<ext> (any case)."""
    mdir = Path(raw_dir) / "meps"
    for ext in _RAW_EXTENSIONS:
        for stem in (file_id.lower(), file_id.upper()):
            for suffix in (ext, ext.upper()):
                p = mdir / f"{stem}{suffix}"
                if p.exists():
                    return p
    raise FileNotFoundError(f"No MEPS file found for {file_id} under {mdir} (tried {', '.join(_RAW_EXTENSIONS)})")


def read_raw_extract(path: Path) -> pl.DataFrame:
    """Read a MEPS public use file into Polars, whatever format AHRQ shipped it in."""
    name = path.name.lower()
    if name.endswith(".parquet"):
        return pl.read_parquet(path)
    if name.endswith(".csv") or name.endswith(".csv.gz"):
        # DUPERSID has leading zeros; keep it a string
        return pl.read_csv(path, infer_schema_length=10000, schema_overrides={"DUPERSID": pl.Utf8})
    if name.endswith(".dta"):
        # Polars doesn't read Stata natively
        return pl.from_pandas(pd.read_stata(path, convert_categoricals=False))
    if name.endswith(".ssp") or name.endswith(".xpt"):
        pdf = pd.read_sas(path, format="xport", encoding="utf-8")
        return pl.from_pandas(pdf)
    raise ValueError(f"Unsupported MEPS file format: {path}")


def read_stata_value_labels(path: Path, yr2d: str) -> Dict[str, Dict[int, str]]:
    """
    Value labels stored in a Stata release, keyed by normalized column name.
    Usable as the `labels` table when config does not provide one.
    """
    _, meta = pyreadstat.read_dta(str(path), metadataonly=True)
    return {
        normalize_column_name(var, yr2d): {int(k): str(v) for k, v in table.items()}
        for var, table in meta.variable_value_labels.items()
    }


# ---------------- Year processing ---------------- #
def extract_year(raw: pl.DataFrame, year: int) -> pl.DataFrame:
    """
    Harmonize one year's FYC record set:
    select columns of interest, normalize names, tag with meps_year.
    """
    yr2d = year_token(year)
    explicit = selected_columns(yr2d)

    missing = [c for c in explicit if c not in raw.columns]
    if missing:
        raise KeyError(
            f"Year {year}: {len(missing)} required columns missing from FYC file: "
            f"{missing[:10]}{'...' if len(missing) > 10 else ''}"
        )

    monthly = monthly_coverage_columns(raw.columns)
    normalized_monthly = normalize_columns(monthly, yr2d)
    missing_monthly = sorted(set(expected_monthly_columns()) - set(normalized_monthly))
    if missing_monthly:
        raise KeyError(
            f"Year {year}: {len(missing_monthly)} monthly coverage columns missing: "
            f"{missing_monthly[:10]}{'...' if len(missing_monthly) > 10 else ''}"
        )

    cols = explicit + monthly
    df = raw.select(cols).rename(dict(zip(cols, normalize_columns(cols, yr2d))))

    df = df.with_columns(
        pl.col("DUPERSID").cast(pl.Utf8),
        pl.lit(int(year), dtype=pl.Int64).alias("meps_year"),
    )
    # meps_year right after DUPERSID
    order = ["DUPERSID", "meps_year"] + [c for c in df.columns if c not in ("DUPERSID", "meps_year")]
    return df.select(order)


def load_year(raw_dir: Path, year: int, file_id: str) -> Dict[str, Any]:
    LOGGER.info(f"➡️  Year {year}: start ({file_id})")
    path = find_raw_file(raw_dir, file_id)
    raw = read_raw_extract(path)
    df = extract_year(raw, year)
    LOGGER.info(f"Year {year}: {df.height:,} persons, {df.width} columns from {path.name}")
    return {
        "year": int(year),
        "df": df,
        "rows": int(df.height),
        "cols": int(df.width),
        "source": str(path),
        "timestamp": datetime.now().isoformat(),
    }


def extract_all_years(raw_dir: Path, years: List[int], file_ids: Dict[int, str], max_workers: int = 4) -> List[pl.DataFrame]:
    """
    Map load_year over the configured years in parallel.
    Returns the per-year frames in year order; any failing year aborts the run.
    """
    unknown = [y for y in years if y not in file_ids]
    if unknown:
        raise KeyError(f"No MEPS file id configured for years: {unknown}")

    results: Dict[int, Dict[str, Any]] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = {ex.submit(load_year, raw_dir, y, file_ids[y]): y for y in years}
        for fut in tqdm(as_completed(futures), total=len(futures), desc="Extracting MEPS years"):
            y = futures[fut]
            try:
                results[y] = fut.result()
            except Exception as e:
                LOGGER.error(f"❌ Year {y} failed: {e}")
                raise
    return [results[y]["df"] for y in sorted(results)]


# ---------------- Concatenation ---------------- #
def concatenate_years(dfs: List[pl.DataFrame]) -> pl.DataFrame:
    """
    Stack per-year record sets. Column names must already agree exactly;
    numeric dtypes are widened to a common type.
    """
    if not dfs:
        raise ValueError("No per-year record sets to concatenate.")
    ref = dfs[0].columns
    for df in dfs[1:]:
        if df.columns != ref:
            year = df["meps_year"][0] if "meps_year" in df.columns and df.height else "?"
            extra = sorted(set(df.columns) - set(ref))
            absent = sorted(set(ref) - set(df.columns))
            raise ValueError(
                f"Schema mismatch for year {year} after normalization: "
                f"unexpected={extra[:10]} missing={absent[:10]}"
                + (" (column order differs)" if not extra and not absent else "")
            )
    LOGGER.info(f"🔗 Concatenating {len(dfs)} years")
    return pl.concat(dfs, how="vertical_relaxed", rechunk=True)


def harmonized_path(raw_dir: Path, basename: str, years: List[int]) -> Path:
    return Path(raw_dir) / "meps" / (basename.format(start=min(years), end=max(years)) + ".parquet")


# ---------------- Main ---------------- #
def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    cfg_path = Path(argv[0]) if argv else DEFAULT_CONFIG
    root_cfg = load_config(cfg_path)
    mcfg = root_cfg.meps

    out_dir = Path(root_cfg.raw_dir) / "meps"
    out_dir.mkdir(parents=True, exist_ok=True)

    # File logging
    log_path = out_dir / f"meps_acquire_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    for old in [h for h in LOGGER.handlers if isinstance(h, logging.FileHandler)]:
        LOGGER.removeHandler(old)
        old.close()
    fh = logging.FileHandler(log_path)
    fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    LOGGER.addHandler(fh)
    LOGGER.info(f"📄 Logging to: {log_path}")

    years = mcfg.years
    LOGGER.info(f"🚀 MEPS extraction starting for years: {years}")
    LOGGER.info(f"📂 Raw dir: {out_dir}")

    try:
        dfs = extract_all_years(root_cfg.raw_dir, years, mcfg.file_ids, mcfg.max_workers)
        combined = concatenate_years(dfs)
    except (KeyError, ValueError, FileNotFoundError, pl.exceptions.PolarsError) as e:
        LOGGER.error(f"MEPS extraction failed: {e}")
        return 1

    combined_path = harmonized_path(root_cfg.raw_dir, mcfg.output_basename, years)
    combined.write_parquet(combined_path)
    LOGGER.info(f"📦 Harmonized file ready: {combined_path.name} (rows={combined.height:,}, cols={combined.width})")

    summary = {
        "years": years,
        "rows_by_year": {str(y): int(n) for y, n in combined.group_by("meps_year").len().sort("meps_year").iter_rows()},
        "total_rows": int(combined.height),
        "columns": combined.columns,
        "timestamp": datetime.now().isoformat(),
    }
    (out_dir / "meps_acquire_summary.json").write_text(json.dumps(summary, indent=2))

    LOGGER.info(f"🎉 Done. {len(years)} years, {combined.height:,} person-years")
    return 0


if __name__ == "__main__":
    sys.exit(main())
