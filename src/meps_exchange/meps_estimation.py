from __future__ import annotations

import sys
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np
import polars as pl

from .meps_acquire import DEFAULT_CONFIG, EstimationConfig, load_config
from .meps_process import setup_colored_logging

logger = logging.getLogger("meps_estimation")

_LONELY_PSU_POLICIES = ("adjust", "certainty", "fail")
_MEASURES = ("composition", "rate")


# ----------------------- Survey design -----------------------

@dataclass
class SurveyDesign:
    """Stratified cluster design: PSUs (optionally nested) within strata, one weight column.

    Mirrors R survey's svydesign(id=~psu, strata=~stratum, weights=~w, nest=TRUE)
    with svyratio-style linearization; lonely_psu follows options(survey.lonely.psu=).

    lonely_psu: treatment of strata holding a single PSU
        "adjust"    -> center that PSU on the grand mean of all PSU totals
        "certainty" -> stratum contributes no variance
        "fail"      -> raise
    """
    psu_col: str
    stratum_col: str
    weight_col: str
    nest: bool = True
    lonely_psu: str = "adjust"

    def __post_init__(self) -> None:
        if self.lonely_psu not in _LONELY_PSU_POLICIES:
            raise ValueError(f"lonely_psu must be one of {_LONELY_PSU_POLICIES}, got {self.lonely_psu!r}")

    @property
    def columns(self) -> List[str]:
        return [self.psu_col, self.stratum_col, self.weight_col]

    def check(self, df: pl.DataFrame) -> None:
        missing = [c for c in self.columns if c not in df.columns]
        if missing:
            raise KeyError(f"Design columns missing: {missing}")
        nulls = {c: df.get_column(c).null_count() for c in self.columns}
        nulls = {c: n for c, n in nulls.items() if n}
        if nulls:
            raise ValueError(f"Design columns contain nulls: {nulls}")
        if not self.nest:
            spread = (
                df.group_by(self.psu_col).agg(pl.col(self.stratum_col).n_unique().alias("n"))
                .filter(pl.col("n") > 1)
            )
            if spread.height:
                raise ValueError(
                    f"{spread.height} PSU ids appear in more than one stratum; use nest=True"
                )


def _linearized_variance(z: np.ndarray, strata: np.ndarray, psu: np.ndarray, lonely_psu: str) -> float:
    """Between-PSU variance of linearized scores, summed over strata."""
    totals = (
        pl.DataFrame({"h": strata, "psu": psu, "z": z})
        .group_by(["h", "psu"])
        .agg(pl.col("z").sum())
        .with_columns(
            pl.len().over("h").alias("n_h"),
            pl.col("z").mean().over("h").alias("zbar_h"),
        )
    )

    multi = totals.filter(pl.col("n_h") > 1)
    n_h = multi.get_column("n_h").to_numpy().astype(float)
    dev = multi.get_column("z").to_numpy() - multi.get_column("zbar_h").to_numpy()
    var = float(np.sum(n_h / (n_h - 1.0) * dev ** 2))

    lonely = totals.filter(pl.col("n_h") == 1)
    if lonely.height:
        if lonely_psu == "fail":
            raise ValueError(f"{lonely.height} strata contain a single PSU")
        if lonely_psu == "adjust":
            grand_mean = float(totals.get_column("z").mean())
            var += float(np.sum((lonely.get_column("z").to_numpy() - grand_mean) ** 2))
    return var


def ratio_estimate(
    y: np.ndarray,
    d: np.ndarray,
    w: np.ndarray,
    strata: np.ndarray,
    psu: np.ndarray,
    lonely_psu: str = "adjust",
) -> tuple[float, float]:
    """
    Weighted proportion of y within domain d, with its Taylor-linearized SE.
    Rows outside the domain stay in the design (zero scores) so PSU counts
    per stratum reflect the full sample.
    """
    wd = w * d
    denom = float(wd.sum())
    if denom <= 0:
        return float("nan"), float("nan")
    p = float((wd * y).sum() / denom)
    z = wd * (y - p) / denom
    var = _linearized_variance(z, strata, psu, lonely_psu)
    return p, float(np.sqrt(max(var, 0.0)))


def survey_proportions(
    df: pl.DataFrame,
    design: SurveyDesign,
    group_col: str,
    indicator_col: str = "in_exchange_cohort",
    measure: str = "composition",
) -> pl.DataFrame:
    """
    Per value of `group_col`:
      composition -> share of the indicator domain (e.g. exchange enrollees) in the group
      rate        -> share of the group with the indicator set
    Rows with a null group value are left out of the domain.
    """
    if measure not in _MEASURES:
        raise ValueError(f"measure must be one of {_MEASURES}, got {measure!r}")
    design.check(df)

    w = df.get_column(design.weight_col).cast(pl.Float64).to_numpy()
    strata = df.get_column(design.stratum_col).to_numpy()
    psu = df.get_column(design.psu_col).to_numpy()
    flag = df.get_column(indicator_col).fill_null(False).cast(pl.Float64).to_numpy()
    group = df.get_column(group_col)
    has_group = group.is_not_null().cast(pl.Float64).to_numpy()

    observed = df.filter(pl.col(group_col).is_not_null())
    if measure == "composition":
        observed = observed.filter(pl.col(indicator_col).fill_null(False))
    values = observed.get_column(group_col).unique().sort().to_list()

    rows = []
    for g in values:
        in_g = (group == g).fill_null(False).cast(pl.Float64).to_numpy()
        if measure == "composition":
            y, d = in_g, flag * has_group
        else:
            y, d = flag, in_g
        p, se = ratio_estimate(y, d, w, strata, psu, design.lonely_psu)
        rows.append({
            group_col: g,
            "proportion": p,
            "se": se,
            "n_unweighted": int(np.sum((y * d) > 0)),
        })

    schema = {group_col: group.dtype, "proportion": pl.Float64, "se": pl.Float64, "n_unweighted": pl.Int64}
    return pl.DataFrame(rows, schema=schema)


def estimate_by_year(
    df: pl.DataFrame,
    cfg: EstimationConfig,
    group_col: str,
    indicator_col: str = "in_exchange_cohort",
    year_col: str = "meps_year",
) -> pl.DataFrame:
    """Partition by survey year, build a design per partition, estimate per group."""
    design = SurveyDesign(
        psu_col=cfg.psu_col,
        stratum_col=cfg.stratum_col,
        weight_col=cfg.weight_col,
        nest=True,
        lonely_psu=cfg.lonely_psu,
    )
    out = []
    for (year,), part in df.group_by([year_col], maintain_order=True):
        usable = part.drop_nulls(design.columns)
        dropped = part.height - usable.height
        if dropped:
            logger.warning(f"Estimate: {year}: {dropped:,} rows missing PSU/stratum/weight left out of the design")
        if usable.height == 0:
            continue
        est = survey_proportions(usable, design, group_col, indicator_col, cfg.measure)
        out.append(est.with_columns(pl.lit(year, dtype=pl.Int64).alias(year_col)).select([year_col] + est.columns))
        logger.info(f"Estimate: {year}: {est.height} {group_col} groups from {usable.height:,} rows")

    if not out:
        raise ValueError("No year partition had usable design rows")
    return pl.concat(out).sort([year_col, group_col])


def estimates_table(df: pl.DataFrame, cfg: EstimationConfig) -> pl.DataFrame:
    """Stack estimates for every configured group column into one long table."""
    parts = []
    for group_col in cfg.group_by:
        est = estimate_by_year(df, cfg, group_col)
        parts.append(
            est.select(
                "meps_year",
                pl.lit(group_col).alias("group_var"),
                pl.col(group_col).cast(pl.Utf8).alias("group_value"),
                "proportion", "se", "n_unweighted",
            )
        )
    return pl.concat(parts)


def main(argv: Optional[List[str]] = None) -> int:
    log = setup_colored_logging()

    argv = argv if argv is not None else sys.argv[1:]
    cfg_path = Path(argv[0]) if argv else DEFAULT_CONFIG
    root_cfg = load_config(cfg_path)
    est_cfg = root_cfg.meps.estimation

    out_dir = (Path(root_cfg.processed_dir) / "meps").resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    fh = logging.FileHandler(out_dir / f"meps_estimation_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
    fh.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    logging.root.addHandler(fh)

    in_path = out_dir / "meps_pooled_cohort.parquet"
    try:
        if not in_path.exists():
            raise FileNotFoundError(f"Pooled cohort file not found: {in_path}. Run meps-process first.")
        pooled = pl.read_parquet(in_path)
        log.info(f"Estimate: loaded {pooled.height:,} person-years from {in_path}")
        table = estimates_table(pooled, est_cfg)
    except (KeyError, ValueError, FileNotFoundError, pl.exceptions.PolarsError) as e:
        log.error(f"Estimation failed: {e}")
        return 1

    out_path = out_dir / est_cfg.output_filename
    table.write_csv(out_path)
    log.info(f"Saved: {out_path} ({table.height:,} rows)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
