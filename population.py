#!/usr/bin/env python3
"""
population.py

Monte Carlo simulation of a region's population sample matrix:
  • age (census 5-year bands, population-weighted)
  • inhalation rate (age-bracketed truncated normal)
  • obesity status (prevalence drawn per region, then Bernoulli)
  • external exposure concentration per chemical (truncated normal)
  • steady-state plasma concentration C_ss per chemical, drawn from the
    precomputed toxicokinetic samples for the individual's (age, weight) cell

Every function takes an explicit numpy Generator so that a region's draws are
reproducible and can be re-used unchanged by the sensitivity analysis.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd
from scipy import stats as sps

from config import ExposureColumns
from demographics import AGE_GROUP_YEARS, N_AGE_GROUPS, WEIGHT_CATEGORIES, default_ir_params
from errors import MissingDataError

logger = logging.getLogger(__name__)

SENSITIVITY_CSS_MODES = ("age", "obesity")


def rtruncnorm(rng: np.random.Generator, mean, sd, lower=-np.inf, upper=np.inf,
               size=None) -> np.ndarray:
    """Truncated normal draws; entries with zero or non-finite sd return the (clipped) mean."""
    shape = size if size is not None else np.broadcast(mean, sd, lower, upper).shape
    mean, sd, lower, upper = (np.broadcast_to(np.asarray(v, float), shape)
                              for v in (mean, sd, lower, upper))
    out = np.clip(mean, lower, upper).astype(float)
    ok = np.isfinite(sd) & (sd > 0) & np.isfinite(mean)
    if np.any(ok):
        a = (lower[ok] - mean[ok]) / sd[ok]
        b = (upper[ok] - mean[ok]) / sd[ok]
        out[ok] = sps.truncnorm.rvs(a, b, loc=mean[ok], scale=sd[ok], random_state=rng)
    return out


# ------------------------------- Demographics -------------------------------- #

def simulate_age(age_table: pd.DataFrame, n: int, rng: np.random.Generator) -> np.ndarray:
    """Integer ages sampled from census counts (columns AGEGRP, TOT_POP)."""
    for col in ("AGEGRP", "TOT_POP"):
        if col not in age_table.columns:
            raise MissingDataError(f"Age table is missing column '{col}'")
    df = age_table[age_table["AGEGRP"] != 0]
    bad = sorted(set(df["AGEGRP"]) - set(range(1, N_AGE_GROUPS + 1)))
    if bad:
        raise ValueError(f"Unknown AGEGRP codes: {bad}")
    pop = pd.to_numeric(df["TOT_POP"], errors="coerce").fillna(0.0).to_numpy(float)
    total = pop.sum()
    if total <= 0:
        raise MissingDataError("Age table has no population to sample from")
    groups = rng.choice(df["AGEGRP"].to_numpy(int), size=n, p=pop / total)
    lo = (groups - 1) * AGE_GROUP_YEARS
    return lo + rng.integers(0, AGE_GROUP_YEARS, size=n)


def simulate_inhalation_rate(age: np.ndarray, rng: np.random.Generator,
                             IR_params: Optional[pd.DataFrame] = None) -> np.ndarray:
    """Inhalation rate (m^3/day/kg) for each age, truncated at zero."""
    ir = default_ir_params() if IR_params is None else IR_params.sort_values("age")
    brackets = ir["age"].to_numpy(float)
    idx = np.clip(np.searchsorted(brackets, np.asarray(age, float), side="right") - 1,
                  0, len(brackets) - 1)
    return rtruncnorm(rng, ir["mean"].to_numpy(float)[idx], ir["sd"].to_numpy(float)[idx],
                      lower=0.0)


def simulate_obesity(prev: float, sd: float, n: int, rng: np.random.Generator) -> np.ndarray:
    """'Obese'/'Normal' labels given a prevalence (percent) and its sd."""
    p = rtruncnorm(rng, prev, sd, lower=0.0, upper=100.0, size=n) / 100.0
    normal, obese = WEIGHT_CATEGORIES
    return np.where(rng.random(n) < p, obese, normal)


def simulate_exposure(exposure_table: pd.DataFrame, n: int, rng: np.random.Generator,
                      columns: Optional[ExposureColumns] = None) -> pd.DataFrame:
    """n x chemical matrix of external concentrations, one column per chemical."""
    columns = columns or ExposureColumns()
    for col in (columns.label, columns.mean, columns.sd):
        if col not in exposure_table.columns:
            raise MissingDataError(f"Exposure table is missing column '{col}'")
    labels = exposure_table[columns.label].tolist()
    if len(set(labels)) != len(labels):
        raise ValueError("Exposure table lists a chemical more than once for one region")

    draws = {}
    for label, mu, sd in zip(labels, exposure_table[columns.mean], exposure_table[columns.sd]):
        draws[label] = rtruncnorm(rng, float(mu), float(sd) if pd.notna(sd) else 0.0,
                                  lower=0.0, size=n)
    return pd.DataFrame(draws, columns=labels)


# ------------------------------- C_ss samples -------------------------------- #

def _pooled(values: Iterable) -> np.ndarray:
    arrays = [np.atleast_1d(np.asarray(v, float)) for v in values]
    pooled = np.concatenate(arrays) if arrays else np.array([], float)
    return pooled[np.isfinite(pooled)]


def _median(values: Iterable) -> float:
    pooled = _pooled(values)
    return float(np.median(pooled)) if pooled.size else np.nan


def add_css_medians(simulated_css: Mapping[str, pd.DataFrame]) -> Dict[str, pd.DataFrame]:
    """Add age_median_css / weight_median_css columns where absent."""
    out = {}
    for chem, df in simulated_css.items():
        df = df.copy()
        if "age_median_css" not in df.columns:
            med = {a: _median(g) for a, g in df.groupby("age_min")["css"]}
            df["age_median_css"] = df["age_min"].map(med)
        if "weight_median_css" not in df.columns:
            med = {w: _median(g) for w, g in df.groupby("weight")["css"]}
            df["weight_median_css"] = df["weight"].map(med)
        out[chem] = df
    return out


def _css_rows(css_df: pd.DataFrame, age: np.ndarray, obesity: np.ndarray, chem: str) -> np.ndarray:
    """Row of css_df for each individual: largest age_min <= age, matching weight."""
    age_mins = np.sort(css_df["age_min"].unique())
    idx = np.clip(np.searchsorted(age_mins, np.asarray(age, float), side="right") - 1,
                  0, len(age_mins) - 1)
    ind = pd.DataFrame({"age_min": age_mins[idx], "weight": np.asarray(obesity)})
    keyed = css_df[["age_min", "weight"]].reset_index(drop=True)
    keyed["row"] = np.arange(len(keyed))
    keyed = keyed.drop_duplicates(["age_min", "weight"])
    merged = ind.merge(keyed, on=["age_min", "weight"], how="left")
    if merged["row"].isna().any():
        missing = merged.loc[merged["row"].isna(), ["age_min", "weight"]].drop_duplicates()
        raise MissingDataError(
            f"No C_ss samples for chemical {chem} in cells "
            f"{list(map(tuple, missing.to_numpy()))}")
    return merged["row"].to_numpy(int)


def sample_css(simulated_css: Mapping[str, pd.DataFrame], age: np.ndarray,
               obesity: np.ndarray, rng: np.random.Generator,
               chemicals: Optional[List[str]] = None) -> pd.DataFrame:
    """Draw one C_ss value per individual and chemical from the matching (age, weight) cell.

    Chemicals without simulated C_ss get an all-NaN column so they are excluded
    from that individual's mixture rather than counted as zero.
    """
    n = len(age)
    chemicals = list(simulated_css) if chemicals is None else list(chemicals)
    out = {}
    absent = []
    for chem in chemicals:
        if chem not in simulated_css:
            absent.append(chem)
            out[chem] = np.full(n, np.nan)
            continue
        df = simulated_css[chem].reset_index(drop=True)
        rows = _css_rows(df, age, obesity, chem)
        vals = np.full(n, np.nan)
        for r in np.unique(rows):
            mask = rows == r
            samples = _pooled([df["css"].iloc[r]])
            if samples.size:
                vals[mask] = rng.choice(samples, size=int(mask.sum()), replace=True)
        out[chem] = vals
    if absent:
        logger.warning(f"No simulated C_ss for {len(absent)} chemical(s): {absent}; "
                       "they are excluded from the mixture response")
    return pd.DataFrame(out, columns=chemicals)


def fixed_css(simulated_css: Mapping[str, pd.DataFrame], age: np.ndarray,
              obesity: np.ndarray, vary: Optional[str],
              chemicals: List[str]) -> pd.DataFrame:
    """C_ss held at medians: by age group, by weight category, or pooled."""
    n = len(age)
    simulated_css = add_css_medians(simulated_css)
    out = {}
    for chem in chemicals:
        if chem not in simulated_css:
            out[chem] = np.full(n, np.nan)
            continue
        df = simulated_css[chem].reset_index(drop=True)
        if vary in SENSITIVITY_CSS_MODES:
            column = "age_median_css" if vary == "age" else "weight_median_css"
            rows = _css_rows(df, age, obesity, chem)
            out[chem] = df[column].to_numpy(float)[rows]
        else:
            out[chem] = np.full(n, _median(df["css"]))
    return pd.DataFrame(out, columns=list(chemicals))


# ------------------------------- Region bundle ------------------------------- #

@dataclass(frozen=True)
class RegionSample:
    age: Optional[np.ndarray] = None
    IR: Optional[np.ndarray] = None
    obesity: Optional[np.ndarray] = None
    C_ext: Optional[pd.DataFrame] = None
    C_ss: Optional[pd.DataFrame] = None


def simulate_region(n: int, rng: np.random.Generator,
                    age_table: Optional[pd.DataFrame] = None,
                    obesity_stats: Optional[tuple] = None,
                    exposure_table: Optional[pd.DataFrame] = None,
                    simulated_css: Optional[Mapping[str, pd.DataFrame]] = None,
                    IR_params: Optional[pd.DataFrame] = None,
                    exposure_columns: Optional[ExposureColumns] = None) -> RegionSample:
    """Simulate every field whose inputs are available for one region."""
    age = IR = obesity = C_ext = C_ss = None
    if age_table is not None:
        age = simulate_age(age_table, n, rng)
        IR = simulate_inhalation_rate(age, rng, IR_params)
    if obesity_stats is not None:
        obesity = simulate_obesity(obesity_stats[0], obesity_stats[1], n, rng)
    if exposure_table is not None:
        C_ext = simulate_exposure(exposure_table, n, rng, exposure_columns)
    if simulated_css is not None:
        if age is None or obesity is None:
            raise MissingDataError("Sampling C_ss requires both age and obesity data")
        chemicals = list(C_ext.columns) if C_ext is not None else None
        C_ss = sample_css(simulated_css, age, obesity, rng, chemicals)
    return RegionSample(age=age, IR=IR, obesity=obesity, C_ext=C_ext, C_ss=C_ss)
