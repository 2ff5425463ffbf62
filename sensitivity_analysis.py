#!/usr/bin/env python3
"""
sensitivity_analysis.py - One-at-a-time sensitivity analysis of the mixture response

Re-runs the dose -> concentration -> response pipeline for each region with a
single input factor varying and every other factor held at a fixed baseline,
then attributes response variability to that factor.

Factors (held fixed -> varying):
- age:        IR at the regional mean, C_ss at the pooled median
              -> simulated IR and the age-group C_ss median
- obesity:    C_ss at the pooled median -> weight-category C_ss median
- css_params: C_ss at the pooled median -> sampled C_ss
- fit_params: Hill point estimates -> tp / logAC50 sampled per individual
- C_ext:      exposure at the regional mean -> sampled exposure

The varying factor re-uses the population's own draws, so a factor's run
differs from the baseline only through that factor. Hill parameter sampling
uses a generator seeded by (seed, region index, factor index); repeating an
analysis with the same seed reproduces every array.

Outputs per region, factor and assay:
- records: baseline, perturbed and difference for every individual
- scores:  baseline_mean, perturbed_mean, mean_abs_diff, variance,
           variance_share (variance over the sum across factors), status

A factor whose re-run fails is recorded with status 'failed' and NaN scores;
the remaining factors are unaffected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from config import ExposureColumns, GeoToxParams
from errors import MissingDataError
from mixture_response import METRICS, calc_concentration_response
from parallel import map_regions
from population import RegionSample, fixed_css
from toxicokinetics import calc_internal_dose, calc_invitro_concentration

logger = logging.getLogger(__name__)

FACTORS = ("age", "obesity", "css_params", "fit_params", "C_ext")
DEFAULT_METRIC = "GCA_Eff"

SCORE_COLUMNS = ["region", "factor", "assay", "metric", "baseline_mean", "perturbed_mean",
                 "mean_abs_diff", "variance", "variance_share", "status"]
RECORD_COLUMNS = ["region", "factor", "assay", "sample", "baseline", "perturbed", "difference"]
_ROW_COLUMNS = [c for c in SCORE_COLUMNS if c != "variance_share"]


@dataclass(frozen=True)
class SensitivityResult:
    metric: str
    factors: Tuple[str, ...]
    baseline: Dict[str, pd.DataFrame] = field(default_factory=dict)
    responses: Dict[str, Dict[str, pd.DataFrame]] = field(default_factory=dict)
    records: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=RECORD_COLUMNS))
    scores: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=SCORE_COLUMNS))


def _exposure_means(sample: RegionSample, exposure_table: Optional[pd.DataFrame],
                    columns: ExposureColumns) -> pd.Series:
    chems = list(sample.C_ext.columns)
    if exposure_table is not None:
        means = exposure_table.set_index(columns.label)[columns.mean].astype(float)
        missing = [c for c in chems if c not in means.index]
        if missing:
            raise MissingDataError(f"No exposure mean for chemicals: {missing}")
        return means.loc[chems]
    return sample.C_ext.mean(axis=0)


def factor_inputs(vary: Optional[str], sample: RegionSample,
                  simulated_css: Mapping[str, pd.DataFrame],
                  exposure_table: Optional[pd.DataFrame] = None,
                  columns: Optional[ExposureColumns] = None):
    """(C_ext, IR, C_ss, fixed_hill) with only `vary` left at its simulated values."""
    if vary is not None and vary not in FACTORS:
        raise ValueError(f"Unknown sensitivity factor: {vary}")
    for name in ("age", "IR", "obesity", "C_ext"):
        if getattr(sample, name) is None:
            raise MissingDataError(f"Sensitivity analysis needs simulated '{name}'")
    columns = columns or ExposureColumns()
    n = len(sample.age)
    chems = list(sample.C_ext.columns)

    if vary == "C_ext":
        C_ext = sample.C_ext
    else:
        means = _exposure_means(sample, exposure_table, columns).to_numpy(float)
        C_ext = pd.DataFrame(np.tile(means, (n, 1)), columns=chems)

    IR = sample.IR if vary == "age" else np.full(n, float(np.mean(sample.IR)))

    if vary == "css_params":
        if sample.C_ss is None:
            raise MissingDataError("Sensitivity to css_params needs sampled C_ss")
        C_ss = sample.C_ss
    else:
        if simulated_css is None:
            raise MissingDataError("Sensitivity analysis needs simulated C_ss tables")
        mode = vary if vary in ("age", "obesity") else None
        C_ss = fixed_css(simulated_css, sample.age, sample.obesity, mode, chems)

    return C_ext, IR, C_ss, vary != "fit_params"


def compute_sensitivity(vary: Optional[str], sample: RegionSample, hill_params: pd.DataFrame,
                        simulated_css: Mapping[str, pd.DataFrame], params: GeoToxParams,
                        exposure_table: Optional[pd.DataFrame] = None,
                        rng: Optional[np.random.Generator] = None) -> pd.DataFrame:
    """Response table for one region with only `vary` varying (None = baseline)."""
    C_ext, IR, C_ss, fixed = factor_inputs(vary, sample, simulated_css, exposure_table,
                                           params.exposure)
    dose = params.internal_dose
    D_int = calc_internal_dose(C_ext, IR, time=dose.time, BW=dose.BW, scaling=dose.scaling)
    C_invitro = calc_invitro_concentration(D_int, C_ss)
    return calc_concentration_response(C_invitro, hill_params, max_mult=params.resp.max_mult,
                                       fixed=fixed, rng=rng)


def factor_rng(seed: int, region_index: int, factor: str) -> np.random.Generator:
    """Generator for one (region, factor) re-run; independent of run order."""
    return np.random.default_rng([int(seed), int(region_index), FACTORS.index(factor)])


def _score(region: str, factor: str, metric: str, baseline: pd.DataFrame,
           perturbed: Optional[pd.DataFrame]) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Per-individual records and per-assay score rows for one factor."""
    base = baseline[["sample", "assay", metric]].rename(columns={metric: "baseline"})
    if perturbed is None:
        rows = []
        for assay, g in base.groupby("assay", sort=False, dropna=False):
            rows.append({"region": region, "factor": factor, "assay": assay, "metric": metric,
                         "baseline_mean": g["baseline"].mean(skipna=True),
                         "perturbed_mean": np.nan, "mean_abs_diff": np.nan, "variance": np.nan,
                         "status": "failed"})
        return pd.DataFrame(columns=RECORD_COLUMNS), pd.DataFrame(rows, columns=_ROW_COLUMNS)

    pert = perturbed[["sample", "assay", metric]].rename(columns={metric: "perturbed"})
    rec = base.merge(pert, on=["sample", "assay"], how="left", sort=False)
    rec["difference"] = rec["perturbed"] - rec["baseline"]
    rec.insert(0, "factor", factor)
    rec.insert(0, "region", region)

    rows = []
    for assay, g in rec.groupby("assay", sort=False, dropna=False):
        rows.append({
            "region": region, "factor": factor, "assay": assay, "metric": metric,
            # NaN responses stay NaN; they are skipped, never counted as zero
            "baseline_mean": g["baseline"].mean(skipna=True),
            "perturbed_mean": g["perturbed"].mean(skipna=True),
            "mean_abs_diff": g["difference"].abs().mean(skipna=True),
            "variance": g["perturbed"].var(ddof=0, skipna=True),
            "status": "ok",
        })
    return rec[RECORD_COLUMNS], pd.DataFrame(rows, columns=_ROW_COLUMNS)


def _region_sensitivity(region: str, payload: Tuple, hill_params: pd.DataFrame,
                        simulated_css: Mapping[str, pd.DataFrame], params: GeoToxParams,
                        factors: Sequence[str], metric: str, seed: int):
    region_index, sample, exposure_table = payload
    baseline = compute_sensitivity(None, sample, hill_params, simulated_css, params,
                                   exposure_table)
    responses: Dict[str, pd.DataFrame] = {}
    records: List[pd.DataFrame] = []
    scores: List[pd.DataFrame] = []
    for factor in factors:
        rng = factor_rng(seed, region_index, factor)
        try:
            perturbed = compute_sensitivity(factor, sample, hill_params, simulated_css,
                                            params, exposure_table, rng=rng)
        except Exception as e:
            logger.warning(f"Sensitivity re-run for factor '{factor}' failed in region "
                           f"{region}: {e}")
            perturbed = None
        else:
            responses[factor] = perturbed
        rec, sc = _score(region, factor, metric, baseline, perturbed)
        records.append(rec)
        scores.append(sc)
    return baseline, responses, records, scores


def sensitivity_analysis(samples: Mapping[str, RegionSample], hill_params: pd.DataFrame,
                         simulated_css: Mapping[str, pd.DataFrame], params: GeoToxParams,
                         exposure: Optional[Mapping[str, pd.DataFrame]] = None,
                         factors: Sequence[str] = FACTORS, metric: str = DEFAULT_METRIC,
                         seed: Optional[int] = None) -> SensitivityResult:
    """
    One-at-a-time sensitivity analysis over all regions.

    Parameters:
        samples: simulated population per region
        hill_params: Hill parameter table used for the response
        simulated_css: precomputed C_ss samples keyed by chemical
        params: run parameters (dose constants, max_mult, exposure columns)
        exposure: per-region exposure tables (means for the fixed baseline);
            the sampled exposure means are used when omitted
        factors: factors to vary, subset of FACTORS
        metric: response column used for records and scores
        seed: base seed for Hill parameter re-sampling

    Returns:
        SensitivityResult
    """
    unknown = [f for f in factors if f not in FACTORS]
    if unknown:
        raise ValueError(f"Unknown sensitivity factors: {unknown}")
    if metric not in METRICS:
        raise ValueError(f"Unknown response metric: {metric}")
    if seed is None:
        seed = params.seed if params.seed is not None else int(np.random.SeedSequence().entropy % 2**63)
    exposure = exposure or {}

    items = {r: (i, s, exposure.get(r)) for i, (r, s) in enumerate(samples.items())}
    logger.info(f"Sensitivity analysis: {len(items)} region(s), factors {list(factors)}")
    worker = partial(_region_sensitivity, hill_params=hill_params, simulated_css=simulated_css,
                     params=params, factors=tuple(factors), metric=metric, seed=seed)
    per_region = map_regions(worker, items, max_workers=params.max_workers)

    baseline = {r: out[0] for r, out in per_region.items()}
    responses: Dict[str, Dict[str, pd.DataFrame]] = {f: {} for f in factors}
    records, scores = [], []
    for region, (_, resp, rec, sc) in per_region.items():
        for factor, df in resp.items():
            responses[factor][region] = df
        records.extend(r for r in rec if len(r))
        scores.extend(sc)

    score_df = pd.concat(scores, ignore_index=True) if scores else pd.DataFrame(columns=_ROW_COLUMNS)
    score_df = score_df.reindex(columns=SCORE_COLUMNS)
    if len(score_df):
        total = score_df.groupby(["region", "assay"], dropna=False)["variance"].transform("sum")
        score_df["variance_share"] = np.where(total > 0, score_df["variance"] / total, np.nan)
        score_df = score_df[SCORE_COLUMNS]
        n_failed = int((score_df["status"] == "failed").sum())
        if n_failed:
            logger.warning(f"{n_failed} sensitivity score(s) missing after failed re-runs")
    record_df = pd.concat(records, ignore_index=True) if records else pd.DataFrame(columns=RECORD_COLUMNS)

    return SensitivityResult(metric=metric, factors=tuple(factors), baseline=baseline,
                             responses=responses, records=record_df, scores=score_df)
