"""
Flat output tables for reporting collaborators:
  - flatten_regions: per-region frames stacked with a region column
  - resp_quantiles: per-region quantiles of a response metric, optionally
    summarised across assays
  - hill_params_table: Hill parameters with the imputed-flag columns
  - sensitivity_table: sensitivity scores, long or pivoted by factor
"""
import logging
from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from mixture_response import METRICS

logger = logging.getLogger(__name__)

HILL_COLUMNS = ["assay", "chem", "tp", "tp_sd", "logAC50", "logAC50_sd", "slope", "slope_sd",
                "logc_min", "logc_max", "resp_min", "resp_max", "n_points", "converged",
                "tp_sd_imputed", "logAC50_sd_imputed"]


def flatten_regions(mapping: Mapping[str, pd.DataFrame]) -> pd.DataFrame:
    frames = []
    for region, df in mapping.items():
        if df is None:
            continue
        df = df.copy()
        df.insert(0, "region", region)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=["region"])
    return pd.concat(frames, ignore_index=True)


def resp_quantiles(resp: Mapping[str, pd.DataFrame], metric: str = "GCA_Eff",
                   assays: Optional[Sequence[str]] = None, assay_summary: bool = False,
                   assay_quantiles: Optional[Dict[str, float]] = None,
                   summary_quantiles: Optional[Dict[str, float]] = None) -> pd.DataFrame:
    """
    Quantiles of a response metric over each region's individuals.

    For every region and assay the `assay_quantiles` of the metric are taken
    over individuals (NaN responses skipped). With assay_summary=True the
    per-assay values are reduced again with `summary_quantiles` across assays.

    Returns:
        long DataFrame: region, assay, assay_quantile, value
        (assay_summary: region, assay_quantile, summary_quantile, value)
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown response metric: {metric}")
    assay_quantiles = assay_quantiles or {"Median": 0.5}
    summary_quantiles = summary_quantiles or {"10th percentile": 0.1}

    df = flatten_regions(resp)
    if assays is not None:
        df = df[df["assay"].isin(list(assays))]
        if df.empty:
            raise ValueError(f"No responses for assays {list(assays)}")

    rows = []
    for (region, assay), g in df.groupby(["region", "assay"], sort=False, dropna=False):
        values = g[metric].dropna()
        for name, q in assay_quantiles.items():
            rows.append({"region": region, "assay": assay, "assay_quantile": name,
                         "value": float(values.quantile(q)) if len(values) else np.nan})
    out = pd.DataFrame(rows, columns=["region", "assay", "assay_quantile", "value"])
    if not assay_summary:
        return out

    rows = []
    for (region, aq), g in out.groupby(["region", "assay_quantile"], sort=False):
        values = g["value"].dropna()
        for name, q in summary_quantiles.items():
            rows.append({"region": region, "assay_quantile": aq, "summary_quantile": name,
                         "value": float(values.quantile(q)) if len(values) else np.nan})
    return pd.DataFrame(rows, columns=["region", "assay_quantile", "summary_quantile", "value"])


def hill_params_table(hill_params: pd.DataFrame) -> pd.DataFrame:
    cols = [c for c in HILL_COLUMNS if c in hill_params.columns]
    extra = [c for c in hill_params.columns if c not in cols]
    keys = [c for c in ("assay", "chem") if c in hill_params.columns]
    out = hill_params[cols + extra]
    return out.sort_values(keys).reset_index(drop=True) if keys else out.reset_index(drop=True)


def sensitivity_table(result, value: Optional[str] = None) -> pd.DataFrame:
    """Score table of a SensitivityResult; pivoted to one column per factor when `value` is set."""
    scores = result.scores
    if value is None:
        return scores.reset_index(drop=True)
    if value not in scores.columns:
        raise KeyError(f"Sensitivity scores have no column '{value}'")
    wide = scores.pivot_table(index=["region", "assay"], columns="factor", values=value,
                              aggfunc="first", dropna=False)
    wide = wide.reindex(columns=[f for f in result.factors if f in wide.columns])
    wide.columns.name = None
    return wide.reset_index()
