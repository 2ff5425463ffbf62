#!/usr/bin/env python3
"""
hill_fit.py
Hill concentration-response fits per (assay, chemical) group.

Model (log10 concentration x):
    resp = tp / (1 + 10^(slope * (logAC50 - x)))

Fitting is a bounded nonlinear least-squares problem. Standard errors come
from the Jacobian at the optimum; when they cannot be estimated (optimizer
failure, flat data, singular Jacobian) the point estimate is kept and the
standard error is borrowed from the successfully fit curves of the same assay
in a second pass, with tp_sd_imputed / logAC50_sd_imputed set.
"""
import logging
import warnings
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import optimize

logger = logging.getLogger(__name__)

DEFAULT_SLOPE = 1.0
SLOPE_BOUNDS = (0.3, 8.0)
TP_UPPER_MULT = 1.2
MAX_JTJ_CONDITION = 1e12


def hill_response(log10_conc, tp, logAC50, slope=DEFAULT_SLOPE):
    """Hill curve on the log10 concentration scale."""
    with np.errstate(over="ignore"):
        return tp / (1.0 + 10.0 ** (slope * (logAC50 - np.asarray(log10_conc, float))))


def hill_conc_response(conc, tp, AC50, slope=DEFAULT_SLOPE):
    """Hill curve on the linear concentration scale; conc = 0 gives 0."""
    conc = np.asarray(conc, float)
    with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
        return tp / (1.0 + (AC50 / conc) ** slope)


@dataclass
class HillFit:
    tp: float
    tp_sd: float
    logAC50: float
    logAC50_sd: float
    slope: float
    slope_sd: float
    logc_min: float
    logc_max: float
    resp_min: float
    resp_max: float
    n_points: int
    converged: bool


def _initial_values(logc: np.ndarray, resp: np.ndarray):
    """Guided start: observed max for tp, concentration nearest half-max for logAC50."""
    resp_max = float(np.max(resp))
    if not np.isfinite(resp_max) or resp_max <= 0:
        # all-zero / all-negative data: small positive top keeps bounds ordered
        tp0 = max(abs(resp_max), 1e-6)
    else:
        tp0 = resp_max
    logAC50_0 = float(logc[np.argmin(np.abs(resp - tp0 / 2.0))])
    return tp0, logAC50_0


def _standard_errors(res, n_params: int, n_points: int) -> np.ndarray:
    """sqrt(diag((J^T J)^-1 * s^2)); NaN when not estimable."""
    nan = np.full(n_params, np.nan)
    if not res.success or n_points <= n_params:
        return nan
    J = np.asarray(res.jac, float)
    if not np.all(np.isfinite(J)):
        return nan
    jtj = J.T @ J
    if not np.isfinite(np.linalg.cond(jtj)) or np.linalg.cond(jtj) > MAX_JTJ_CONDITION:
        return nan
    try:
        cov = np.linalg.inv(jtj) * (2.0 * res.cost / (n_points - n_params))
    except np.linalg.LinAlgError:
        return nan
    var = np.diag(cov)
    return np.where(var >= 0, np.sqrt(np.abs(var)), np.nan)


def fit_hill_curve(logc, resp, fixed_slope: bool = True,
                   slope: float = DEFAULT_SLOPE) -> HillFit:
    """Fit one concentration-response group.

    Numerical failures are recorded (converged=False, NaN SDs); only a group
    with no finite points raises ValueError.
    """
    logc = np.asarray(logc, float)
    resp = np.asarray(resp, float)
    keep = np.isfinite(logc) & np.isfinite(resp)
    logc, resp = logc[keep], resp[keep]
    if logc.size == 0:
        raise ValueError("No finite concentration-response points to fit")

    logc_min, logc_max = float(logc.min()), float(logc.max())
    resp_min, resp_max = float(resp.min()), float(resp.max())
    tp0, logAC50_0 = _initial_values(logc, resp)

    tp_hi = TP_UPPER_MULT * tp0
    lower = [0.0, logc_min - 1.0]
    upper = [tp_hi, logc_max + 0.5]
    x0 = [tp0, logAC50_0]
    if not fixed_slope:
        lower.append(SLOPE_BOUNDS[0])
        upper.append(SLOPE_BOUNDS[1])
        x0.append(float(np.clip(slope, *SLOPE_BOUNDS)))

    def residuals(p):
        n_slope = p[2] if not fixed_slope else slope
        return hill_response(logc, p[0], p[1], n_slope) - resp

    converged = False
    params = np.asarray(x0, float)
    sds = np.full(len(x0), np.nan)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            res = optimize.least_squares(residuals, x0=x0, bounds=(lower, upper),
                                         method="trf", max_nfev=5000)
        params = res.x
        converged = bool(res.success)
        sds = _standard_errors(res, len(x0), logc.size)
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.debug(f"Hill fit failed, keeping initial values: {e}")

    if np.ptp(resp) == 0:
        # flat data: tp is set by the level, AC50 is unidentified
        sds = np.full(len(x0), np.nan)

    return HillFit(
        tp=float(params[0]),
        tp_sd=float(sds[0]),
        logAC50=float(params[1]),
        logAC50_sd=float(sds[1]),
        slope=float(params[2]) if not fixed_slope else float(slope),
        slope_sd=float(sds[2]) if not fixed_slope else np.nan,
        logc_min=logc_min,
        logc_max=logc_max,
        resp_min=resp_min,
        resp_max=resp_max,
        n_points=int(logc.size),
        converged=converged,
    )


def _failed_fit(slope: float) -> HillFit:
    nan = np.nan
    return HillFit(tp=nan, tp_sd=nan, logAC50=nan, logAC50_sd=nan, slope=float(slope),
                   slope_sd=nan, logc_min=nan, logc_max=nan, resp_min=nan, resp_max=nan,
                   n_points=0, converged=False)


def _impute_sd(df: pd.DataFrame, sd_col: str, flag_col: str, group_col: Optional[str],
               last_resort: pd.Series) -> pd.Series:
    """Second pass: fill non-finite SDs from the same assay's successful fits."""
    ok = ~df[flag_col]
    overall = float(df.loc[ok, sd_col].median()) if ok.any() else np.nan
    if group_col is not None:
        by_group = df.loc[ok].groupby(group_col)[sd_col].median()
        fill = df[group_col].map(by_group)
    else:
        fill = pd.Series(overall, index=df.index)
    fill = fill.fillna(overall).fillna(last_resort)
    return df[sd_col].where(ok, fill)


def fit_hill(dose_response: pd.DataFrame, conc: str = "logc", resp: str = "resp",
             fixed_slope: bool = True, slope: float = DEFAULT_SLOPE,
             chem: Optional[str] = None, assay: Optional[str] = None) -> pd.DataFrame:
    """
    Fit Hill curves to every (assay, chemical) group of a dose-response table.

    Args:
        dose_response: long table of log10 concentration and response values
        conc, resp: column names of log10 concentration and response
        fixed_slope: keep the Hill coefficient at `slope` instead of fitting it
        chem, assay: grouping columns (either may be None)

    Returns:
        DataFrame with one row per group, keyed by standard columns 'assay' and
        'chem' (present when the matching argument is given): tp, tp_sd, logAC50,
        logAC50_sd, slope, slope_sd, logc_min, logc_max, resp_min, resp_max,
        n_points, converged, tp_sd_imputed, logAC50_sd_imputed. A group with
        no finite points is kept as a failed fit (NaN tp and logAC50, both
        imputed flags set) so the other groups are unaffected.
    """
    for col in (conc, resp) + tuple(c for c in (chem, assay) if c is not None):
        if col not in dose_response.columns:
            raise KeyError(f"Dose-response table has no column '{col}'")

    # output uses the standard key names 'assay' and 'chem'
    key_map = [(src, name) for src, name in ((assay, "assay"), (chem, "chem")) if src is not None]
    keys = [src for src, _ in key_map]
    names = [name for _, name in key_map]
    groups = dose_response.groupby(keys, sort=True) if keys else [((), dose_response)]

    rows: List[Dict] = []
    for key, g in groups:
        key = key if isinstance(key, tuple) else (key,)
        logc_g, resp_g = g[conc].to_numpy(float), g[resp].to_numpy(float)
        row = dict(zip(names, key))
        if not np.any(np.isfinite(logc_g) & np.isfinite(resp_g)):
            logger.warning(f"No finite concentration-response points for {row}; "
                           "recorded as a failed fit")
            fit = _failed_fit(slope if fixed_slope else np.nan)
        else:
            fit = fit_hill_curve(logc_g, resp_g, fixed_slope=fixed_slope, slope=slope)
        row.update(asdict(fit))
        rows.append(row)
        logger.debug(f"Hill fit {row.get('assay', '')}/{row.get('chem', '')}: "
                     f"tp={fit.tp:.4g} logAC50={fit.logAC50:.4g} converged={fit.converged}")

    out = pd.DataFrame(rows)
    out["tp_sd_imputed"] = ~np.isfinite(out["tp_sd"].to_numpy(float))
    out["logAC50_sd_imputed"] = ~np.isfinite(out["logAC50_sd"].to_numpy(float))

    group_col = "assay" if assay is not None else None
    out["tp_sd"] = _impute_sd(out, "tp_sd", "tp_sd_imputed", group_col, out["tp"].abs())
    out["logAC50_sd"] = _impute_sd(out, "logAC50_sd", "logAC50_sd_imputed", group_col,
                                   (out["logc_max"] - out["logc_min"]) / 2.0)

    n_imputed = int((out["tp_sd_imputed"] | out["logAC50_sd_imputed"]).sum())
    if n_imputed:
        logger.warning(f"{n_imputed} of {len(out)} Hill fits had non-estimable standard "
                       "errors; SDs borrowed from successful fits of the same assay")
    logger.info(f"Fit {len(out)} Hill curve(s)")
    return out


def reliable_hill_params(hill_params: pd.DataFrame) -> pd.DataFrame:
    """Drop fits whose tp or logAC50 SD had to be imputed."""
    keep = ~(hill_params["tp_sd_imputed"] | hill_params["logAC50_sd_imputed"])
    dropped = int((~keep).sum())
    if dropped:
        logger.info(f"Excluding {dropped} Hill fit(s) with imputed standard errors")
    return hill_params.loc[keep].reset_index(drop=True)
