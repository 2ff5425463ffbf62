#!/usr/bin/env python3
"""
mixture_response.py

Combined mixture response for a simulated population, per region and assay.

Models:
  • Independent Action (IA): E = E_max * (1 - prod_i(1 - E_i / E_max))
  • Generalized Concentration Addition (GCA): the effect level E solving
        sum_i C_i / f_i^-1(E) = 1
    where f_i^-1 is the inverse Hill curve of chemical i, reflected for
    E > tp_i so that partial agonists contribute negatively
    (Howard & Webster 2009, J Theor Biol 259:469).

Hazard quotients compare the mixture to the concentration producing 10% of
E_max: GCA_HQ_10 = sum_i C_i / f_i^-1(0.1 E_max) and IA_HQ_10 = 1 / s where
IA(s * C) = 0.1 E_max.

E_max (top_max) is the largest top among the chemicals contributing for that
individual. A chemical contributes only when its concentration and Hill
parameters are valid; missing or invalid pairs are excluded, never zero-filled.
Outputs that cannot be computed (no valid chemical, zero E_max, no root in the
bracket) are NaN.
"""
import logging
from typing import Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import optimize

from errors import MissingDataError
from hill_fit import hill_conc_response
from population import rtruncnorm

logger = logging.getLogger(__name__)

METRICS = ("GCA_Eff", "IA_Eff", "GCA_HQ_10", "IA_HQ_10")
RESPONSE_COLUMNS = ["sample", "assay"] + list(METRICS)
CHEMICAL_RESPONSE_COLUMNS = ["sample", "assay", "chem", "C_invitro", "response"]
HQ_FRACTION = 0.1

# GCA root bracket in ln(E): [ln(E_max) - k * GCA_LN_STEP, ln(E_max)],
# k grows until the lower end has a positive objective or hits GCA_LN_FLOOR.
GCA_LN_STEP = 50.0
GCA_LN_FLOOR = -700.0
# IA hazard quotient bracket in log10 of the concentration multiplier
IA_LOG10_SPAN = 60.0
ROOT_XTOL = 1e-12
ROOT_MAXITER = 200


def independent_action(fractions) -> float:
    """1 - prod(1 - f) over fractional responses; NaN entries are skipped."""
    f = np.asarray(fractions, float)
    f = f[np.isfinite(f)]
    if f.size == 0:
        return np.nan
    return float(1.0 - np.prod(1.0 - np.clip(f, 0.0, 1.0)))


def valid_pairs(conc, tp, AC50, slope) -> np.ndarray:
    """Mask of chemicals that can contribute: finite conc >= 0, tp >= 0, AC50 > 0, slope > 0."""
    conc, tp, AC50, slope = (np.asarray(v, float) for v in (conc, tp, AC50, slope))
    return (np.isfinite(conc) & (conc >= 0)
            & np.isfinite(tp) & (tp >= 0)
            & np.isfinite(AC50) & (AC50 > 0)
            & np.isfinite(slope) & (slope > 0))


def _gca_terms(ln_E: float, conc, tp, AC50, slope) -> np.ndarray:
    """C_i / f_i^-1(E) with the reflected inverse Hill curve."""
    E = np.exp(ln_E)
    diff = tp - E
    with np.errstate(divide="ignore"):
        log_ratio = np.log(np.abs(diff)) - ln_E
    mag = np.exp(np.clip(log_ratio / slope, None, 700.0))
    return (conc / AC50) * np.sign(diff) * mag


def _gca_objective(ln_E: float, conc, tp, AC50, slope) -> float:
    return float(np.sum(_gca_terms(ln_E, conc, tp, AC50, slope)) - 1.0)


def calc_gca_effect(conc, tp, AC50, slope) -> float:
    """GCA effect level for one individual's valid chemicals; NaN when no root is bracketed."""
    conc, tp, AC50, slope = (np.asarray(v, float) for v in (conc, tp, AC50, slope))
    if conc.size == 0:
        return np.nan
    E_max = float(np.max(tp))
    if not np.isfinite(E_max) or E_max <= 0:
        return np.nan
    hi = np.log(E_max)
    f_hi = _gca_objective(hi, conc, tp, AC50, slope)
    lo = hi - GCA_LN_STEP
    f_lo = _gca_objective(lo, conc, tp, AC50, slope)
    while f_lo <= 0 and lo > GCA_LN_FLOOR:
        lo = max(lo - GCA_LN_STEP, GCA_LN_FLOOR)
        f_lo = _gca_objective(lo, conc, tp, AC50, slope)
    if not (np.isfinite(f_lo) and np.isfinite(f_hi)):
        return np.nan
    if f_hi == 0:
        return E_max
    if f_lo * f_hi > 0:
        return np.nan
    try:
        root = optimize.brentq(_gca_objective, lo, hi, args=(conc, tp, AC50, slope),
                               xtol=ROOT_XTOL, maxiter=ROOT_MAXITER)
    except (RuntimeError, ValueError):
        return np.nan
    return float(np.exp(root))


def calc_independent_action(conc, tp, AC50, slope, E_max: Optional[float] = None) -> float:
    """IA response scaled to E_max (defaults to the largest top)."""
    tp = np.asarray(tp, float)
    if tp.size == 0:
        return np.nan
    E_max = float(np.max(tp)) if E_max is None else float(E_max)
    if not np.isfinite(E_max) or E_max <= 0:
        return np.nan
    resp = hill_conc_response(conc, tp, AC50, slope)
    return E_max * independent_action(resp / E_max)


def calc_gca_hq(conc, tp, AC50, slope, E_max: float, fraction: float = HQ_FRACTION) -> float:
    if not np.isfinite(E_max) or E_max <= 0:
        return np.nan
    hq = float(np.sum(_gca_terms(np.log(fraction * E_max), conc, tp, AC50, slope)))
    return hq if np.isfinite(hq) else np.nan


def calc_ia_hq(conc, tp, AC50, slope, E_max: float, fraction: float = HQ_FRACTION) -> float:
    if not np.isfinite(E_max) or E_max <= 0:
        return np.nan
    target = fraction * E_max
    conc = np.asarray(conc, float)

    def h(u):
        return calc_independent_action(conc * 10.0 ** u, tp, AC50, slope, E_max) - target

    lo, hi = -IA_LOG10_SPAN, IA_LOG10_SPAN
    f_lo, f_hi = h(lo), h(hi)
    if not (np.isfinite(f_lo) and np.isfinite(f_hi)) or f_lo * f_hi > 0:
        return np.nan
    try:
        u = optimize.brentq(h, lo, hi, xtol=ROOT_XTOL, maxiter=ROOT_MAXITER)
    except (RuntimeError, ValueError):
        return np.nan
    return float(10.0 ** (-u))


def mixture_metrics(conc, tp, AC50, slope) -> Tuple[float, float, float, float]:
    """(GCA_Eff, IA_Eff, GCA_HQ_10, IA_HQ_10) for one individual."""
    conc, tp, AC50, slope = (np.asarray(v, float) for v in (conc, tp, AC50, slope))
    ok = valid_pairs(conc, tp, AC50, slope)
    if not np.any(ok):
        return (np.nan,) * 4
    conc, tp, AC50, slope = conc[ok], tp[ok], AC50[ok], slope[ok]
    E_max = float(np.max(tp))
    return (
        calc_gca_effect(conc, tp, AC50, slope),
        calc_independent_action(conc, tp, AC50, slope, E_max),
        calc_gca_hq(conc, tp, AC50, slope, E_max),
        calc_ia_hq(conc, tp, AC50, slope, E_max),
    )


# ------------------------------- Hill parameters ----------------------------- #

def _column_or(df: pd.DataFrame, col: str, default: float) -> np.ndarray:
    if col in df.columns:
        return pd.to_numeric(df[col], errors="coerce").to_numpy(float)
    return np.full(len(df), default)


def sample_hill_params(hill_params: pd.DataFrame, n: int, rng: Optional[np.random.Generator],
                       max_mult: float = 1.5, fixed: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """n x chemicals matrices of tp and logAC50, sampled per individual unless fixed."""
    tp = hill_params["tp"].to_numpy(float)
    logAC50 = hill_params["logAC50"].to_numpy(float)
    shape = (n, len(hill_params))
    if fixed:
        return np.broadcast_to(tp, shape).copy(), np.broadcast_to(logAC50, shape).copy()
    if rng is None:
        raise ValueError("A random generator is required when Hill parameters are sampled")

    resp_max = _column_or(hill_params, "resp_max", np.inf)
    tp_upper = np.where(np.isfinite(resp_max) & (resp_max > 0), max_mult * resp_max, np.inf)
    tp_upper = np.maximum(tp_upper, tp)   # keep the point estimate inside the support
    logc_min = _column_or(hill_params, "logc_min", -np.inf)
    logc_max = _column_or(hill_params, "logc_max", np.inf)
    tp_s = rtruncnorm(rng, tp, _column_or(hill_params, "tp_sd", 0.0),
                      lower=0.0, upper=tp_upper, size=shape)
    logAC50_s = rtruncnorm(rng, logAC50, _column_or(hill_params, "logAC50_sd", 0.0),
                           lower=np.minimum(logc_min - 2.0, logAC50),
                           upper=np.maximum(logc_max + 0.5, logAC50), size=shape)
    return tp_s, logAC50_s


def _chemical_columns(C_invitro: pd.DataFrame, hp: pd.DataFrame) -> list:
    if "chem" not in hp.columns:
        if len(hp) == 1 and C_invitro.shape[1] == 1:
            return [C_invitro.columns[0]]
        raise MissingDataError("Hill parameters need a 'chem' column to pair with concentrations")
    chems = hp["chem"].tolist()
    missing = [c for c in chems if c not in C_invitro.columns]
    if missing:
        raise MissingDataError(f"No in vitro concentration for chemicals with Hill parameters: {missing}")
    return chems


def _split_assays(hill_params: pd.DataFrame):
    if len(hill_params) == 0:
        return []
    if "assay" in hill_params.columns:
        return [(a, g.reset_index(drop=True)) for a, g in hill_params.groupby("assay", sort=False)]
    return [(None, hill_params.reset_index(drop=True))]


def _region_response(C_invitro: pd.DataFrame, hill_params: pd.DataFrame, max_mult: float,
                     fixed: bool, rng: Optional[np.random.Generator]) -> pd.DataFrame:
    n = len(C_invitro)
    frames = []
    for assay, hp in _split_assays(hill_params):
        chems = _chemical_columns(C_invitro, hp)
        conc = C_invitro[chems].to_numpy(float)
        tp, logAC50 = sample_hill_params(hp, n, rng, max_mult=max_mult, fixed=fixed)
        slope = np.broadcast_to(_column_or(hp, "slope", 1.0), (n, len(hp)))
        with np.errstate(over="ignore"):
            AC50 = 10.0 ** logAC50
        values = np.array([mixture_metrics(conc[i], tp[i], AC50[i], slope[i])
                           for i in range(n)], dtype=float).reshape(n, len(METRICS))
        frame = pd.DataFrame(values, columns=list(METRICS))
        frame.insert(0, "assay", assay)
        frame.insert(0, "sample", np.arange(n))
        n_undefined = int(np.isnan(frame["GCA_Eff"]).sum())
        if n_undefined:
            logger.warning(f"GCA response undefined for {n_undefined} of {n} individuals"
                           + (f" (assay {assay})" if assay is not None else ""))
        frames.append(frame)
    if not frames:
        logger.warning("No Hill parameters left; mixture response table is empty")
        return pd.DataFrame(columns=RESPONSE_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def calc_concentration_response(C_invitro, hill_params: pd.DataFrame, max_mult: float = 1.5,
                                fixed: bool = False,
                                rng: Optional[np.random.Generator] = None):
    """
    Mixture response for each individual and assay.

    Parameters:
        C_invitro: individuals x chemicals DataFrame, or dict of them keyed by region
        hill_params: Hill parameter table (chem, [assay], tp, tp_sd, logAC50, logAC50_sd, slope, ...)
        max_mult: upper truncation of sampled tops, as a multiple of resp_max
        fixed: use point estimates instead of sampling tp / logAC50 per individual
        rng: random generator (required unless fixed)

    Returns:
        DataFrame (sample, assay, GCA_Eff, IA_Eff, GCA_HQ_10, IA_HQ_10) in
        population sample order, or a dict of them keyed by region.
    """
    if isinstance(C_invitro, Mapping):
        regions = list(C_invitro)
        rngs = rng.spawn(len(regions)) if rng is not None else [None] * len(regions)
        return {r: _region_response(C_invitro[r], hill_params, max_mult, fixed, g)
                for r, g in zip(regions, rngs)}
    return _region_response(C_invitro, hill_params, max_mult, fixed, rng)


def calc_chemical_response(C_invitro, hill_params: pd.DataFrame) -> pd.DataFrame:
    """Per-chemical reference Hill responses at the point estimates (long table)."""
    if isinstance(C_invitro, Mapping):
        frames = []
        for region, df in C_invitro.items():
            out = calc_chemical_response(df, hill_params)
            out.insert(0, "region", region)
            frames.append(out)
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    frames = []
    n = len(C_invitro)
    for assay, hp in _split_assays(hill_params):
        chems = _chemical_columns(C_invitro, hp)
        conc = C_invitro[chems].to_numpy(float)
        tp = hp["tp"].to_numpy(float)
        AC50 = 10.0 ** hp["logAC50"].to_numpy(float)
        slope = _column_or(hp, "slope", 1.0)
        ok = valid_pairs(conc, tp, AC50, slope)
        resp = np.where(ok, hill_conc_response(np.where(ok, conc, 1.0), tp, AC50, slope), np.nan)
        frames.append(pd.DataFrame({
            "sample": np.repeat(np.arange(n), len(chems)),
            "assay": assay,
            "chem": np.tile(chems, n),
            "C_invitro": conc.ravel(),
            "response": resp.ravel(),
        }))
    if not frames:
        return pd.DataFrame(columns=CHEMICAL_RESPONSE_COLUMNS)
    return pd.concat(frames, ignore_index=True)
