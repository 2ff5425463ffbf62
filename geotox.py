#!/usr/bin/env python3
"""
geotox.py

Immutable pipeline state for a GeoTox analysis and the stage functions that
advance it:

    state = (GeoTox(par)
             .simulate_population(age=..., obesity=..., exposure=...,
                                  simulated_css=..., n=250)
             .set_hill_params(reliable_hill_params(fit_hill(dose_response,
                                                            chem="casn", assay="endp")))
             .calculate_response()
             .sensitivity_analysis())
    print(state)

Each stage returns a new GeoTox; fields computed from inputs that change are
cleared. Region-level work is mapped with parallel.map_regions.
"""
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import sensitivity_analysis as sa
from config import GeoToxParams
from errors import MissingDataError
from mixture_response import calc_concentration_response
from parallel import map_regions
from population import RegionSample, add_css_medians, simulate_region
from toxicokinetics import calc_internal_dose, calc_invitro_concentration

logger = logging.getLogger(__name__)

SIMULATED_FIELDS = ("age", "IR", "obesity", "C_ext", "C_ss")
COMPUTED_FIELDS = ("D_int", "C_invitro", "resp", "sensitivity")
OTHER_FIELDS = ("exposure", "simulated_css", "hill_params")

# stage identifiers mixed into the seed so stages draw independent streams
_POPULATION_STREAM = 0
_RESPONSE_STREAM = 1


@dataclass(frozen=True, eq=False)
class GeoTox:
    par: GeoToxParams = field(default_factory=GeoToxParams)
    exposure: Optional[Dict[str, pd.DataFrame]] = None
    simulated_css: Optional[Dict[str, pd.DataFrame]] = None
    age: Optional[Dict[str, np.ndarray]] = None
    IR: Optional[Dict[str, np.ndarray]] = None
    obesity: Optional[Dict[str, np.ndarray]] = None
    C_ext: Optional[Dict[str, pd.DataFrame]] = None
    C_ss: Optional[Dict[str, pd.DataFrame]] = None
    hill_params: Optional[pd.DataFrame] = None
    D_int: Optional[Dict[str, pd.DataFrame]] = None
    C_invitro: Optional[Dict[str, pd.DataFrame]] = None
    resp: Optional[Dict[str, pd.DataFrame]] = None
    sensitivity: Optional[sa.SensitivityResult] = None

    # chained stage methods
    def simulate_population(self, **kwargs) -> "GeoTox":
        return simulate_population(self, **kwargs)

    def set_hill_params(self, hill_params: pd.DataFrame) -> "GeoTox":
        return set_hill_params(self, hill_params)

    def calculate_response(self, **kwargs) -> "GeoTox":
        return calculate_response(self, **kwargs)

    def sensitivity_analysis(self, **kwargs) -> "GeoTox":
        return sensitivity_analysis(self, **kwargs)

    @property
    def regions(self) -> List[str]:
        for name in SIMULATED_FIELDS + ("resp",):
            value = getattr(self, name)
            if value:
                return list(value)
        return []

    def region_samples(self) -> Dict[str, RegionSample]:
        return {r: RegionSample(**{name: (getattr(self, name) or {}).get(r)
                                   for name in SIMULATED_FIELDS})
                for r in self.regions}

    def summary(self) -> str:
        return format_summary(self)

    def __str__(self) -> str:
        return self.summary()


def _seed_sequence(seed: Optional[int], stream: int) -> np.random.SeedSequence:
    if seed is None:
        return np.random.SeedSequence()
    return np.random.SeedSequence([int(seed), stream])


# ------------------------------- Population --------------------------------- #

def _simulate_worker(region: str, payload: Tuple, n: int, IR_params, exposure_columns,
                     simulated_css) -> RegionSample:
    seed_seq, age_table, obesity_stats, exposure_table = payload
    rng = np.random.default_rng(seed_seq)
    return simulate_region(n, rng, age_table=age_table, obesity_stats=obesity_stats,
                           exposure_table=exposure_table, simulated_css=simulated_css,
                           IR_params=IR_params, exposure_columns=exposure_columns)


def _obesity_by_region(obesity: pd.DataFrame, par: GeoToxParams) -> Dict[str, Tuple[float, float]]:
    cols = par.obesity
    for col in (cols.label, cols.prev, cols.sd):
        if col not in obesity.columns:
            raise MissingDataError(f"Obesity table is missing column '{col}'")
    return {str(r): (float(p), float(s))
            for r, p, s in zip(obesity[cols.label], obesity[cols.prev], obesity[cols.sd])}


def simulate_population(state: GeoTox, age: Optional[Mapping[str, pd.DataFrame]] = None,
                        obesity: Optional[pd.DataFrame] = None,
                        exposure: Optional[Mapping[str, pd.DataFrame]] = None,
                        simulated_css: Optional[Mapping[str, pd.DataFrame]] = None,
                        n: Optional[int] = None, seed: Optional[int] = None) -> GeoTox:
    """Simulate the population sample matrix of every region."""
    par = replace(state.par, n=int(n)) if n is not None else state.par
    seed = par.seed if seed is None else seed
    obesity_stats = _obesity_by_region(obesity, par) if obesity is not None else None

    if age is not None:
        regions = [str(r) for r in age]
    elif exposure is not None:
        regions = [str(r) for r in exposure]
    elif obesity_stats is not None:
        regions = list(obesity_stats)
    else:
        raise MissingDataError("simulate_population needs age, obesity or exposure data")

    age = {str(k): v for k, v in age.items()} if age is not None else None
    exposure = {str(k): v for k, v in exposure.items()} if exposure is not None else None
    for name, table in (("obesity", obesity_stats), ("exposure", exposure)):
        if table is not None:
            missing = [r for r in regions if r not in table]
            if missing:
                raise MissingDataError(f"No {name} data for regions: {missing}")
    css = add_css_medians(simulated_css) if simulated_css is not None else None

    children = _seed_sequence(seed, _POPULATION_STREAM).spawn(len(regions))
    items = {r: (children[i],
                 age.get(r) if age is not None else None,
                 obesity_stats.get(r) if obesity_stats is not None else None,
                 exposure.get(r) if exposure is not None else None)
             for i, r in enumerate(regions)}
    worker = partial(_simulate_worker, n=par.n, IR_params=par.ir_table(),
                     exposure_columns=par.exposure, simulated_css=css)
    logger.info(f"Simulating {par.n} individuals in each of {len(regions)} region(s)")
    samples = map_regions(worker, items, max_workers=par.max_workers)

    def collect(name):
        values = {r: getattr(s, name) for r, s in samples.items()}
        return values if any(v is not None for v in values.values()) else None

    return replace(state, par=par,
                   exposure=exposure if exposure is not None else state.exposure,
                   simulated_css=css if css is not None else state.simulated_css,
                   age=collect("age"), IR=collect("IR"), obesity=collect("obesity"),
                   C_ext=collect("C_ext"), C_ss=collect("C_ss"),
                   D_int=None, C_invitro=None, resp=None, sensitivity=None)


# ------------------------------- Hill / response ---------------------------- #

def set_hill_params(state: GeoTox, hill_params: pd.DataFrame) -> GeoTox:
    """Attach a Hill parameter table (e.g. from hill_fit.fit_hill)."""
    missing = [c for c in ("tp", "logAC50") if c not in hill_params.columns]
    if missing:
        raise MissingDataError(f"Hill parameter table is missing columns: {missing}")
    if len(hill_params) == 0:
        logger.warning("Hill parameter table is empty; no chemical will contribute")
    return replace(state, hill_params=hill_params.reset_index(drop=True),
                   resp=None, sensitivity=None)


def _response_worker(region: str, payload: Tuple, hill_params: pd.DataFrame,
                     max_mult: float) -> pd.DataFrame:
    C_invitro, seed_seq = payload
    rng = np.random.default_rng(seed_seq)
    return calc_concentration_response(C_invitro, hill_params, max_mult=max_mult,
                                       fixed=False, rng=rng)


def calculate_response(state: GeoTox, seed: Optional[int] = None) -> GeoTox:
    """Internal dose, in vitro concentration and mixture response for every region."""
    for name in ("C_ext", "IR", "C_ss", "hill_params"):
        if getattr(state, name) is None:
            raise MissingDataError(f"calculate_response needs '{name}'; run the earlier stages first")
    par = state.par
    dose = par.internal_dose
    D_int = calc_internal_dose(state.C_ext, state.IR, time=dose.time, BW=dose.BW,
                               scaling=dose.scaling)
    C_invitro = calc_invitro_concentration(D_int, state.C_ss)

    seed = par.seed if seed is None else seed
    children = _seed_sequence(seed, _RESPONSE_STREAM).spawn(len(C_invitro))
    items = {r: (C_invitro[r], children[i]) for i, r in enumerate(C_invitro)}
    worker = partial(_response_worker, hill_params=state.hill_params,
                     max_mult=par.resp.max_mult)
    logger.info(f"Calculating mixture response for {len(items)} region(s)")
    resp = map_regions(worker, items, max_workers=par.max_workers)
    return replace(state, D_int=D_int, C_invitro=C_invitro, resp=resp, sensitivity=None)


def sensitivity_analysis(state: GeoTox, factors: Sequence[str] = sa.FACTORS,
                         metric: str = sa.DEFAULT_METRIC,
                         seed: Optional[int] = None) -> GeoTox:
    """One-at-a-time sensitivity analysis of the mixture response."""
    if state.hill_params is None:
        raise MissingDataError("sensitivity_analysis needs Hill parameters")
    if state.C_ext is None:
        raise MissingDataError("sensitivity_analysis needs a simulated population")
    result = sa.sensitivity_analysis(state.region_samples(), state.hill_params,
                                     state.simulated_css, state.par,
                                     exposure=state.exposure, factors=factors,
                                     metric=metric, seed=seed)
    return replace(state, sensitivity=result)


# ------------------------------- Summary ------------------------------------- #

def _shape(value) -> str:
    if isinstance(value, pd.DataFrame):
        return f"{value.shape[0]} x {value.shape[1]}"
    if isinstance(value, np.ndarray):
        return " x ".join(str(d) for d in value.shape)
    if isinstance(value, sa.SensitivityResult):
        return f"{len(value.factors)} factors x {len(value.baseline)} regions"
    return str(len(value)) if hasattr(value, "__len__") else ""


def _field_row(name: str, value) -> Optional[Dict[str, str]]:
    if value is None:
        return None
    if isinstance(value, dict):
        first = next(iter(value.values()), None)
        inner = type(first).__name__ if first is not None else ""
        return {"Name": name, "Class": f"dict({inner})",
                "Dim": f"{len(value)} x ({_shape(first) if first is not None else ''})"}
    return {"Name": name, "Class": type(value).__name__, "Dim": _shape(value)}


def _field_table(state: GeoTox, names: Sequence[str]) -> Optional[str]:
    rows = [r for r in (_field_row(n, getattr(state, n)) for n in names) if r is not None]
    if not rows:
        return None
    return pd.DataFrame(rows).to_string(index=False)


def format_summary(state: GeoTox) -> str:
    hp = state.hill_params
    if hp is None:
        n_assays = n_chems = 0
    else:
        n_assays = hp["assay"].nunique() if "assay" in hp.columns else 1
        n_chems = hp["chem"].nunique() if "chem" in hp.columns else 1
    lines = ["GeoTox object",
             f"Assays: {n_assays}",
             f"Chemicals: {n_chems}",
             f"Regions: {len(state.regions)}",
             f"Population: {state.par.n}"]
    for title, names in (("Data Fields", SIMULATED_FIELDS), ("Computed Fields", COMPUTED_FIELDS)):
        table = _field_table(state, names)
        lines.append(f"{title}:" + (f"\n{table}" if table else " None"))
    other = [n for n in OTHER_FIELDS if getattr(state, n) is not None]
    lines.append("Other Fields: " + (", ".join(other) if other else "None"))
    return "\n".join(lines)
