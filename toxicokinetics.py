#!/usr/bin/env python3
"""
toxicokinetics.py
Transparent dose converters between external exposure and assay concentration.

  • internal dose:   D_int = C_ext * IR * time / BW * scaling
  • in vitro conc.:  C_invitro = D_int * C_ss

C_ss is the steady-state plasma concentration per unit dose produced by an
external toxicokinetic simulator (e.g. httk's 3-compartment steady-state
model); it is consumed here as precomputed samples.

Inputs may be scalars, numpy arrays, pandas DataFrames (individuals x
chemicals, labels preserved) or dicts of those keyed by region. Shapes are
checked explicitly; incompatible matrices are never broadcast or truncated.
"""
import logging
from typing import Any, Dict, Mapping, Union

import numpy as np
import pandas as pd

from errors import DimensionMismatchError, MissingDataError

logger = logging.getLogger(__name__)

ArrayLike = Union[float, np.ndarray, pd.DataFrame, pd.Series]


def _as_individual_factor(value, shape: tuple, name: str) -> np.ndarray:
    """Shape a per-individual (or per individual x chemical) factor against C_ext."""
    v = np.asarray(value, float)
    if v.ndim == 0:
        return v
    if len(shape) == 0:
        raise DimensionMismatchError(
            f"{name} has shape {v.shape} but C_ext is a scalar")
    if len(shape) == 1:
        if v.shape != shape:
            raise DimensionMismatchError(
                f"{name} has shape {v.shape}, expected {shape} to match C_ext")
        return v
    n_ind, n_chem = shape
    if v.ndim == 1:
        if v.shape[0] != n_ind:
            raise DimensionMismatchError(
                f"{name} has {v.shape[0]} entries but C_ext has {n_ind} individuals")
        return v[:, None]
    if v.ndim == 2:
        if v.shape == (n_ind, 1):
            return v
        if v.shape != shape:
            raise DimensionMismatchError(
                f"{name} is {v.shape[0]} x {v.shape[1]} but C_ext is {n_ind} x {n_chem} "
                "(individuals x chemicals)")
        return v
    raise DimensionMismatchError(f"{name} has unsupported dimension {v.ndim}")


def _internal_dose(C_ext: ArrayLike, IR: ArrayLike, time, BW, scaling):
    c = np.asarray(C_ext, float)
    if c.ndim > 2:
        raise DimensionMismatchError(f"C_ext has unsupported dimension {c.ndim}")
    ir = _as_individual_factor(IR, c.shape, "IR")
    bw = _as_individual_factor(BW, c.shape, "BW")
    t = _as_individual_factor(time, c.shape, "time")
    with np.errstate(divide="ignore", invalid="ignore"):
        dose = c * ir * t / bw * float(scaling)
    if isinstance(C_ext, pd.DataFrame):
        return pd.DataFrame(dose, index=C_ext.index, columns=C_ext.columns)
    if isinstance(C_ext, pd.Series):
        return pd.Series(dose, index=C_ext.index, name=C_ext.name)
    return dose if dose.ndim else float(dose)


def calc_internal_dose(C_ext, IR, time=1.0, BW=1.0, scaling=1.0):
    """
    Internal dose D_int = C_ext * IR * time / BW * scaling.

    Args:
        C_ext: external concentration, scalar / vector / individuals x chemicals,
            or a dict of those keyed by region
        IR: inhalation rate, scalar / per-individual vector / matrix matching
            C_ext, or a dict keyed like C_ext. A 1-D IR is always read as one
            value per individual (row of C_ext), never per chemical; pass a
            full individuals x chemicals matrix for per-chemical rates.
        time, BW, scaling: exposure time, body weight and unit scaling

    Returns:
        Same container type as C_ext.

    Raises:
        DimensionMismatchError: IR (or BW/time) cannot be paired with C_ext.
    """
    if isinstance(C_ext, Mapping):
        if isinstance(IR, Mapping):
            missing = set(C_ext) - set(IR)
            if missing:
                raise MissingDataError(f"No inhalation rate for regions: {sorted(missing)}")
            return {r: _internal_dose(C_ext[r], IR[r], time, BW, scaling) for r in C_ext}
        return {r: _internal_dose(C_ext[r], IR, time, BW, scaling) for r in C_ext}
    if isinstance(IR, Mapping):
        raise DimensionMismatchError("IR is keyed by region but C_ext is a single matrix")
    return _internal_dose(C_ext, IR, time, BW, scaling)


def _invitro(D_int: ArrayLike, C_ss: ArrayLike):
    if isinstance(D_int, pd.DataFrame) and isinstance(C_ss, pd.DataFrame):
        missing = [c for c in D_int.columns if c not in C_ss.columns]
        if missing:
            raise MissingDataError(f"No C_ss values for chemicals: {missing}")
        if len(C_ss) != len(D_int):
            raise DimensionMismatchError(
                f"C_ss has {len(C_ss)} individuals but D_int has {len(D_int)}")
        css = C_ss[list(D_int.columns)].to_numpy(float)
        return pd.DataFrame(D_int.to_numpy(float) * css,
                            index=D_int.index, columns=D_int.columns)
    d = np.asarray(D_int, float)
    css = np.asarray(C_ss, float)
    if css.ndim and css.shape != d.shape:
        raise DimensionMismatchError(
            f"C_ss has shape {css.shape} but D_int has shape {d.shape}")
    out = d * css
    if isinstance(D_int, pd.DataFrame):
        return pd.DataFrame(out, index=D_int.index, columns=D_int.columns)
    return out if out.ndim else float(out)


def calc_invitro_concentration(D_int, C_ss) -> Any:
    """In vitro equivalent concentration C_invitro = D_int * C_ss, paired per individual and chemical."""
    if isinstance(D_int, Mapping):
        if not isinstance(C_ss, Mapping):
            raise DimensionMismatchError("D_int is keyed by region but C_ss is not")
        missing = set(D_int) - set(C_ss)
        if missing:
            raise MissingDataError(f"No C_ss samples for regions: {sorted(missing)}")
        return {r: _invitro(D_int[r], C_ss[r]) for r in D_int}
    return _invitro(D_int, C_ss)


def calc_region_concentrations(C_ext: Mapping[str, pd.DataFrame], IR: Mapping[str, np.ndarray],
                               C_ss: Mapping[str, pd.DataFrame], time=1.0, BW=1.0,
                               scaling=1.0) -> Dict[str, Dict[str, pd.DataFrame]]:
    """D_int and C_invitro for every region in one call."""
    D_int = calc_internal_dose(C_ext, IR, time=time, BW=BW, scaling=scaling)
    C_invitro = calc_invitro_concentration(D_int, C_ss)
    logger.debug(f"Computed internal dose and in vitro concentration for {len(D_int)} region(s)")
    return {"D_int": D_int, "C_invitro": C_invitro}
