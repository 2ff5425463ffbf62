"""
config.py
Run parameters for a GeoTox analysis.

Defaults mirror external/geotox.yml. Column-name blocks describe the input
tables handed over by the data-acquisition collaborators.
"""
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
import yaml

from demographics import default_ir_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObesityColumns:
    prev: str = "OBESITY_CrudePrev"   # prevalence, percent
    sd: str = "OBESITY_SD"
    label: str = "FIPS"               # region identifier


@dataclass(frozen=True)
class ExposureColumns:
    mean: str = "mean"
    sd: str = "sd"
    label: str = "casn"               # chemical identifier


@dataclass(frozen=True)
class InternalDoseParams:
    time: float = 1.0
    BW: float = 1.0                   # IR is already per kg body weight
    scaling: float = 1.0


@dataclass(frozen=True)
class ResponseParams:
    max_mult: float = 1.5             # tp draws truncated at max_mult * resp_max


@dataclass(frozen=True)
class GeoToxParams:
    n: int = 1000
    seed: Optional[int] = None
    max_workers: int = 1
    IR_params: Optional[pd.DataFrame] = None
    obesity: ObesityColumns = field(default_factory=ObesityColumns)
    exposure: ExposureColumns = field(default_factory=ExposureColumns)
    internal_dose: InternalDoseParams = field(default_factory=InternalDoseParams)
    resp: ResponseParams = field(default_factory=ResponseParams)

    def ir_table(self) -> pd.DataFrame:
        return self.IR_params if self.IR_params is not None else default_ir_params()


_SECTIONS = {
    "obesity": ObesityColumns,
    "exposure": ExposureColumns,
    "internal_dose": InternalDoseParams,
    "resp": ResponseParams,
}


def _build_section(cls, raw: Optional[Dict[str, Any]], name: str):
    raw = raw or {}
    allowed = {f.name for f in fields(cls)}
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' section: {sorted(unknown)}")
    return cls(**raw)


def params_from_dict(raw: Dict[str, Any]) -> GeoToxParams:
    """Build GeoToxParams from a (YAML-decoded) mapping."""
    raw = dict(raw or {})
    top_level = {f.name for f in fields(GeoToxParams)}
    unknown = set(raw) - top_level
    if unknown:
        raise ValueError(f"Unknown GeoTox parameter keys: {sorted(unknown)}")

    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _SECTIONS:
            kwargs[key] = _build_section(_SECTIONS[key], value, key)
        elif key == "IR_params" and value is not None:
            ir = pd.DataFrame(value)
            missing = {"age", "mean", "sd"} - set(ir.columns)
            if missing:
                raise ValueError(f"IR_params missing columns: {sorted(missing)}")
            kwargs[key] = ir.sort_values("age").reset_index(drop=True)
        else:
            kwargs[key] = value
    if "n" in kwargs:
        kwargs["n"] = int(kwargs["n"])
        if kwargs["n"] < 1:
            raise ValueError("Population size 'n' must be positive")
    return GeoToxParams(**kwargs)


def load_params(path: Union[str, Path]) -> GeoToxParams:
    """Load GeoToxParams from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Parameter file not found: {path}")
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Parameter file {path} must contain a mapping")
    logger.info(f"Loaded GeoTox parameters from {path}")
    return params_from_dict(raw.get("geotox", raw))
