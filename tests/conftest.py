import os
import sys

import numpy as np
import pandas as pd
import pytest

# Ensure repo root is on sys.path so flat modules resolve
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


def make_css_table(scale=1.0):
    """C_ss samples for three age bands and both weight categories."""
    rows = []
    for age_min in (0, 20, 50):
        for weight in ("Normal", "Obese"):
            factor = scale * (1.0 + age_min / 100.0) * (1.3 if weight == "Obese" else 1.0)
            rows.append({"age_min": age_min, "weight": weight,
                         "css": np.array([1.0, 2.0, 3.0, 4.0]) * factor})
    return pd.DataFrame(rows)


@pytest.fixture
def simulated_css():
    return {"c1": make_css_table(1.0), "c2": make_css_table(2.5)}


@pytest.fixture
def age_table():
    groups = np.arange(0, 19)
    pop = np.arange(1, 19) * 10.0
    return pd.DataFrame({"AGEGRP": groups, "TOT_POP": np.concatenate([[pop.sum()], pop])})


@pytest.fixture
def exposure_table():
    return pd.DataFrame({"casn": ["c1", "c2"], "mean": [1.0, 2.0], "sd": [0.2, 0.5]})


@pytest.fixture
def hill_params():
    return pd.DataFrame({
        "assay": ["A", "A"],
        "chem": ["c1", "c2"],
        "tp": [50.0, 30.0],
        "tp_sd": [5.0, 3.0],
        "logAC50": [0.5, 1.0],
        "logAC50_sd": [0.2, 0.3],
        "slope": [1.0, 1.0],
        "logc_min": [-2.0, -2.0],
        "logc_max": [3.0, 3.0],
        "resp_max": [50.0, 30.0],
    })
