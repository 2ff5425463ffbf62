import numpy as np
import pandas as pd
import pytest

from sensitivity_analysis import SensitivityResult
from summary_tables import flatten_regions, hill_params_table, resp_quantiles, sensitivity_table


@pytest.fixture
def resp():
    def region(offset):
        return pd.DataFrame({
            "sample": list(range(5)) * 2,
            "assay": ["A"] * 5 + ["B"] * 5,
            "GCA_Eff": np.r_[np.arange(1.0, 6.0), np.arange(10.0, 60.0, 10.0)] + offset,
            "IA_Eff": np.nan,
            "GCA_HQ_10": np.nan,
            "IA_HQ_10": np.nan,
        })
    return {"r1": region(0.0), "r2": region(1.0)}


def test_flatten_regions(resp):
    flat = flatten_regions(resp)
    assert flat.columns[0] == "region"
    assert len(flat) == 20
    assert flat["region"].tolist()[:1] + flat["region"].tolist()[-1:] == ["r1", "r2"]
    assert list(flatten_regions({}).columns) == ["region"]


def test_resp_quantiles_per_assay(resp):
    out = resp_quantiles(resp)
    r1 = out[out["region"] == "r1"].set_index("assay")
    assert r1.loc["A", "value"] == pytest.approx(3.0)
    assert r1.loc["B", "value"] == pytest.approx(30.0)
    assert set(out["assay_quantile"]) == {"Median"}

    only_a = resp_quantiles(resp, assays=["A"], assay_quantiles={"Max": 1.0})
    assert only_a["value"].tolist() == [5.0, 6.0]


def test_resp_quantiles_assay_summary(resp):
    out = resp_quantiles(resp, assay_summary=True)
    r1 = out[out["region"] == "r1"].iloc[0]
    assert r1["summary_quantile"] == "10th percentile"
    assert r1["value"] == pytest.approx(3.0 + 0.1 * 27.0)


def test_resp_quantiles_all_nan_and_bad_metric(resp):
    out = resp_quantiles(resp, metric="IA_Eff")
    assert out["value"].isna().all()
    with pytest.raises(ValueError):
        resp_quantiles(resp, metric="nope")


def test_hill_params_table_orders_columns(hill_params):
    shuffled = hill_params.iloc[::-1][["tp", "chem", "assay", "logAC50"]]
    out = hill_params_table(shuffled)
    assert list(out.columns) == ["assay", "chem", "tp", "logAC50"]
    assert out["chem"].tolist() == ["c1", "c2"]


def test_sensitivity_table_pivot():
    scores = pd.DataFrame({
        "region": ["r1", "r1"], "factor": ["C_ext", "age"], "assay": ["A", "A"],
        "variance_share": [0.75, 0.25], "status": ["ok", "ok"],
    })
    result = SensitivityResult(metric="GCA_Eff", factors=("age", "C_ext"), scores=scores)
    wide = sensitivity_table(result, value="variance_share")
    assert list(wide.columns) == ["region", "assay", "age", "C_ext"]
    assert wide.loc[0, "C_ext"] == pytest.approx(0.75)
    assert len(sensitivity_table(result)) == 2
    with pytest.raises(KeyError):
        sensitivity_table(result, value="missing")
