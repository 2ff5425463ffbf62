import numpy as np
import pandas as pd
import pytest

from errors import MissingDataError
from population import (add_css_medians, fixed_css, rtruncnorm, sample_css, simulate_age,
                        simulate_exposure, simulate_inhalation_rate, simulate_obesity,
                        simulate_region)


def test_rtruncnorm_bounds_and_zero_sd():
    rng = np.random.default_rng(1)
    x = rtruncnorm(rng, 1.0, 2.0, lower=0.0, upper=3.0, size=1000)
    assert x.min() >= 0.0 and x.max() <= 3.0
    np.testing.assert_allclose(rtruncnorm(rng, [5.0, -1.0], 0.0, lower=0.0, size=2), [5.0, 0.0])


def test_simulate_age_within_band():
    table = pd.DataFrame({"AGEGRP": [0, 4, 5], "TOT_POP": [100, 0, 100]})
    age = simulate_age(table, 200, np.random.default_rng(3))
    assert age.min() >= 20 and age.max() <= 24


def test_simulate_age_requires_population():
    table = pd.DataFrame({"AGEGRP": [0, 1], "TOT_POP": [0, 0]})
    with pytest.raises(MissingDataError):
        simulate_age(table, 10, np.random.default_rng(0))
    with pytest.raises(ValueError):
        simulate_age(pd.DataFrame({"AGEGRP": [19], "TOT_POP": [10]}), 10,
                     np.random.default_rng(0))


def test_simulate_region_reproducible(age_table, exposure_table, simulated_css):
    a = simulate_region(50, np.random.default_rng(9), age_table=age_table,
                        obesity_stats=(30.0, 5.0), exposure_table=exposure_table,
                        simulated_css=simulated_css)
    b = simulate_region(50, np.random.default_rng(9), age_table=age_table,
                        obesity_stats=(30.0, 5.0), exposure_table=exposure_table,
                        simulated_css=simulated_css)
    np.testing.assert_array_equal(a.age, b.age)
    np.testing.assert_array_equal(a.IR, b.IR)
    pd.testing.assert_frame_equal(a.C_ext, b.C_ext)
    pd.testing.assert_frame_equal(a.C_ss, b.C_ss)
    assert a.C_ext.shape == (50, 2) and list(a.C_ss.columns) == ["c1", "c2"]
    assert np.all(a.IR >= 0) and np.all(a.C_ext.to_numpy() >= 0)
    assert set(a.obesity) <= {"Normal", "Obese"}


def test_inhalation_rate_uses_age_brackets():
    ir = pd.DataFrame({"age": [0, 10], "mean": [1.0, 5.0], "sd": [0.0, 0.0]})
    out = simulate_inhalation_rate(np.array([3, 10, 40]), np.random.default_rng(0), ir)
    np.testing.assert_allclose(out, [1.0, 5.0, 5.0])


def test_obesity_extremes():
    rng = np.random.default_rng(2)
    assert set(simulate_obesity(100.0, 0.0, 20, rng)) == {"Obese"}
    assert set(simulate_obesity(0.0, 0.0, 20, rng)) == {"Normal"}


def test_exposure_duplicate_chemical():
    table = pd.DataFrame({"casn": ["c1", "c1"], "mean": [1.0, 2.0], "sd": [0.1, 0.1]})
    with pytest.raises(ValueError):
        simulate_exposure(table, 5, np.random.default_rng(0))


def test_sample_css_cells_and_missing_chemical(simulated_css):
    age = np.array([5, 25, 70])
    obesity = np.array(["Normal", "Obese", "Normal"])
    out = sample_css(simulated_css, age, obesity, np.random.default_rng(4),
                     chemicals=["c1", "c3"])
    c1 = simulated_css["c1"]
    cell = c1[(c1["age_min"] == 20) & (c1["weight"] == "Obese")]["css"].iloc[0]
    assert out.loc[1, "c1"] in cell
    assert out["c3"].isna().all()


def test_sample_css_missing_cell(simulated_css):
    normal_only = {"c1": simulated_css["c1"].query("weight == 'Normal'")}
    with pytest.raises(MissingDataError):
        sample_css(normal_only, np.array([30]), np.array(["Obese"]), np.random.default_rng(0))


def test_css_medians_and_fixed(simulated_css):
    css = add_css_medians(simulated_css)
    c1 = css["c1"]
    assert {"age_median_css", "weight_median_css"} <= set(c1.columns)
    age = np.array([5, 60])
    obesity = np.array(["Obese", "Normal"])

    pooled = fixed_css(simulated_css, age, obesity, None, ["c1"])
    assert pooled["c1"].nunique() == 1

    by_age = fixed_css(simulated_css, age, obesity, "age", ["c1"])
    young = np.median(np.concatenate(c1.loc[c1["age_min"] == 0, "css"].to_list()))
    assert by_age.loc[0, "c1"] == pytest.approx(young)
