import numpy as np
import pandas as pd
import pytest

from errors import MissingDataError
from hill_fit import fit_hill, hill_conc_response, reliable_hill_params
from mixture_response import (METRICS, calc_chemical_response, calc_concentration_response,
                              calc_gca_effect, calc_gca_hq, calc_ia_hq, calc_independent_action,
                              independent_action, mixture_metrics, sample_hill_params)


def test_independent_action_limits():
    assert independent_action([0.0, 0.0, 0.0]) == 0.0
    assert independent_action([0.2, 0.5]) == pytest.approx(0.6)
    assert independent_action([1.0 - 1e-9, 0.1]) == pytest.approx(1.0, abs=1e-8)
    assert np.isnan(independent_action([np.nan]))


def test_independent_action_monotonic_in_concentration():
    tp, AC50, slope = np.array([1.0, 1.0]), np.array([1.0, 5.0]), np.array([1.0, 2.0])
    values = [calc_independent_action(np.array([c, 2.0]), tp, AC50, slope)
              for c in np.logspace(-3, 3, 25)]
    assert np.all(np.diff(values) >= 0)
    assert 0.0 <= min(values) and max(values) <= 1.0


@pytest.mark.parametrize("slope", [1.0, 2.0, 0.7])
def test_single_chemical_gca_matches_hill(slope):
    conc, tp, AC50 = 2.0, 40.0, 1.0
    expected = hill_conc_response(conc, tp, AC50, slope)
    gca = calc_gca_effect([conc], [tp], [AC50], [slope])
    assert gca == pytest.approx(expected, rel=1e-8)


def test_gca_undefined_for_zero_concentrations():
    assert np.isnan(calc_gca_effect([0.0, 0.0], [50.0, 30.0], [1.0, 1.0], [1.0, 1.0]))
    gca, ia, gca_hq, ia_hq = mixture_metrics([0.0, 0.0], [50.0, 30.0], [1.0, 1.0], [1.0, 1.0])
    assert np.isnan(gca) and np.isnan(ia_hq)
    assert ia == 0.0 and gca_hq == 0.0


def test_gca_bounded_by_top_max():
    gca = calc_gca_effect([1e6, 1e6], [50.0, 30.0], [1.0, 2.0], [1.0, 1.0])
    assert 0.0 < gca <= 50.0


def test_hazard_quotients_single_chemical():
    # both equal 9 * C / AC50 at 10% of the top for slope 1
    conc, tp, AC50 = np.array([0.3]), np.array([40.0]), np.array([2.0])
    slope = np.array([1.0])
    assert calc_gca_hq(conc, tp, AC50, slope, 40.0) == pytest.approx(9 * 0.3 / 2.0)
    assert calc_ia_hq(conc, tp, AC50, slope, 40.0) == pytest.approx(9 * 0.3 / 2.0, rel=1e-6)


def test_invalid_parameters_are_excluded():
    out = mixture_metrics([2.0, 5.0], [40.0, 30.0], [1.0, 0.0], [1.0, 1.0])
    solo = mixture_metrics([2.0], [40.0], [1.0], [1.0])
    np.testing.assert_allclose(out, solo)
    assert all(np.isnan(mixture_metrics([1.0], [40.0], [1.0], [0.0])))


def test_missing_concentration_excluded_not_zero_filled(hill_params):
    C_invitro = pd.DataFrame({"c1": [0.5, 2.0, 4.0], "c2": [1.0, np.nan, 3.0]})
    out = calc_concentration_response(C_invitro, hill_params, fixed=True)
    assert list(out.columns) == ["sample", "assay"] + list(METRICS)
    assert out["sample"].tolist() == [0, 1, 2]

    row = out.iloc[1]
    solo = hill_conc_response(2.0, 50.0, 10.0 ** 0.5, 1.0)
    assert row["IA_Eff"] == pytest.approx(solo)
    assert row["GCA_Eff"] == pytest.approx(solo, rel=1e-8)
    assert out.iloc[0]["IA_Eff"] > hill_conc_response(0.5, 50.0, 10.0 ** 0.5, 1.0)


def test_missing_hill_chemical_column(hill_params):
    with pytest.raises(MissingDataError):
        calc_concentration_response(pd.DataFrame({"c1": [1.0]}), hill_params, fixed=True)


def test_sampled_parameters_respect_bounds(hill_params):
    rng = np.random.default_rng(11)
    tp, logAC50 = sample_hill_params(hill_params, 500, rng, max_mult=1.5)
    assert tp.shape == (500, 2)
    assert np.all(tp >= 0.0)
    assert np.all(tp <= 1.5 * hill_params["resp_max"].to_numpy())
    assert np.all(logAC50 >= -4.0) and np.all(logAC50 <= 3.5)
    with pytest.raises(ValueError):
        sample_hill_params(hill_params, 5, None)


def test_region_dict_response_is_reproducible(hill_params):
    C = {"r1": pd.DataFrame({"c1": [0.5, 1.0], "c2": [1.0, 2.0]}),
         "r2": pd.DataFrame({"c1": [3.0], "c2": [0.1]})}
    a = calc_concentration_response(C, hill_params, rng=np.random.default_rng(5))
    b = calc_concentration_response(C, hill_params, rng=np.random.default_rng(5))
    assert list(a) == ["r1", "r2"]
    for r in a:
        pd.testing.assert_frame_equal(a[r], b[r])


def test_chemical_response_long_table(hill_params):
    C = pd.DataFrame({"c1": [0.0, 10.0 ** 0.5], "c2": [10.0, np.nan]})
    out = calc_chemical_response(C, hill_params)
    assert len(out) == 4
    assert out.loc[(out["sample"] == 1) & (out["chem"] == "c1"), "response"].item() == pytest.approx(25.0)
    assert out.loc[(out["sample"] == 0) & (out["chem"] == "c2"), "response"].item() == pytest.approx(15.0)
    assert np.isnan(out.loc[(out["sample"] == 1) & (out["chem"] == "c2"), "response"].item())


def test_no_reliable_fits_gives_empty_response():
    zeros = pd.DataFrame({"casn": "c1", "endp": "A", "logc": np.linspace(-1.0, 2.0, 6),
                          "resp": np.zeros(6)})
    hp = reliable_hill_params(fit_hill(zeros, chem="casn", assay="endp"))
    assert len(hp) == 0
    C = pd.DataFrame({"c1": [1.0, 2.0]})
    out = calc_concentration_response(C, hp, fixed=True)
    assert len(out) == 0
    assert list(out.columns) == ["sample", "assay"] + list(METRICS)
    assert len(calc_chemical_response(C, hp)) == 0
