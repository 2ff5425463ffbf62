from pathlib import Path

import pytest

from config import GeoToxParams, load_params, params_from_dict

root = Path(__file__).resolve().parent.parent


def test_shipped_defaults():
    params = load_params(root / "external" / "geotox.yml")
    assert params.n == 1000
    assert params.seed == 2357
    assert params.obesity.prev == "OBESITY_CrudePrev"
    assert params.exposure.label == "casn"
    assert params.internal_dose.BW == 1.0
    assert params.resp.max_mult == 1.5
    assert params.IR_params is None
    assert list(params.ir_table().columns) == ["age", "mean", "sd"]


def test_params_from_dict_sections():
    params = params_from_dict({"n": "50", "resp": {"max_mult": 2.0},
                               "IR_params": {"age": [10, 0], "mean": [0.4, 0.5],
                                             "sd": [0.1, 0.1]}})
    assert params.n == 50
    assert params.resp.max_mult == 2.0
    assert params.IR_params["age"].tolist() == [0, 10]
    assert params.exposure == GeoToxParams().exposure


@pytest.mark.parametrize("raw", [{"bogus": 1}, {"resp": {"bogus": 1}}, {"n": 0},
                                 {"IR_params": {"age": [0], "mean": [1.0]}}])
def test_invalid_params(raw):
    with pytest.raises(ValueError):
        params_from_dict(raw)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_params(tmp_path / "nope.yml")


def test_top_level_mapping_without_section(tmp_path):
    fp = tmp_path / "par.yml"
    fp.write_text("n: 25\nseed: 3\n")
    params = load_params(fp)
    assert params.n == 25 and params.seed == 3
