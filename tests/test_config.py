import pytest

from pixiesort.config import CrateConfig, SortConfig, load_config, preset


def _crate(rates):
    return CrateConfig("raw/", "data", tuple(rates), (15,) * len(rates))


def test_module_path_format():
    crate = _crate([100, 100, 100, 100])
    assert crate.module_path(7, 3) == "raw/0007/data_R0007_M03.bin"


def test_module_path_rejects_unknown_module():
    with pytest.raises(IndexError):
        _crate([100]).module_path(1, 1)


def test_active_modules_skip_zero_rate():
    crate = CrateConfig("raw/", "data", (100, 0, 250, 500), (15, 15, 17, 13))
    assert crate.active_modules() == [(0, 100, 15), (2, 250, 17), (3, 500, 13)]


def test_crate_length_mismatch():
    with pytest.raises(ValueError):
        CrateConfig("raw/", "data", (100, 100), (15,))


def test_empty_crate_rejected():
    with pytest.raises(ValueError):
        CrateConfig("raw/", "data", (), ())


def test_output_path_with_waveform():
    config = SortConfig("out/", "data", (_crate([100]), _crate([250])), waveform=True)
    path = config.output_path([12, 34])
    assert path.startswith("out/data_C2_0012_0034_wave")
    assert path.endswith(config.suffix)


def test_output_path_without_waveform():
    config = SortConfig("out/", "data", (_crate([100]),), waveform=False)
    assert config.output_path([5]) == "out/data_C1_0005" + config.suffix


def test_output_path_run_count_must_match():
    config = SortConfig("out/", "data", (_crate([100]),))
    with pytest.raises(ValueError):
        config.output_path([1, 2])


@pytest.mark.parametrize("fraction", [0.0, 1.5, -0.1])
def test_process_fraction_range(fraction):
    with pytest.raises(ValueError):
        SortConfig("out/", "data", (_crate([100]),), process_fraction=fraction)


def test_too_many_crates():
    with pytest.raises(ValueError):
        SortConfig("out/", "data", tuple(_crate([100]) for _ in range(5)))


def test_no_crates():
    with pytest.raises(ValueError):
        SortConfig("out/", "data", ())


def test_preset_ge():
    config = preset("ge")
    assert config.waveform is False
    assert config.crates[0].sampling_rates == (250, 250, 250, 250)
    assert config.crates[0].revisions == (15, 15, 15, 15)


def test_preset_c2_has_two_crates():
    config = preset("c2")
    assert [len(c.sampling_rates) for c in config.crates] == [4, 9]
    assert config.crates[1].sampling_rates == (100,) * 7 + (250, 250)
    assert config.time_buffer == 1000000000
    assert config.process_fraction == 0.9


def test_preset_csi_modules():
    assert preset("csi").crates[0].sampling_rates == (100,) * 6 + (250, 250)


def test_unknown_preset():
    with pytest.raises(ValueError):
        preset("nothing")


def test_load_config_round_trip(tmp_path):
    text = """
root_path = "out/"
root_name = "run"
waveform = false
qdc_sum = true
process_fraction = 0.5

[[crate]]
raw_path = "a/"
raw_name = "data"
sampling_rates = [100, 0, 250]
revisions = [15, 15, 17]

[[crate]]
raw_path = "b/"
sampling_rates = [500]
"""
    path = tmp_path / "setup.toml"
    path.write_text(text)
    config = load_config(path)
    assert config.root_name == "run"
    assert config.waveform is False
    assert config.qdc_sum is True
    assert config.process_fraction == 0.5
    assert config.crates[0].active_modules() == [(0, 100, 15), (2, 250, 17)]
    assert config.crates[1].revisions == (15,)
    assert config.crates[1].module_path(3, 0) == "b/0003/data_R0003_M00.bin"


def test_load_config_without_crates(tmp_path):
    path = tmp_path / "empty.toml"
    path.write_text('root_path = "out/"\n')
    with pytest.raises(ValueError):
        load_config(path)


def test_load_config_crate_without_rates(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('[[crate]]\nraw_path = "a/"\n')
    with pytest.raises(ValueError):
        load_config(path)