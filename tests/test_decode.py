import struct

import pytest

from pixiesort.config import CrateConfig, SortConfig
from pixiesort.decode import main, run
from pixiesort.eventfile import read_events

RUN = 7


def _event_bytes(ts, sid, ch=0, evte=1000, cid=0, trace=()):
    ltra = len(trace)
    lhead = 4
    levt = lhead + ltra // 2
    w0 = ch | (sid << 4) | (cid << 8) | (lhead << 12) | (levt << 17)
    w1 = ts & 0xFFFFFFFF
    w2 = ts >> 32
    w3 = evte | (ltra << 16)
    return struct.pack("<4I", w0, w1, w2, w3) + struct.pack(f"<{ltra}H", *trace)


def _write_module(tmp_path, module, events, run_number=RUN):
    directory = tmp_path / "raw" / f"{run_number:04d}"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"data_R{run_number:04d}_M{module:02d}.bin"
    path.write_bytes(b"".join(events))
    return path


def _config(tmp_path, rates=(100, 250), waveform=False):
    crate = CrateConfig(
        raw_path=f"{tmp_path}/raw/",
        raw_name="data",
        sampling_rates=rates,
        revisions=(15,) * len(rates),
    )
    out = tmp_path / "out"
    out.mkdir(exist_ok=True)
    return SortConfig(f"{out}/", "sorted", (crate,), waveform=waveform)


def test_run_merges_modules_in_time_order(tmp_path):
    _write_module(tmp_path, 0, [_event_bytes(10, sid=2), _event_bytes(30, sid=2)])
    _write_module(tmp_path, 1, [_event_bytes(20, sid=3)])
    config = _config(tmp_path)
    count = run(config, [RUN], tmp_path)
    assert count == 3
    events = list(read_events(config.output_path([RUN])))
    assert [(e.sid, e.ts) for e in events] == [(2, 10), (3, 20), (2, 30)]
    assert [e.sr for e in events] == [100, 250, 100]


def test_run_applies_crate_settings(tmp_path):
    _write_module(tmp_path, 0, [_event_bytes(10, sid=2)])
    _write_module(tmp_path, 1, [_event_bytes(20, sid=3, evte=400), _event_bytes(40, sid=3)])
    (tmp_path / "crate0.dat").write_text(
        "sid ch ts_offset low high\n2 0 100 0 65535\n3 0 0 500 65535\n"
    )
    config = _config(tmp_path)
    count = run(config, [RUN], tmp_path)
    events = list(read_events(config.output_path([RUN])))
    assert count == 2
    # 100 ns offset on a 100 MHz module is ten ticks.
    assert [(e.sid, e.ts) for e in events] == [(2, 20), (3, 40)]


def test_run_keeps_traces(tmp_path):
    samples = (1, 2, 65535, 7)
    _write_module(tmp_path, 0, [_event_bytes(5, sid=2, trace=samples)])
    config = _config(tmp_path, rates=(100,), waveform=True)
    assert run(config, [RUN], tmp_path) == 1
    (event,) = read_events(config.output_path([RUN]))
    assert list(event.trace) == list(samples)
    assert event.ltra == len(samples)


def test_run_skips_modules_with_zero_rate(tmp_path):
    _write_module(tmp_path, 0, [_event_bytes(10, sid=2)])
    config = _config(tmp_path, rates=(100, 0))
    assert run(config, [RUN], tmp_path) == 1


def test_missing_raw_file_raises(tmp_path):
    _write_module(tmp_path, 0, [_event_bytes(10, sid=2)])
    config = _config(tmp_path)
    with pytest.raises(FileNotFoundError):
        run(config, [RUN], tmp_path)


def test_wrong_number_of_runs_raises(tmp_path):
    config = _config(tmp_path)
    with pytest.raises(ValueError):
        run(config, [RUN, RUN], tmp_path)


def _write_toml(tmp_path):
    out = tmp_path / "out"
    out.mkdir(exist_ok=True)
    path = tmp_path / "sort.toml"
    path.write_text(
        f'root_path = "{out}/"\n'
        'root_name = "sorted"\n'
        "waveform = false\n"
        "[[crate]]\n"
        f'raw_path = "{tmp_path}/raw/"\n'
        "sampling_rates = [100]\n"
    )
    return path


def test_main_writes_sorted_file(tmp_path):
    _write_module(tmp_path, 0, [_event_bytes(30, sid=2), _event_bytes(50, sid=2, ch=1)])
    config_path = _write_toml(tmp_path)
    code = main(["--config", str(config_path), "--settings-dir", str(tmp_path), str(RUN)])
    assert code == 0
    output = tmp_path / "out" / f"sorted_C1_{RUN:04d}.evt"
    assert [(e.ch, e.ts) for e in read_events(output)] == [(0, 30), (1, 50)]


def test_main_rejects_wrong_run_count(tmp_path):
    config_path = _write_toml(tmp_path)
    assert main(["--config", str(config_path), "1", "2"]) == 1


def test_main_reports_missing_data(tmp_path):
    config_path = _write_toml(tmp_path)
    assert main(["--config", str(config_path), "--settings-dir", str(tmp_path), "3"]) == 1