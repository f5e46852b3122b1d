# pixiesort

Tools for list-mode data recorded with Pixie-16 digitizer crates:

- decode the raw per-module binary files,
- merge the events of every module and crate into one stream ordered by
  time, applying per-channel time offsets and energy windows,
- histogram the time differences between detector channels and a reference
  germanium channel, and fit the peaks into an offset table.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Command-line use

Three commands are installed. Run any of them with `--help` for the full
list of arguments.

### pixiesort-decode

Decodes one run per configured crate and writes the time-sorted events to a
single output file. It takes one run number for each crate:

```
pixiesort-decode 33
pixiesort-decode --preset c2 33 33
pixiesort-decode --config setup.toml --settings-dir tables 33
```

- `--preset NAME` picks a built-in setup: `default`, `c2`, `csi` or `ge`
  (`default` when nothing is given).
- `--config FILE` reads the setup from a TOML file instead.
- `--settings-dir DIR` is where the per-crate tables `crate0.dat`,
  `crate1.dat`, ... are looked for (default: the current directory). A
  missing table is reported and every channel of that crate keeps a zero
  offset and the full energy range 0..65535.

A raw module file that is missing, or a malformed event, stops the run with
an error message and exit status 1.

### pixiesort-offsets

Reads a sorted run, collects the timestamps (in ns) of each channel after an
energy cut (crate 0: energy ≥ 100, crate 1: energy ≥ 1000) and fills
time-difference histograms of the germanium channels (crate 0, slots 2–5)
and CsI channels (crate 1, slots 2–8) against the reference channel
(crate 0, slot 2, channel 5):

```
pixiesort-offsets 33
```

- `--input FILE`: the sorted event file (default: the output name of the
  `c2` preset for that run).
- `--output FILE`: where the histograms go (default:
  `ts_result/dataNNNN_ts.npz`).
- `--window NS`: the coincidence window, 1500 ns by default.

### pixiesort-fit-offsets

Fits a Gaussian around the highest bin of every germanium histogram in a
histogram file and writes the offset table:

```
pixiesort-fit-offsets ts_result/data0033_ts.npz --output ts.offset --half-width 100
```

The table has a header line and one line per channel: slot, channel, offset
in ns, low and high energy limit (0 and 65535). Channels with an empty
histogram get a zero offset. The table has the layout that
`pixiesort-decode` reads as `crate<N>.dat`.

## Configuration files

A TOML file for `--config` / `load_config` looks like this:

```toml
root_path = "sorted/"
root_name = "data"
waveform = true
energy_sum = false
qdc_sum = false
external_ts = false
time_buffer = 1000000000     # ns
process_fraction = 0.9       # (0, 1]
suffix = ".evt"

[[crate]]
raw_path = "Ge_ExpData/"
raw_name = "data"
sampling_rates = [250, 250, 250, 250]
revisions = [15, 15, 15, 15]   # optional, 15 by default
```

Raw files are expected at `<raw_path><run:04d>/<raw_name>_R<run:04d>_M<module:02d>.bin`.
Modules whose sampling rate is not 100, 125, 250 or 500 are skipped. The
output is named `<root_path><root_name>_C<crates>_<run:04d>..._wave<suffix>`,
without `_wave` when waveforms are off. Up to 4 crates and 104 modules are
accepted.

## Library use

### Configuration

`pixiesort.config` holds `SortConfig` and `CrateConfig`.
`preset(name)` returns a built-in setup, `load_config(path)` reads a TOML
file. `CrateConfig.module_path(run, module)` gives the raw file of a module,
`CrateConfig.active_modules()` the `(module, sampling_rate, revision)` of
the modules that are read, and `SortConfig.output_path(runs)` the name of
the sorted output.

### Decoding

```python
from pixiesort.decoder import open_decoder

with open_decoder("data_R0033_M00.bin", sampling_rate=250, revision=15) as decoder:
    for event in decoder:
        print(event.sid, event.ch, event.ts, event.evte)
```

`Decoder` reads from any binary stream and yields `Event` records with
channel, slot and crate ids, pile-up and out-of-range flags, timestamp, CFD
values, energy and trace length; with `waveform`, `energy_sum`, `qdc_sum`
and `external_ts` enabled it also keeps the trace, energy sums, QDC sums and
external timestamp. Revisions 17 and later use the wider channel field.
Truncated data, an unknown header length or a trace longer than 100000
samples raise `DecodeError`.

### Sorting

`pixiesort.sorter.Sorter` takes one `Source` per module (its events and
crate index) together with `ChannelSettings` per crate, read by
`read_crate_settings(path)`, and yields events in increasing order of
`sort_key` (time in ns, then crate, slot and channel). Each event's
timestamp is shifted by its channel offset; events outside the channel's
energy window are dropped, and of two events with the same key only the
first is kept. Events are admitted `time_buffer` ns at a time and the
earliest `process_fraction` of buffered events are released after each
step. `timestamp_ns(ts, sampling_rate)` converts clock ticks to ns (8 ns at
125 and 250 MHz, 10 ns otherwise). `ieee_float_to_decimal(word)` reads a
32-bit word as a single-precision float.

`pixiesort.decode.run(config, runs, settings_dir)` does the whole job from
configuration to output file and returns the number of events written.

### Output files

`pixiesort.eventfile.EventWriter` writes events to a compact binary file
holding only the columns that were enabled; `read_events(path)` yields them
back.

### Time offsets

```python
from pixiesort.eventfile import read_events
from pixiesort.offsets import OffsetAnalysis
from pixiesort.fitting import fit_offsets, write_offset_table

analysis = OffsetAnalysis(read_events("sorted.evt"), window=1500)
histograms = analysis.ge_vs_ge()
write_offset_table("ts.offset", fit_offsets(histograms, half_width=100))
```

`OffsetAnalysis` also has `csi_vs_ge()` and `labr3_vs_ge()` (crate 1,
slot 8). `OffsetAnalysis.save(path)` stores the histograms and
`load_histograms(path)` loads them again. `Histogram`,
`collect_timestamps`, `fill_time_differences` and `channel_key` are the
building blocks. `fit_peak(histogram, half_width)` fits a single peak with
`gaussian` and returns amplitude, mean, sigma and chi-square.

## What this package does not do

- Sorted events are written only in the package's own binary format.
- No per-channel count-rate histograms over time are produced; the
  `times_hist` setting is kept in the configuration but not used.
- Nothing is drawn: histograms and fits are stored as data, not plotted.
- Offset fitting covers the germanium channels only; CsI and LaBr3
  histograms are filled but not fitted.