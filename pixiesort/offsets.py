"""Time-offset analysis: histograms of time differences against a reference channel."""

from __future__ import annotations

import argparse
import math
from collections.abc import Iterable, Sequence
from pathlib import Path

import numpy as np

from pixiesort.config import preset
from pixiesort.decoder import Event
from pixiesort.eventfile import read_events
from pixiesort.sorter import timestamp_ns

ALIGNMENT_WINDOW = 1500  # ns
REFERENCE_KEY = 205  # crate 0, slot 2, channel 5
GE_SLOTS = range(2, 6)
CSI_SLOTS = range(2, 9)
LABR3_SLOTS = range(8, 9)
CHANNELS = range(16)
_ENERGY_CUTS = {0: 100, 1: 1000}


class Histogram:
    """Fixed-width one-dimensional histogram over ``[low, high)``."""

    def __init__(self, bins: int, low: float, high: float) -> None:
        if bins < 1:
            raise ValueError("a histogram needs at least one bin")
        if not high > low:
            raise ValueError("high edge must exceed low edge")
        self.low = float(low)
        self.high = float(high)
        self.counts = np.zeros(int(bins), dtype=np.float64)
        self.underflow = 0.0
        self.overflow = 0.0
        self.entries = 0

    @property
    def bins(self) -> int:
        return len(self.counts)

    def _fill_array(self, values) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        if values.size == 0:
            return
        index = np.floor(self.bins * (values - self.low) / (self.high - self.low)).astype(np.int64)
        below = index < 0
        above = index >= self.bins
        self.underflow += float(np.count_nonzero(below))
        self.overflow += float(np.count_nonzero(above))
        inside = ~(below | above)
        np.add.at(self.counts, index[inside], 1.0)
        self.entries += int(values.size)

    def fill(self, value: float) -> None:
        """Add one entry."""
        self._fill_array([value])

    def bin_center(self, index: int) -> float:
        """Centre of bin ``index`` (counted from zero)."""
        if not 0 <= index < self.bins:
            raise IndexError(f"bin {index} outside 0..{self.bins - 1}")
        width = (self.high - self.low) / self.bins
        return self.low + (index + 0.5) * width

    def maximum_bin(self) -> int:
        """Index of the first bin holding the most entries."""
        return int(np.argmax(self.counts))


def channel_key(cid: int, sid: int, ch: int) -> int:
    """Key that identifies a channel by crate, slot and channel number."""
    return 10000 * cid + 100 * sid + ch


def collect_timestamps(events: Iterable[Event]) -> dict[int, list[int]]:
    """Timestamps in ns of each channel, after the per-crate energy cut."""
    timestamps: dict[int, list[int]] = {}
    for event in events:
        cut = _ENERGY_CUTS.get(event.cid)
        if cut is not None and event.evte < cut:
            continue
        key = channel_key(event.cid, event.sid, event.ch)
        timestamps.setdefault(key, []).append(timestamp_ns(event.ts, event.sr))
    return timestamps


def fill_time_differences(
    reference: Sequence[int],
    other: Sequence[int],
    histogram: Histogram,
    window: int = ALIGNMENT_WINDOW,
) -> int:
    """Histogram ``reference - other`` for time-ordered hits closer than ``window``.

    Returns the number of differences filled.
    """
    differences = []
    m = n = 0
    while m < len(reference) and n < len(other):
        t1 = reference[m]
        while n < len(other):
            delta = t1 - other[n]
            if abs(delta) < window:
                differences.append(delta)
                n += 1
            elif delta > window:
                n += 1
            else:
                m += 1
                break
    histogram._fill_array(differences)
    return len(differences)


class OffsetAnalysis:
    """Time differences of every detector channel against the reference Ge channel."""

    def __init__(self, events: Iterable[Event], window: int = ALIGNMENT_WINDOW) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        self.window = int(window)
        self.timestamps = collect_timestamps(events)
        self.histograms: dict[str, Histogram] = {}

    def _histogram(self, name: str, width: int) -> Histogram:
        bins = 2 * self.window // width
        if bins < 1:
            raise ValueError(f"window {self.window} ns is narrower than one {width} ns bin")
        return Histogram(bins, -self.window, self.window)

    def _compare(
        self, prefix: str, cid: int, slots: range, width: int, skip_reference: bool
    ) -> dict[str, Histogram]:
        reference = self.timestamps.get(REFERENCE_KEY, [])
        result: dict[str, Histogram] = {}
        for sid in slots:
            for ch in CHANNELS:
                name = f"{prefix}_sid{sid}_ch{ch:02d}"
                histogram = self._histogram(name, width)
                result[name] = histogram
                key = channel_key(cid, sid, ch)
                other = self.timestamps.get(key)
                if not other or (skip_reference and key == REFERENCE_KEY):
                    continue
                fill_time_differences(reference, other, histogram, self.window)
        self.histograms.update(result)
        return result

    def ge_vs_ge(self) -> dict[str, Histogram]:
        """Ge channels of crate 0 against the reference (20 ns bins)."""
        return self._compare("ge", 0, GE_SLOTS, 20, skip_reference=True)

    def csi_vs_ge(self) -> dict[str, Histogram]:
        """CsI channels of crate 1 against the reference (10 ns bins)."""
        return self._compare("csi", 1, CSI_SLOTS, 10, skip_reference=False)

    def labr3_vs_ge(self) -> dict[str, Histogram]:
        """LaBr3 channels of crate 1 against the reference (10 ns bins)."""
        return self._compare("labr3", 1, LABR3_SLOTS, 10, skip_reference=False)

    def save(self, path: str | Path) -> None:
        """Write every histogram filled so far to ``path``."""
        arrays = {}
        for name, histogram in self.histograms.items():
            arrays[f"{name}__counts"] = histogram.counts
            arrays[f"{name}__meta"] = np.array(
                [histogram.low, histogram.high, histogram.underflow,
                 histogram.overflow, histogram.entries],
                dtype=np.float64,
            )
        with open(path, "wb") as handle:
            np.savez(handle, **arrays)


def load_histograms(path: str | Path) -> dict[str, Histogram]:
    """Read histograms written by :meth:`OffsetAnalysis.save`."""
    histograms: dict[str, Histogram] = {}
    with np.load(path) as data:
        for key in data.files:
            if not key.endswith("__counts"):
                continue
            name = key[: -len("__counts")]
            counts = data[key]
            low, high, underflow, overflow, entries = data[f"{name}__meta"]
            histogram = Histogram(len(counts), low, high)
            histogram.counts = counts.astype(np.float64)
            histogram.underflow = float(underflow)
            histogram.overflow = float(overflow)
            histogram.entries = int(entries)
            histograms[name] = histogram
    return histograms


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry point: build offset histograms for one run."""
    parser = argparse.ArgumentParser(
        prog="pixiesort-offsets",
        description="Histogram time differences against the reference channel.",
    )
    parser.add_argument("run", type=int, help="run number")
    parser.add_argument("--input", help="sorted event file (default: the c2 preset's output)")
    parser.add_argument("--output", help="histogram file (default: ts_result/dataNNNN_ts.npz)")
    parser.add_argument("--window", type=int, default=ALIGNMENT_WINDOW, help="window in ns")
    args = parser.parse_args(argv)

    source = args.input or preset("c2").output_path([args.run, args.run])
    output = Path(args.output or f"ts_result/data{args.run:04d}_ts.npz")
    print(f"analysis {source}")
    try:
        analysis = OffsetAnalysis(read_events(source), args.window)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}")
        return 1
    for key, values in sorted(analysis.timestamps.items()):
        print(key, len(values))
    print("Ge vs. Ge")
    analysis.ge_vs_ge()
    print("CsI vs. Ge")
    analysis.csi_vs_ge()
    output.parent.mkdir(parents=True, exist_ok=True)
    analysis.save(output)
    return 0