"""Gaussian fits of time-difference peaks and the offset table they produce."""

from __future__ import annotations

import argparse
import math
import sys
import warnings
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from pixiesort.offsets import CHANNELS, GE_SLOTS, Histogram, load_histograms
from pixiesort.sorter import ENERGY_MAX

DEFAULT_HALF_WIDTH = 100.0  # ns around the highest bin
DEFAULT_OUTPUT = "ts.offset"
TABLE_HEADER = "sid  ch  ts_offset[ns]  Low_channel High_channel"


def gaussian(x, amplitude: float, mean: float, sigma: float):
    """Gaussian ``amplitude * exp(-((x - mean) / sigma)**2 / 2)``."""
    x = np.asarray(x, dtype=np.float64)
    return amplitude * np.exp(-0.5 * ((x - mean) / sigma) ** 2)


def _chisquare(x, y, amplitude: float, mean: float, sigma: float) -> float:
    model = gaussian(x, amplitude, mean, sigma)
    return float(np.sum((y - model) ** 2 / y))


def fit_peak(
    histogram: Histogram, half_width: float = DEFAULT_HALF_WIDTH
) -> tuple[float, float, float, float]:
    """Fit a Gaussian to the bins within ``half_width`` of the highest bin.

    Returns ``(amplitude, mean, sigma, chisquare)``. Empty bins are left out
    of the fit and each bin is weighted by the square root of its content.
    When too few bins hold entries for a fit, the weighted mean and spread of
    the bins in range are returned instead.
    """
    if half_width <= 0:
        raise ValueError("half_width must be positive")
    counts = np.asarray(histogram.counts, dtype=np.float64)
    if not np.any(counts > 0):
        raise ValueError("histogram has no entries inside its range")

    peak = histogram.bin_center(histogram.maximum_bin())
    width = (histogram.high - histogram.low) / histogram.bins
    centers = histogram.low + (np.arange(histogram.bins) + 0.5) * width
    selected = (
        (centers >= peak - half_width) & (centers <= peak + half_width) & (counts > 0)
    )
    x = centers[selected]
    y = counts[selected]

    amplitude0 = float(y.max())
    mean0 = float(np.average(x, weights=y))
    spread = math.sqrt(float(np.average((x - mean0) ** 2, weights=y)))
    sigma0 = max(spread, width / math.sqrt(12.0))

    if len(x) >= 3:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", OptimizeWarning)
                params, _ = curve_fit(
                    gaussian, x, y, p0=(amplitude0, peak, sigma0), sigma=np.sqrt(y)
                )
        except RuntimeError:
            params = None
        if params is not None and np.all(np.isfinite(params)) and params[2] != 0:
            amplitude, mean, sigma = (float(p) for p in params)
            sigma = abs(sigma)
            return amplitude, mean, sigma, _chisquare(x, y, amplitude, mean, sigma)

    return amplitude0, mean0, sigma0, _chisquare(x, y, amplitude0, mean0, sigma0)


@dataclass(frozen=True)
class OffsetRow:
    """One line of the offset table: a channel's time offset and energy window."""

    sid: int
    ch: int
    offset: float = 0.0
    low: int = 0
    high: int = ENERGY_MAX
    fitted: bool = False

    def line(self) -> str:
        """The row as written to the table."""
        if self.fitted:
            return (
                f"{self.sid:d}\t{self.ch:3d}\t{self.offset:10.2f}\t"
                f"{self.low:5d}\t{self.high:5d} "
            )
        return (
            f"{self.sid:d}\t{self.ch:2d}\t{self.offset:10.2f}\t"
            f"{self.low:5d}\t{self.high:5d}"
        )


def fit_offsets(
    histograms: Mapping[str, Histogram], half_width: float = DEFAULT_HALF_WIDTH
) -> list[OffsetRow]:
    """Fit every Ge channel histogram and return one row per channel.

    Channels whose histogram has no entries get a zero offset.
    """
    rows = []
    for sid in GE_SLOTS:
        for ch in CHANNELS:
            name = f"ge_sid{sid}_ch{ch:02d}"
            try:
                histogram = histograms[name]
            except KeyError:
                raise KeyError(f"histogram {name} not found") from None
            if histogram.entries == 0:
                rows.append(OffsetRow(sid, ch))
                continue
            _, mean, _, _ = fit_peak(histogram, half_width)
            rows.append(OffsetRow(sid, ch, mean, fitted=True))
    return rows


def write_offset_table(path: str | Path, rows: Iterable[OffsetRow]) -> None:
    """Write the header line and one line per row."""
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(TABLE_HEADER + "\n")
        for row in rows:
            handle.write(row.line() + "\n")


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry point: fit offset histograms and write the table."""
    parser = argparse.ArgumentParser(
        prog="pixiesort-fit",
        description="Fit time-difference peaks and write a channel offset table.",
    )
    parser.add_argument("histograms", help="histogram file written by the offset analysis")
    parser.add_argument("--output", default=DEFAULT_OUTPUT, help="offset table to write")
    parser.add_argument(
        "--half-width", type=float, default=DEFAULT_HALF_WIDTH,
        help="fit range around the highest bin, in ns",
    )
    args = parser.parse_args(argv)
    try:
        rows = fit_offsets(load_histograms(args.histograms), args.half_width)
        write_offset_table(args.output, rows)
    except (OSError, KeyError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0