"""Decode raw module files of one run per crate and write one time-sorted event file."""

from __future__ import annotations

import argparse
import os
import sys
import time
from collections.abc import Sequence
from contextlib import ExitStack
from pathlib import Path

from pixiesort.config import SortConfig, load_config, preset
from pixiesort.decoder import DecodeError, open_decoder
from pixiesort.eventfile import EventWriter
from pixiesort.sorter import ChannelSettings, Sorter, Source, read_crate_settings

VERSION = "Version: pixiesort decode"


def _crate_settings(settings_dir: Path, crate: int) -> ChannelSettings:
    path = settings_dir / f"crate{crate}.dat"
    try:
        return read_crate_settings(path)
    except FileNotFoundError:
        print(f"can't open file {path.name}.", file=sys.stderr)
        return ChannelSettings()


def run(config: SortConfig, runs: Sequence[int], settings_dir: str | Path = ".") -> int:
    """Sort the raw data of ``runs`` (one per crate) into the output file.

    Per-crate offsets and energy windows come from ``crate<N>.dat`` in
    ``settings_dir``; a missing table leaves every channel at its defaults.
    Returns the number of events written.
    """
    runs = [int(r) for r in runs]
    output = config.output_path(runs)
    settings_dir = Path(settings_dir)
    settings = {
        index: _crate_settings(settings_dir, index) for index in range(len(config.crates))
    }
    options = {
        "waveform": config.waveform,
        "energy_sum": config.energy_sum,
        "qdc_sum": config.qdc_sum,
        "external_ts": config.external_ts,
    }
    with ExitStack() as stack:
        sources = []
        for crate_index, (crate, run_number) in enumerate(zip(config.crates, runs)):
            for module, rate, revision in crate.active_modules():
                path = crate.module_path(run_number, module)
                if not os.path.exists(path):
                    raise FileNotFoundError(f"can't find raw data: {path}")
                decoder = stack.enter_context(open_decoder(path, rate, revision, **options))
                sources.append(Source(decoder, crate_index))
        sorter = Sorter(sources, settings, config.time_buffer, config.process_fraction)
        writer = stack.enter_context(EventWriter(output, **options))
        for event in sorter:
            writer.write(event)
        return writer.count


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pixiesort-decode",
        description="Decode and time-sort raw data, one run number per crate.",
    )
    parser.add_argument("runs", nargs="+", type=int, help="run number of each crate")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--config", help="TOML file describing crates and output")
    source.add_argument("--preset", default="default", help="built-in setup name")
    parser.add_argument(
        "--settings-dir", default=".", help="directory holding crate<N>.dat tables"
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry point."""
    args = _parser().parse_args(argv)
    try:
        config = load_config(args.config) if args.config else preset(args.preset)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    first = args.runs[0]
    print(f"\t{first} start!")
    print(VERSION)
    if len(args.runs) != len(config.crates):
        print(
            f"error: expected {len(config.crates)} run numbers, got {len(args.runs)}: "
            "[Crate0RunNumber] [Crate1RunNumber] ...",
            file=sys.stderr,
        )
        return 1

    started = time.perf_counter()
    try:
        count = run(config, args.runs, args.settings_dir)
    except (OSError, DecodeError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    elapsed = time.perf_counter() - started
    print(f"{count} events written to {config.output_path(args.runs)}")
    print(f"decode: {elapsed:.2f} s")
    print(f"\t{first} done!")
    return 0