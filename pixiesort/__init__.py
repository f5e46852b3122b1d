"""Decode, time-sort and align list-mode data from Pixie-16 digitizer crates."""

__version__ = "0.1.0"