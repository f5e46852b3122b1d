"""Decoder for list-mode binary data written by Pixie-16 digitizer modules."""

from __future__ import annotations

import struct
import sys
from array import array
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import BinaryIO, NamedTuple

from pixiesort.config import DEFAULT_REVISION, VALID_SAMPLING_RATES

MAX_TRACE_LENGTH = 100_000
_WORD = 4
_FIRST_WORDS = struct.Struct("<4I")


class DecodeError(ValueError):
    """Raised when a raw data stream holds a malformed or truncated event."""


class _Layout(NamedTuple):
    """Extra header words after the first four, and where each sum block starts."""

    words: int
    energy_sum: int | None
    qdc_sum: int | None
    external_ts: int | None


_LAYOUTS: dict[int, _Layout] = {
    4: _Layout(0, None, None, None),
    6: _Layout(2, None, None, 0),
    8: _Layout(4, 0, None, None),
    10: _Layout(6, 0, None, 4),
    12: _Layout(8, None, 0, None),
    14: _Layout(10, None, 0, 8),
    16: _Layout(12, 0, 4, None),
    18: _Layout(14, 0, 4, 12),
}


def _empty_trace() -> array:
    return array("H")


@dataclass(slots=True)
class Event:
    """One decoded channel hit.

    Field names follow the columns of the sorted output: ``sr`` sampling rate
    in MHz, ``ch``/``sid``/``cid`` channel, slot and crate, ``ts`` timestamp in
    clock ticks, ``evte`` energy, ``ltra`` trace length and ``trace`` samples.
    """

    sr: int = 0
    ch: int = 0
    sid: int = 0
    cid: int = 0
    pileup: bool = False
    ts: int = 0
    cfd: int = 0
    cfdft: bool = False
    cfds: int = 0
    evte: int = 0
    outofr: bool = False
    ltra: int = 0
    lhead: int = 0
    levt: int = 0
    esumf: bool = False
    trae: int = 0
    leae: int = 0
    gape: int = 0
    base: int = 0
    qsumf: bool = False
    qs: tuple[int, ...] = (0,) * 8
    etsf: bool = False
    ets: int = 0
    trace: array = field(default_factory=_empty_trace)


class Decoder:
    """Reads events one by one from a binary stream of one module."""

    def __init__(
        self,
        stream: BinaryIO,
        sampling_rate: int,
        revision: int = DEFAULT_REVISION,
        waveform: bool = True,
        energy_sum: bool = False,
        qdc_sum: bool = False,
        external_ts: bool = False,
    ) -> None:
        if sampling_rate not in VALID_SAMPLING_RATES:
            raise ValueError(f"unsupported sampling rate: {sampling_rate}")
        self.sampling_rate = int(sampling_rate)
        self.revision = int(revision)
        self.waveform = waveform
        self.energy_sum = energy_sum
        self.qdc_sum = qdc_sum
        self.external_ts = external_ts
        self._stream = stream

    def _read_exact(self, size: int, what: str) -> bytes:
        data = self._stream.read(size)
        if len(data) != size:
            raise DecodeError(f"truncated event: expected {size} bytes of {what}, got {len(data)}")
        return data

    def _cfd(self, word: int) -> tuple[int, bool, int]:
        rate = self.sampling_rate
        if rate in (100, 125):
            return (word & 0x7FFF0000) >> 16, bool(word >> 31), 0
        if rate == 250:
            return (word & 0x3FFF0000) >> 16, bool(word >> 31), (word & 0x40000000) >> 30
        cfds = (word & 0xE0000000) >> 29
        return (word & 0x1FFF0000) >> 16, cfds == 7, cfds

    def _channel_fields(self, word: int) -> tuple[int, int, int]:
        if self.revision >= 17:
            return word & 0x3F, (word & 0x3C0) >> 6, (word & 0xC00) >> 10
        return word & 0xF, (word & 0xF0) >> 4, (word & 0xF00) >> 8

    def read_event(self) -> Event | None:
        """Decode the next event, or return ``None`` at the end of the stream."""
        head = self._stream.read(_FIRST_WORDS.size)
        if not head:
            return None
        if len(head) != _FIRST_WORDS.size:
            raise DecodeError(f"truncated event: {len(head)} bytes of header")
        w0, w1, w2, w3 = _FIRST_WORDS.unpack(head)

        ch, sid, cid = self._channel_fields(w0)
        lhead = (w0 & 0x0001F000) >> 12
        levt = (w0 & 0x7FFE0000) >> 17
        cfd, cfdft, cfds = self._cfd(w2)
        event = Event(
            sr=self.sampling_rate,
            ch=ch,
            sid=sid,
            cid=cid,
            pileup=bool(w0 >> 31),
            ts=w1 + ((w2 & 0xFFFF) << 32),
            cfd=cfd,
            cfdft=cfdft,
            cfds=cfds,
            evte=w3 & 0xFFFF,
            ltra=(w3 & 0x7FFF0000) >> 16,
            outofr=bool(w3 >> 31),
            lhead=lhead,
            levt=levt,
        )

        layout = _LAYOUTS.get(lhead)
        if layout is None:
            raise DecodeError(f"unknown header length: {lhead}")
        if layout.words:
            raw = self._read_exact(layout.words * _WORD, "header")
            words = struct.unpack(f"<{layout.words}I", raw)
            self._apply_sums(event, layout, words)

        if event.ltra:
            if event.ltra > MAX_TRACE_LENGTH:
                raise DecodeError(f"trace length {event.ltra} exceeds {MAX_TRACE_LENGTH}")
            raw = self._read_exact(event.ltra // 2 * _WORD, "trace")
            if self.waveform:
                event.trace.frombytes(raw)
                if sys.byteorder == "big":
                    event.trace.byteswap()
        return event

    def _apply_sums(self, event: Event, layout: _Layout, words: tuple[int, ...]) -> None:
        if self.energy_sum and layout.energy_sum is not None:
            start = layout.energy_sum
            event.trae, event.leae, event.gape, event.base = words[start:start + 4]
            event.esumf = True
        if self.qdc_sum and layout.qdc_sum is not None:
            start = layout.qdc_sum
            event.qs = tuple(words[start:start + 8])
            event.qsumf = True
        if self.external_ts and layout.external_ts is not None:
            low, high = words[layout.external_ts], words[layout.external_ts + 1]
            event.ets = low + ((high & 0xFFFF) << 32)
            event.etsf = True

    def __iter__(self) -> Iterator[Event]:
        while (event := self.read_event()) is not None:
            yield event

    def close(self) -> None:
        """Close the underlying stream."""
        self._stream.close()

    def __enter__(self) -> Decoder:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_decoder(path, sampling_rate: int, revision: int = DEFAULT_REVISION, **kwargs) -> Decoder:
    """Open a raw module file and return a decoder that owns it."""
    if sampling_rate not in VALID_SAMPLING_RATES:
        raise ValueError(f"unsupported sampling rate: {sampling_rate}")
    stream = open(path, "rb")
    try:
        return Decoder(stream, sampling_rate, revision, **kwargs)
    except Exception:
        stream.close()
        raise