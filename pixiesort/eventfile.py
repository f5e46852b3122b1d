"""Compact binary file of sorted events, with optional feature columns."""

from __future__ import annotations

import enum
import struct
import sys
from array import array
from collections.abc import Iterator
from pathlib import Path

from pixiesort.decoder import Event

MAGIC = b"PXEV"
FORMAT_VERSION = 1

_HEADER = struct.Struct("<4sBB")
_CORE = struct.Struct("<h??hhhHqh?h")
_ESUM = struct.Struct("<?4I")
_QDC = struct.Struct("<?8I")
_ETS = struct.Struct("<?q")
_LTRA = struct.Struct("<H")


class Feature(enum.IntFlag):
    """Optional columns present in an event file."""

    WAVEFORM = 1
    ENERGY_SUM = 2
    QDC_SUM = 4
    EXTERNAL_TS = 8


def _trace_bytes(trace) -> bytes:
    samples = array("H", trace)
    if sys.byteorder == "big":
        samples.byteswap()
    return samples.tobytes()


class EventWriter:
    """Writes events to a new file, replacing any file already there.

    The stored trace length is the length of the event's trace.
    """

    def __init__(
        self,
        path: str | Path,
        waveform: bool = True,
        energy_sum: bool = False,
        qdc_sum: bool = False,
        external_ts: bool = False,
    ) -> None:
        self.features = Feature(0)
        if waveform:
            self.features |= Feature.WAVEFORM
        if energy_sum:
            self.features |= Feature.ENERGY_SUM
        if qdc_sum:
            self.features |= Feature.QDC_SUM
        if external_ts:
            self.features |= Feature.EXTERNAL_TS
        self.count = 0
        self._file = open(path, "wb")
        self._file.write(_HEADER.pack(MAGIC, FORMAT_VERSION, int(self.features)))

    def write(self, event: Event) -> None:
        """Append one event."""
        if self._file.closed:
            raise ValueError("event file is closed")
        try:
            parts = [
                _CORE.pack(
                    event.sr, event.pileup, event.outofr, event.cid, event.sid, event.ch,
                    event.evte, event.ts, event.cfd, event.cfdft, event.cfds,
                )
            ]
            if Feature.ENERGY_SUM in self.features:
                parts.append(
                    _ESUM.pack(event.esumf, event.trae, event.leae, event.gape, event.base)
                )
            if Feature.QDC_SUM in self.features:
                qs = tuple(event.qs)
                if len(qs) != 8:
                    raise ValueError(f"expected 8 QDC sums, got {len(qs)}")
                parts.append(_QDC.pack(event.qsumf, *qs))
            if Feature.EXTERNAL_TS in self.features:
                parts.append(_ETS.pack(event.etsf, event.ets))
            if Feature.WAVEFORM in self.features:
                parts.append(_LTRA.pack(len(event.trace)))
                parts.append(_trace_bytes(event.trace))
        except (struct.error, OverflowError) as exc:
            raise ValueError(f"event cannot be stored: {exc}") from exc
        self._file.write(b"".join(parts))
        self.count += 1

    def close(self) -> None:
        """Flush and close the file."""
        self._file.close()

    def __enter__(self) -> EventWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _read_exact(handle, size: int) -> bytes:
    data = handle.read(size)
    if len(data) != size:
        raise ValueError("event file is truncated")
    return data


def read_events(path: str | Path) -> Iterator[Event]:
    """Yield the events stored in a file written by :class:`EventWriter`."""
    with open(path, "rb") as handle:
        magic, version, flags = _HEADER.unpack(_read_exact(handle, _HEADER.size))
        if magic != MAGIC:
            raise ValueError("not an event file")
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported event file version {version}")
        features = Feature(flags)
        while True:
            chunk = handle.read(_CORE.size)
            if not chunk:
                return
            if len(chunk) != _CORE.size:
                raise ValueError("event file is truncated")
            sr, pileup, outofr, cid, sid, ch, evte, ts, cfd, cfdft, cfds = _CORE.unpack(chunk)
            event = Event(
                sr=sr, pileup=pileup, outofr=outofr, cid=cid, sid=sid, ch=ch,
                evte=evte, ts=ts, cfd=cfd, cfdft=cfdft, cfds=cfds,
            )
            if Feature.ENERGY_SUM in features:
                (event.esumf, event.trae, event.leae, event.gape,
                 event.base) = _ESUM.unpack(_read_exact(handle, _ESUM.size))
            if Feature.QDC_SUM in features:
                flag, *qs = _QDC.unpack(_read_exact(handle, _QDC.size))
                event.qsumf = flag
                event.qs = tuple(qs)
            if Feature.EXTERNAL_TS in features:
                event.etsf, event.ets = _ETS.unpack(_read_exact(handle, _ETS.size))
            if Feature.WAVEFORM in features:
                (length,) = _LTRA.unpack(_read_exact(handle, _LTRA.size))
                event.ltra = length
                event.trace.frombytes(_read_exact(handle, length * 2))
                if sys.byteorder == "big":
                    event.trace.byteswap()
            yield event