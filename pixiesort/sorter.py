"""Time-ordered merging of events from many modules and crates."""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from heapq import heappop, heappush
from pathlib import Path

from pixiesort.config import (
    DEFAULT_PROCESS_FRACTION,
    DEFAULT_TIME_BUFFER,
    MAX_BOARDS,
    MAX_CHANNELS,
)
from pixiesort.decoder import Event

ENERGY_MAX = 65535
_FIELDS_PER_ENTRY = 5

# Clock period in ns by sampling rate; every other rate counts in 10 ns ticks.
_TICK_NS = {125: 8, 250: 8}
_DEFAULT_TICK_NS = 10


def _to_int16(value: int) -> int:
    return ((value + 0x8000) & 0xFFFF) - 0x8000


def _trunc_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def timestamp_ns(ts: int, sampling_rate: int) -> int:
    """Convert a timestamp in clock ticks to nanoseconds for a module's rate."""
    return _TICK_NS.get(sampling_rate, _DEFAULT_TICK_NS) * ts


def sort_key(tsflag: int, cid: int, sid: int, ch: int) -> int:
    """Key ordering hits by time in ns, then crate, slot and channel."""
    return (((((tsflag << 4) + cid) << 4) + sid) << 6) + ch


@dataclass
class ChannelSettings:
    """Per-channel time offsets (ns) and accepted energy windows of one crate."""

    offsets: dict[tuple[int, int], int] = field(default_factory=dict)
    low: dict[tuple[int, int], int] = field(default_factory=dict)
    high: dict[tuple[int, int], int] = field(default_factory=dict)

    def define(self, sid: int, ch: int, offset: float, low: int, high: int) -> None:
        """Set the offset and energy window of one channel."""
        if not 0 <= sid < MAX_BOARDS:
            raise ValueError(f"slot id {sid} outside 0..{MAX_BOARDS - 1}")
        if not 0 <= ch < MAX_CHANNELS:
            raise ValueError(f"channel {ch} outside 0..{MAX_CHANNELS - 1}")
        for name, value in (("low", low), ("high", high)):
            if not 0 <= value <= ENERGY_MAX:
                raise ValueError(f"{name} energy limit {value} outside 0..{ENERGY_MAX}")
        key = (sid, ch)
        self.offsets[key] = _to_int16(int(offset))
        self.low[key] = int(low)
        self.high[key] = int(high)

    def offset(self, sid: int, ch: int) -> int:
        """Time offset in ns; zero for channels not listed."""
        return self.offsets.get((sid, ch), 0)

    def accepts(self, sid: int, ch: int, energy: int) -> bool:
        """Whether ``energy`` lies inside the channel's window."""
        key = (sid, ch)
        return self.low.get(key, 0) <= energy <= self.high.get(key, ENERGY_MAX)

    def adjust(self, ts: int, sid: int, ch: int, sampling_rate: int) -> int:
        """Timestamp in ticks shifted by the channel's offset."""
        tick = _TICK_NS.get(sampling_rate, _DEFAULT_TICK_NS)
        return ts + _trunc_div(self.offset(sid, ch), tick)


def read_crate_settings(path: str | Path) -> ChannelSettings:
    """Read a crate table: one header line, then ``sid ch offset low high`` records.

    Raises ``FileNotFoundError`` when the file is missing and ``ValueError``
    when a record is malformed or incomplete.
    """
    with open(path, encoding="utf-8") as handle:
        handle.readline()
        tokens = handle.read().split()
    if len(tokens) % _FIELDS_PER_ENTRY:
        raise ValueError(f"{path}: incomplete record at the end of the table")
    settings = ChannelSettings()
    for start in range(0, len(tokens), _FIELDS_PER_ENTRY):
        sid, ch, offset, low, high = tokens[start:start + _FIELDS_PER_ENTRY]
        try:
            values = int(sid), int(ch), float(offset), int(low), int(high)
        except ValueError:
            raise ValueError(
                f"{path}: malformed record {' '.join(tokens[start:start + _FIELDS_PER_ENTRY])!r}"
            ) from None
        if not math.isfinite(values[2]):
            raise ValueError(f"{path}: offset {offset!r} is not finite")
        settings.define(*values)
    return settings


@dataclass
class Source:
    """Time-ordered events of one module, and the crate it sits in."""

    events: Iterable[Event]
    crate: int = 0


class _Cursor:
    __slots__ = ("_events", "crate", "head")

    def __init__(self, source: Source) -> None:
        self._events = iter(source.events)
        self.crate = source.crate
        self.head: Event | None = next(self._events, None)

    def advance(self) -> Event:
        event = self.head
        self.head = next(self._events, None)
        return event


class Sorter:
    """Merges events of many sources into one stream ordered by sort key.

    Events are admitted one time buffer at a time; after each step the
    earliest ``process_fraction`` of buffered events are released. Events
    outside their channel's energy window are dropped, and of two events
    with the same key only the first is kept.
    """

    def __init__(
        self,
        sources: Iterable[Source],
        settings: Mapping[int, ChannelSettings] | Sequence[ChannelSettings] | None = None,
        time_buffer: int = DEFAULT_TIME_BUFFER,
        process_fraction: float = DEFAULT_PROCESS_FRACTION,
    ) -> None:
        if time_buffer <= 0:
            raise ValueError("time_buffer must be positive")
        if not 0.0 < process_fraction <= 1.0:
            raise ValueError("process_fraction must lie in (0, 1]")
        self.sources = list(sources)
        if settings is None:
            self.settings: dict[int, ChannelSettings] = {}
        elif isinstance(settings, Mapping):
            self.settings = dict(settings)
        else:
            self.settings = dict(enumerate(settings))
        self.time_buffer = int(time_buffer)
        self.process_fraction = float(process_fraction)
        self._default = ChannelSettings()

    def _admit(self, event: Event, crate: int, heap: list, keys: set[int]) -> None:
        settings = self.settings.get(crate, self._default)
        if not settings.accepts(event.sid, event.ch, event.evte):
            return
        ts = settings.adjust(event.ts, event.sid, event.ch, event.sr)
        key = sort_key(timestamp_ns(ts, event.sr), event.cid, event.sid, event.ch)
        if key in keys:
            return
        keys.add(key)
        heappush(heap, (key, replace(event, ts=ts)))

    @staticmethod
    def _release(heap: list, keys: set[int]) -> Event:
        key, event = heappop(heap)
        keys.discard(key)
        return event

    def __iter__(self) -> Iterator[Event]:
        cursors = [_Cursor(source) for source in self.sources]
        heap: list[tuple[int, Event]] = []
        keys: set[int] = set()
        step = self.time_buffer
        limit = step
        while True:
            pending = [c for c in cursors if c.head is not None]
            if pending and int(len(heap) * self.process_fraction) == 0:
                # Nothing would happen until the limit passes the earliest hit.
                earliest = min(timestamp_ns(c.head.ts, c.head.sr) for c in pending)
                if earliest >= limit:
                    limit = (earliest // step + 1) * step
            for cursor in pending:
                while cursor.head is not None:
                    head = cursor.head
                    if timestamp_ns(head.ts, head.sr) >= limit:
                        break
                    self._admit(cursor.advance(), cursor.crate, heap, keys)
            limit += step
            for _ in range(int(len(heap) * self.process_fraction)):
                yield self._release(heap, keys)
            if all(c.head is None for c in cursors):
                while heap:
                    yield self._release(heap, keys)
                return


def ieee_float_to_decimal(value: int) -> float:
    """Interpret a 32-bit word as sign, 8-bit exponent and 23-bit mantissa."""
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"{value} is not a 32-bit word")
    exponent = ((value & 0x7F800000) >> 23) - 127
    mantissa = 1.0 + (value & 0x7FFFFF) / 2.0**23
    number = math.ldexp(mantissa, exponent)
    return -number if value >> 31 else number