import io
import struct

import pytest

from pixiesort.decoder import DecodeError, Decoder, open_decoder


def _word0(ch, sid, cid, lhead, levt=0, pileup=0):
    return ch | (sid << 4) | (cid << 8) | (lhead << 12) | (levt << 17) | (pileup << 31)


def _raw(w0, ts_lo=0, w2=0, evte=0, ltra=0, outofr=0, extra=(), trace_words=()):
    w3 = evte | (ltra << 16) | (outofr << 31)
    words = [w0, ts_lo, w2, w3, *extra, *trace_words]
    return struct.pack(f"<{len(words)}I", *words)


def _decoder(data, rate=100, **kwargs):
    return Decoder(io.BytesIO(data), rate, **kwargs)


def test_basic_fields_at_100_mhz():
    data = _raw(_word0(3, 5, 1, 4, levt=4, pileup=1), ts_lo=1234,
                w2=(1 << 31) | (0x7FFF << 16), evte=4321, outofr=1)
    event = _decoder(data).read_event()
    assert (event.ch, event.sid, event.cid) == (3, 5, 1)
    assert event.lhead == 4 and event.levt == 4
    assert event.pileup is True and event.outofr is True
    assert event.ts == 1234
    assert event.cfd == 0x7FFF and event.cfdft is True and event.cfds == 0
    assert event.evte == 4321
    assert event.sr == 100


def test_timestamp_combines_high_bits():
    data = _raw(_word0(0, 2, 0, 4), ts_lo=5, w2=2)
    event = _decoder(data).read_event()
    assert event.ts == (2 << 32) + 5


def test_cfd_at_250_mhz():
    w2 = (1 << 31) | (1 << 30) | (0x1234 << 16)
    event = _decoder(_raw(_word0(0, 2, 0, 4), w2=w2), rate=250).read_event()
    assert (event.cfd, event.cfdft, event.cfds) == (0x1234, True, 1)


@pytest.mark.parametrize("cfds, forced", [(7, True), (3, False)])
def test_cfd_at_500_mhz(cfds, forced):
    w2 = (cfds << 29) | (0x0ABC << 16)
    event = _decoder(_raw(_word0(0, 2, 0, 4), w2=w2), rate=500).read_event()
    assert event.cfd == 0x0ABC
    assert event.cfds == cfds
    assert event.cfdft is forced


def test_revision_17_channel_layout():
    w0 = 40 | (9 << 6) | (2 << 10) | (4 << 12)
    event = _decoder(_raw(w0), revision=17).read_event()
    assert (event.ch, event.sid, event.cid) == (40, 9, 2)


def test_header_18_with_all_sums():
    extra = [11, 12, 13, 14, *range(21, 29), 7, 3]
    data = _raw(_word0(1, 2, 0, 18), extra=extra)
    event = _decoder(data, energy_sum=True, qdc_sum=True, external_ts=True).read_event()
    assert event.esumf and (event.trae, event.leae, event.gape, event.base) == (11, 12, 13, 14)
    assert event.qsumf and event.qs == tuple(range(21, 29))
    assert event.etsf and event.ets == (3 << 32) + 7


def test_sums_ignored_when_disabled():
    extra = [11, 12, 13, 14, *range(21, 29), 7, 3]
    event = _decoder(_raw(_word0(1, 2, 0, 18), extra=extra)).read_event()
    assert not event.esumf and event.trae == 0
    assert not event.qsumf and event.qs == (0,) * 8
    assert not event.etsf and event.ets == 0


def test_header_14_qdc_and_external_ts():
    extra = [*range(1, 9), 9, 1]
    event = _decoder(_raw(_word0(0, 2, 0, 14), extra=extra),
                     energy_sum=True, qdc_sum=True, external_ts=True).read_event()
    assert event.qs == tuple(range(1, 9))
    assert event.ets == (1 << 32) + 9
    assert event.esumf is False


def test_trace_samples_low_half_first():
    data = _raw(_word0(0, 2, 0, 4), ltra=4, trace_words=[0x00020001, 0x00040003])
    event = _decoder(data).read_event()
    assert event.ltra == 4
    assert list(event.trace) == [1, 2, 3, 4]


def test_trace_skipped_without_waveform():
    data = _raw(_word0(0, 2, 0, 4), ltra=2, trace_words=[0x00020001]) + _raw(_word0(7, 2, 0, 4))
    decoder = _decoder(data, waveform=False)
    first = decoder.read_event()
    assert first.ltra == 2 and len(first.trace) == 0
    assert decoder.read_event().ch == 7


def test_iteration_stops_at_end():
    data = b"".join(_raw(_word0(ch, 2, 0, 4), ts_lo=ch) for ch in range(3))
    events = list(_decoder(data))
    assert [e.ts for e in events] == [0, 1, 2]


def test_empty_stream_gives_none():
    assert _decoder(b"").read_event() is None


def test_truncated_header_raises():
    with pytest.raises(DecodeError):
        _decoder(_raw(_word0(0, 2, 0, 4))[:10]).read_event()


def test_truncated_trace_raises():
    data = _raw(_word0(0, 2, 0, 4), ltra=4, trace_words=[1])
    with pytest.raises(DecodeError):
        _decoder(data).read_event()


def test_unknown_header_length_raises():
    with pytest.raises(DecodeError):
        _decoder(_raw(_word0(0, 2, 0, 5))).read_event()


def test_invalid_sampling_rate():
    with pytest.raises(ValueError):
        Decoder(io.BytesIO(b""), 200)


def test_open_decoder_reads_file_and_closes(tmp_path):
    path = tmp_path / "data_R0001_M00.bin"
    path.write_bytes(_raw(_word0(4, 3, 0, 4), evte=99))
    with open_decoder(path, 250, 15) as decoder:
        events = list(decoder)
    assert [(e.ch, e.sid, e.evte, e.sr) for e in events] == [(4, 3, 99, 250)]
    assert decoder._stream.closed


def test_open_decoder_rejects_rate(tmp_path):
    path = tmp_path / "raw.bin"
    path.write_bytes(b"")
    with pytest.raises(ValueError):
        open_decoder(path, 0)