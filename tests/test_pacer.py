import array
import asyncio

import pytest

from voice_relay.bot import mulaw
from voice_relay.bot.pacer import JitterBufferPacer

FRAME = 160


def make_pacer(**kwargs):
    kwargs.setdefault("fade_in_bytes", 0)
    return JitterBufferPacer(frame_size=FRAME, tick_interval_ms=20, call_id="test", **kwargs)


def test_drain_empty_returns_silence_frame():
    pacer = make_pacer()
    frame = pacer.drain()
    assert frame == b"\xff" * FRAME
    assert pacer.silence_frames_sent == 1
    assert pacer.frames_sent == 1


def test_partial_frame_is_held_back():
    pacer = make_pacer()
    pacer.feed(b"\x10" * 100)
    assert pacer.drain() == pacer.silence_frame
    assert pacer.buffered_bytes == 100


def test_fifo_order_with_irregular_chunks():
    pacer = make_pacer()
    data = bytes(i % 200 for i in range(3 * FRAME))
    for chunk in (data[:7], data[7:257], data[257:300], data[300:]):
        pacer.feed(chunk)

    frames = [pacer.drain() for _ in range(4)]
    assert all(len(f) == FRAME for f in frames)
    assert b"".join(frames[:3]) == data
    assert frames[3] == pacer.silence_frame


def test_fifo_ignoring_interleaved_silence():
    pacer = make_pacer()
    fed = []
    emitted = []
    for i in range(5):
        chunk = bytes([i + 1]) * (FRAME + 40)
        fed.append(chunk)
        pacer.feed(chunk)
        emitted.append(pacer.drain())
        emitted.append(pacer.drain())
    while pacer.buffered_bytes >= FRAME:
        emitted.append(pacer.drain())

    audio = b"".join(f for f in emitted if f != pacer.silence_frame)
    expected = b"".join(fed)
    assert audio == expected[:len(audio)]
    assert len(expected) - len(audio) == pacer.buffered_bytes


def test_empty_feed_is_ignored():
    pacer = make_pacer()
    pacer.feed(b"")
    assert pacer.buffered_bytes == 0


def test_first_chunk_of_utterance_is_ramped_in():
    pacer = make_pacer(fade_in_bytes=240)
    loud = b"\x00" * 480
    pacer.feed(loud)
    queued = pacer.drain() + pacer.drain() + pacer.drain()

    assert queued[0] == 0xFF
    assert queued[240:] == loud[240:]
    # the ramp rises monotonically in magnitude
    ramp = array.array("h")
    ramp.frombytes(mulaw.decode(queued[:240]))
    magnitudes = [abs(s) for s in ramp]
    assert magnitudes == sorted(magnitudes)


def test_following_chunks_are_not_ramped():
    pacer = make_pacer(fade_in_bytes=240)
    pacer.feed(b"\x00" * 240)
    pacer.feed(b"\x00" * 80)
    frames = pacer.drain() + pacer.drain()
    assert frames[240:] == b"\x00" * 80


def test_end_utterance_ramps_next_chunk():
    pacer = make_pacer(fade_in_bytes=240)
    pacer.feed(b"\x00" * 320)
    pacer.end_utterance()
    pacer.feed(b"\x00" * 320)
    data = b"".join(pacer.drain() for _ in range(4))
    assert data[320] == 0xFF


def test_clear_drops_buffered_audio():
    pacer = make_pacer()
    pacer.feed(b"\x01" * 500)
    assert pacer.clear() == 500
    assert pacer.buffered_bytes == 0
    assert pacer.drain() == pacer.silence_frame


def test_invalid_frame_size():
    with pytest.raises(ValueError):
        JitterBufferPacer(frame_size=0, tick_interval_ms=20)


@pytest.mark.asyncio
async def test_cadence_one_frame_per_tick():
    pacer = JitterBufferPacer(frame_size=FRAME, tick_interval_ms=10, fade_in_bytes=0)
    emitted = []

    async def on_tick():
        emitted.append(pacer.drain())

    pacer.feed(b"\x05" * FRAME * 3)
    pacer.start(on_tick, lambda: True)
    await asyncio.sleep(0.205)
    await pacer.stop()

    assert 15 <= len(emitted) <= 21
    assert all(len(f) == FRAME for f in emitted)
    assert emitted[:3] == [b"\x05" * FRAME] * 3
    assert all(f == pacer.silence_frame for f in emitted[3:])


@pytest.mark.asyncio
async def test_closed_sink_skips_ticks():
    pacer = JitterBufferPacer(frame_size=FRAME, tick_interval_ms=10, fade_in_bytes=0)
    on_tick = asyncio.Event()

    async def tick():
        on_tick.set()

    pacer.feed(b"\x05" * FRAME)
    pacer.start(tick, lambda: False)
    await asyncio.sleep(0.05)
    assert not on_tick.is_set()
    assert pacer.buffered_bytes == FRAME
    await pacer.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_stops_ticks():
    pacer = JitterBufferPacer(frame_size=FRAME, tick_interval_ms=10)
    ticks = []

    async def on_tick():
        ticks.append(pacer.drain())

    pacer.start(on_tick, lambda: True)
    await asyncio.sleep(0.05)
    await pacer.stop()
    await pacer.stop()
    count = len(ticks)
    await asyncio.sleep(0.05)

    assert count > 0
    assert len(ticks) == count
    assert not pacer.running
