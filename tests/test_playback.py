import random

import numpy as np
import pytest

from live_interpreter.codec import DecodedAudio
from live_interpreter.playback import PlaybackScheduler, PlaybackTimeline

from .fakes import FakeOutput


def audio(seconds, rate=24000):
    return DecodedAudio(samples=np.zeros((int(round(seconds * rate)), 1), dtype=np.float32), sample_rate=rate)


def test_buffers_play_back_to_back():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    assert scheduler.schedule(audio(0.5)) == 0.0
    assert scheduler.schedule(audio(0.25)) == pytest.approx(0.5)
    assert scheduler.schedule(audio(0.25)) == pytest.approx(0.75)
    assert scheduler.next_start == pytest.approx(1.0)
    assert scheduler.pending == 3


def test_late_arrival_starts_now():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(audio(0.2))
    output.now = 1.0
    assert scheduler.schedule(audio(0.2)) == pytest.approx(1.0)
    assert scheduler.next_start == pytest.approx(1.2)


def test_no_overlap_under_arrival_jitter():
    rng = random.Random(42)
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    prev_start, prev_duration = None, 0.0
    for _ in range(200):
        output.now += rng.uniform(0.0, 0.3)
        buf = audio(rng.choice([0.04, 0.1, 0.17, 0.25]))
        start = scheduler.schedule(buf)
        assert start >= output.now
        if prev_start is not None:
            assert start >= prev_start + prev_duration - 1e-9
        prev_start, prev_duration = start, buf.duration


def test_completion_removes_buffer_once():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(audio(0.1))
    scheduler.schedule(audio(0.1))
    output.finish(1)
    assert scheduler.pending == 1
    scheduler.teardown()
    assert output.cancelled == [2]
    assert scheduler.pending == 0
    assert scheduler.next_start == 0.0


def test_timeline_renders_buffers_at_their_start_frame():
    done = []
    timeline = PlaybackTimeline(sample_rate=10)
    timeline.place(np.ones(4, dtype=np.float32), 0.2, done.append)
    timeline.place(np.full(2, 0.5, dtype=np.float32), 0.6, done.append)

    block, finished = timeline.render(5)
    assert block[:, 0].tolist() == [0.0, 0.0, 1.0, 1.0, 1.0]
    assert finished == []
    assert timeline.current_time() == pytest.approx(0.5)

    block, finished = timeline.render(5)
    assert block[:, 0].tolist() == [1.0, 0.5, 0.5, 0.0, 0.0]
    for on_done, token in finished:
        on_done(token)
    assert done == [1, 2]


def test_timeline_cancel_and_clear():
    timeline = PlaybackTimeline(sample_rate=10)
    token = timeline.place(np.ones(10, dtype=np.float32), 0.0, lambda t: None)
    timeline.render(3)
    timeline.cancel(token)
    block, finished = timeline.render(3)
    assert not block.any()
    assert finished == []
    timeline.clear()
    assert timeline.current_time() == 0.0


def test_timeline_late_placement_starts_at_the_render_head():
    timeline = PlaybackTimeline(sample_rate=10)
    timeline.render(5)
    timeline.place(np.arange(1, 4, dtype=np.float32), 0.2, lambda t: None)
    block, finished = timeline.render(5)
    assert block[:, 0].tolist() == [1.0, 2.0, 3.0, 0.0, 0.0]
    assert len(finished) == 1


def test_timeline_upmixes_mono_buffers_to_device_channels():
    timeline = PlaybackTimeline(sample_rate=10, channels=2)
    timeline.place(np.full(3, 0.5, dtype=np.float32), 0.0, lambda t: None)
    block, finished = timeline.render(3)
    assert block.shape == (3, 2)
    assert block.tolist() == [[0.5, 0.5]] * 3
    assert len(finished) == 1
