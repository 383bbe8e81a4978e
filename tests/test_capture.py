import base64

import numpy as np

from live_interpreter.capture import CapturePipeline


def test_chunks_forward_to_active_session():
    frames = []
    pipeline = CapturePipeline(lambda f: frames.append(f) or True, sample_rate=16000)
    assert pipeline.process_chunk(np.zeros(4096, dtype=np.float32)) is True
    assert pipeline.chunks_sent == 1
    assert frames[0].sample_rate == 16000
    assert len(base64.b64decode(frames[0].data)) == 4096 * 2


def test_chunks_dropped_when_nothing_active():
    pipeline = CapturePipeline(lambda f: False)
    for _ in range(3):
        assert pipeline.process_chunk(np.zeros(256, dtype=np.float32)) is False
    assert pipeline.chunks_dropped == 3
    assert pipeline.chunks_sent == 0
    pipeline.reset_counters()
    assert pipeline.chunks_dropped == 0
