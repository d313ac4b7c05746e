"""
Tests for barge-in detection.
"""

import numpy as np

from src.frontdesk.audio import AudioFrame, FRAME_SAMPLES
from src.frontdesk.barge_in import BargeInController


def _frame(seq, at, level=1000):
    return AudioFrame(seq=seq, samples=np.full(FRAME_SAMPLES, level, dtype=np.int16), received_at=at)


class TestBargeInThreshold:
    def test_threshold_in_samples(self):
        assert BargeInController().threshold_samples == 3200

    def test_exactly_400ms_does_not_trigger(self):
        controller = BargeInController()

        fired = [controller.on_frame(_frame(i, i * 0.02)) for i in range(20)]

        assert not any(fired)
        assert controller.accumulated_samples == 3200
        assert controller.accumulated_ms == 400.0

    def test_frame_past_threshold_triggers_once(self):
        controller = BargeInController()
        for i in range(20):
            controller.on_frame(_frame(i, 1.0))

        assert controller.on_frame(_frame(20, 1.5)) is True
        assert controller.triggered
        assert controller.on_frame(_frame(21, 1.5)) is False

    def test_take_hands_over_audio(self):
        controller = BargeInController()
        controller.on_frame(_frame(0, 1.0))
        for i in range(1, 21):
            controller.on_frame(_frame(i, 1.25))

        audio = controller.take()

        assert audio.samples.shape == (3360,)
        assert audio.started_at == 1.0
        assert audio.last_frame_at == 1.25
        assert controller.accumulated_samples == 0
        assert controller.triggered is False

    def test_discard(self):
        controller = BargeInController()
        for i in range(10):
            controller.on_frame(_frame(i, 0.0))

        controller.discard()

        assert controller.accumulated_samples == 0


class TestBargeInEnergyGate:
    def test_quiet_frame_breaks_continuity(self):
        controller = BargeInController(speech_rms_threshold=500)
        for i in range(15):
            controller.on_frame(_frame(i, 0.0))

        controller.on_frame(_frame(15, 0.0, level=5))
        assert controller.accumulated_samples == 0

        fired = [controller.on_frame(_frame(16 + i, 0.0)) for i in range(20)]
        assert not any(fired)

    def test_custom_threshold(self):
        controller = BargeInController(threshold_ms=100)
        assert controller.threshold_samples == 800

        assert controller.on_frame(_frame(0, 0.0)) is False
        for i in range(1, 5):
            controller.on_frame(_frame(i, 0.0))
        assert controller.on_frame(_frame(5, 0.0)) is True
