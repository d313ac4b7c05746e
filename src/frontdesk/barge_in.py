"""
Barge-in detection while the agent is speaking.

Inbound frames received during playback go into a separate interrupt buffer.
Once that buffer holds more than BARGE_IN_THRESHOLD of audio the caller is
treated as interrupting: playback is cancelled and the buffered audio becomes
the beginning of the caller's next utterance. If playback ends first the
buffer was incidental audio and is thrown away.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import structlog

from src.frontdesk.audio import AudioFrame, TWILIO_SAMPLE_RATE, ms_to_samples, rms, samples_duration_ms
from src.frontdesk.endpointing import UtteranceBuffer

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InterruptAudio:
    """Audio that triggered a barge-in, handed over to the next utterance."""
    samples: np.ndarray
    started_at: float
    last_frame_at: float


class BargeInController:
    """Accumulates inbound audio during playback and decides when to cut it off."""

    def __init__(
        self,
        *,
        threshold_ms: int = 400,
        sample_rate: int = TWILIO_SAMPLE_RATE,
        speech_rms_threshold: int = 0,
    ):
        self.threshold_ms = threshold_ms
        self.sample_rate = sample_rate
        self.threshold_samples = ms_to_samples(threshold_ms, sample_rate)
        self.speech_rms_threshold = speech_rms_threshold

        self._buffer = UtteranceBuffer()
        self._started_at: Optional[float] = None
        self._last_frame_at: Optional[float] = None
        self._triggered = False

    @classmethod
    def from_config(cls, config) -> "BargeInController":
        return cls(
            threshold_ms=config.barge_in_threshold_ms,
            speech_rms_threshold=config.speech_rms_threshold,
        )

    @property
    def accumulated_samples(self) -> int:
        return len(self._buffer)

    @property
    def accumulated_ms(self) -> float:
        return samples_duration_ms(len(self._buffer), self.sample_rate)

    @property
    def triggered(self) -> bool:
        return self._triggered

    def on_frame(self, frame: AudioFrame) -> bool:
        """
        Accumulate one speaking-state frame.

        Returns True on the frame that pushes the buffer past the threshold.
        """
        if self._triggered:
            return False

        if self.speech_rms_threshold > 0 and rms(frame.samples) < self.speech_rms_threshold:
            # A quiet frame breaks continuity.
            self.discard()
            return False

        if self._buffer.is_empty:
            self._started_at = frame.received_at
        self._buffer.append(frame.samples)
        self._last_frame_at = frame.received_at

        if len(self._buffer) > self.threshold_samples:
            self._triggered = True
            logger.info(
                "Barge-in threshold exceeded",
                accumulated_ms=round(self.accumulated_ms, 1),
                threshold_ms=self.threshold_ms,
            )
            return True
        return False

    def take(self) -> InterruptAudio:
        """Hand over the interrupt buffer and reset."""
        started_at = self._started_at if self._started_at is not None else 0.0
        last_frame_at = self._last_frame_at if self._last_frame_at is not None else started_at
        audio = InterruptAudio(
            samples=self._buffer.take(),
            started_at=started_at,
            last_frame_at=last_frame_at,
        )
        self.discard()
        return audio

    def discard(self) -> None:
        self._buffer.clear()
        self._started_at = None
        self._last_frame_at = None
        self._triggered = False
