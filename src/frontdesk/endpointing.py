"""
Turn boundary detection (endpointing).

Frames are appended while the call is listening; a periodic check decides
whether the caller has finished:

    silence = now - last_frame_at
    span    = now - utterance_started_at
    finalize when silence > SILENCE_THRESHOLD or span > MAX_UTTERANCE

The max-duration cap keeps a caller who never pauses from growing the buffer
without bound. Utterances shorter than MIN_UTTERANCE_SAMPLES are dropped
instead of being sent to STT (noise bursts, line clicks).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np
import structlog

from src.frontdesk.audio import AudioFrame, TWILIO_SAMPLE_RATE, rms, samples_duration_ms

logger = structlog.get_logger(__name__)


class BoundaryDecision(str, Enum):
    WAIT = "wait"
    FINALIZE = "finalize"
    DISCARD = "discard"


class UtteranceBuffer:
    """PCM accumulated since the last turn boundary."""

    def __init__(self) -> None:
        self._chunks: List[np.ndarray] = []
        self._num_samples = 0

    def __len__(self) -> int:
        return self._num_samples

    @property
    def is_empty(self) -> bool:
        return self._num_samples == 0

    def append(self, samples: np.ndarray) -> None:
        if samples.size:
            self._chunks.append(samples)
            self._num_samples += int(samples.shape[0])

    def take(self) -> np.ndarray:
        """Return all samples and clear the buffer in one step."""
        chunks, self._chunks = self._chunks, []
        self._num_samples = 0
        if not chunks:
            return np.zeros(0, dtype=np.int16)
        return np.concatenate(chunks).astype(np.int16, copy=False)

    def clear(self) -> None:
        self._chunks = []
        self._num_samples = 0


@dataclass(frozen=True)
class Utterance:
    """A finalized caller utterance ready for STT."""
    samples: np.ndarray
    started_at: float
    ended_at: float
    reason: str
    sample_rate: int = TWILIO_SAMPLE_RATE

    @property
    def duration_ms(self) -> float:
        return samples_duration_ms(int(self.samples.shape[0]), self.sample_rate)


@dataclass(frozen=True)
class BoundaryResult:
    decision: BoundaryDecision
    reason: str = ""
    silence_ms: float = 0.0
    span_ms: float = 0.0
    utterance: Optional[Utterance] = None


class TurnBoundaryDetector:
    """Silence/duration endpointing over a single live utterance buffer."""

    def __init__(
        self,
        *,
        silence_threshold_ms: int = 800,
        max_utterance_ms: int = 6000,
        min_utterance_samples: int = 4000,
        speech_rms_threshold: int = 0,
    ):
        self.silence_threshold_ms = silence_threshold_ms
        self.max_utterance_ms = max_utterance_ms
        self.min_utterance_samples = min_utterance_samples
        self.speech_rms_threshold = speech_rms_threshold

        self._buffer = UtteranceBuffer()
        self._last_frame_at: Optional[float] = None
        self._utterance_started_at: Optional[float] = None

    @classmethod
    def from_config(cls, config) -> "TurnBoundaryDetector":
        return cls(
            silence_threshold_ms=config.silence_threshold_ms,
            max_utterance_ms=config.max_utterance_ms,
            min_utterance_samples=config.min_utterance_samples,
            speech_rms_threshold=config.speech_rms_threshold,
        )

    @property
    def buffered_samples(self) -> int:
        return len(self._buffer)

    @property
    def utterance_started_at(self) -> Optional[float]:
        return self._utterance_started_at

    @property
    def last_frame_at(self) -> Optional[float]:
        return self._last_frame_at

    def _is_activity(self, frame: AudioFrame) -> bool:
        if self.speech_rms_threshold <= 0:
            return True
        return rms(frame.samples) >= self.speech_rms_threshold

    def on_frame(self, frame: AudioFrame, now: Optional[float] = None) -> None:
        """Append a listening-state frame and update the activity timestamps."""
        now = frame.received_at if now is None else now

        if not self._is_activity(frame):
            # Quiet frames extend a live utterance but never start one or reset silence.
            if not self._buffer.is_empty:
                self._buffer.append(frame.samples)
            return

        if self._buffer.is_empty:
            self._utterance_started_at = now
        self._buffer.append(frame.samples)
        self._last_frame_at = now

    def seed(self, samples: np.ndarray, *, started_at: float, last_frame_at: float) -> None:
        """Start a new utterance from audio captured elsewhere (barge-in handover)."""
        self._buffer.clear()
        self._buffer.append(samples)
        self._utterance_started_at = started_at
        self._last_frame_at = last_frame_at

    def evaluate(self, now: float) -> BoundaryResult:
        """Decide without mutating anything."""
        if self._buffer.is_empty or self._last_frame_at is None:
            return BoundaryResult(BoundaryDecision.WAIT)

        silence_ms = (now - self._last_frame_at) * 1000
        started = self._utterance_started_at if self._utterance_started_at is not None else now
        span_ms = (now - started) * 1000

        if silence_ms > self.silence_threshold_ms:
            reason = "silence"
        elif span_ms > self.max_utterance_ms:
            reason = "max_duration"
        else:
            return BoundaryResult(BoundaryDecision.WAIT, silence_ms=silence_ms, span_ms=span_ms)

        decision = (
            BoundaryDecision.FINALIZE
            if len(self._buffer) >= self.min_utterance_samples
            else BoundaryDecision.DISCARD
        )
        return BoundaryResult(decision, reason=reason, silence_ms=silence_ms, span_ms=span_ms)

    def poll(self, now: Optional[float] = None) -> BoundaryResult:
        """
        Run the periodic boundary check.

        FINALIZE hands back the utterance and clears the buffer; DISCARD clears
        the buffer without emitting anything; WAIT leaves everything untouched.
        """
        now = time.monotonic() if now is None else now
        result = self.evaluate(now)

        if result.decision == BoundaryDecision.WAIT:
            return result

        started_at = self._utterance_started_at if self._utterance_started_at is not None else now
        samples = self._buffer.take()
        self.reset()

        if result.decision == BoundaryDecision.DISCARD:
            logger.debug(
                "Utterance below minimum discarded",
                samples=int(samples.shape[0]),
                min_samples=self.min_utterance_samples,
                reason=result.reason,
            )
            return result

        utterance = Utterance(samples=samples, started_at=started_at, ended_at=now, reason=result.reason)
        return BoundaryResult(
            result.decision,
            reason=result.reason,
            silence_ms=result.silence_ms,
            span_ms=result.span_ms,
            utterance=utterance,
        )

    def reset(self) -> None:
        """Drop the buffer and both timestamps."""
        self._buffer.clear()
        self._last_frame_at = None
        self._utterance_started_at = None
