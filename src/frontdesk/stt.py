"""
Speech-to-text for finalized utterances.

Utterances are transcribed in one request once the boundary detector has
finalized them; there is no streaming recognizer. Transcripts shorter than
MIN_TRANSCRIPT_CHARS are treated as "no utterance".
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import structlog
from openai import AsyncOpenAI

from src.frontdesk.audio import TWILIO_SAMPLE_RATE, samples_duration_ms, write_wav_mono_pcm16
from src.frontdesk.config import get_config
from src.frontdesk.resilience import CallPolicy, ResilientCaller

logger = structlog.get_logger(__name__)

MIN_TRANSCRIPT_CHARS = 3


@dataclass
class TranscriptionResult:
    """Result of transcribing one utterance."""
    text: str
    audio_ms: float = 0.0
    latency_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return len(self.text.strip()) < MIN_TRANSCRIPT_CHARS


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_requests: int = 0
    empty_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record(self, result: TranscriptionResult) -> None:
        self.total_requests += 1
        if result.is_empty:
            self.empty_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_requests - 1) + result.latency_ms)
            / self.total_requests
        )


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(self, samples: np.ndarray, sample_rate: int = TWILIO_SAMPLE_RATE) -> TranscriptionResult:
        """
        Raises:
            ExternalCallError: the recognizer could not be reached
        """
        raise NotImplementedError


class OpenAITranscriber(Transcriber):
    """Whisper transcription of an in-memory WAV upload."""

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        client: Optional[AsyncOpenAI] = None,
        caller: Optional[ResilientCaller] = None,
    ):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self._caller = caller or ResilientCaller(CallPolicy.from_config("stt", self.config, timeout_s=15.0))
        self._metrics = STTMetrics()

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def transcribe(self, samples: np.ndarray, sample_rate: int = TWILIO_SAMPLE_RATE) -> TranscriptionResult:
        start_time = time.time()
        wav_bytes = write_wav_mono_pcm16(samples, sample_rate)

        async def _request() -> Any:
            return await self._client.audio.transcriptions.create(
                model=self.config.openai_stt_model,
                file=("utterance.wav", wav_bytes, "audio/wav"),
                language="en",
            )

        response = await self._caller.call(_request)
        text = getattr(response, "text", None)
        if text is None:
            text = response if isinstance(response, str) else ""

        result = TranscriptionResult(
            text=text.strip(),
            audio_ms=samples_duration_ms(int(samples.shape[0]), sample_rate),
            latency_ms=(time.time() - start_time) * 1000,
        )
        self._metrics.record(result)

        logger.debug(
            "STT transcript",
            chars=len(result.text),
            audio_ms=round(result.audio_ms, 1),
            latency_ms=round(result.latency_ms, 2),
        )
        return result
