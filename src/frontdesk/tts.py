"""
Text-to-speech for agent replies.

Synthesizers return linear PCM and the sample rate it was produced at; the
pipeline resamples to 8kHz and encodes mu-law for Twilio.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import structlog
from openai import AsyncOpenAI

from src.frontdesk.audio import pcm16_bytes_to_samples, samples_duration_ms
from src.frontdesk.config import get_config
from src.frontdesk.resilience import CallPolicy, ResilientCaller

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SynthesisResult:
    samples: np.ndarray
    sample_rate: int
    latency_ms: float = 0.0

    @property
    def duration_ms(self) -> float:
        return samples_duration_ms(int(self.samples.shape[0]), self.sample_rate)


class Synthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> SynthesisResult:
        """
        Raises:
            ExternalCallError: synthesis failed after retries
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class OpenAISynthesizer(Synthesizer):
    """
    OpenAI Text-to-Speech (non-streaming).

    Requests raw `pcm` output: 16-bit little-endian mono at 24kHz.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        client: Optional[AsyncOpenAI] = None,
        caller: Optional[ResilientCaller] = None,
    ):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self._caller = caller or ResilientCaller(CallPolicy.from_config("tts", self.config, timeout_s=15.0))

    async def synthesize(self, text: str) -> SynthesisResult:
        if not text or not text.strip():
            return SynthesisResult(samples=np.zeros(0, dtype=np.int16), sample_rate=self.config.tts_sample_rate)

        start_time = time.time()

        async def _request() -> bytes:
            resp = await self._client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
                response_format="pcm",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            aread = getattr(resp, "aread", None)
            if callable(aread):
                return await aread()
            return bytes(resp)

        pcm_bytes = await self._caller.call(_request)
        result = SynthesisResult(
            samples=pcm16_bytes_to_samples(pcm_bytes),
            sample_rate=self.config.tts_sample_rate,
            latency_ms=(time.time() - start_time) * 1000,
        )
        logger.debug(
            "TTS synthesized",
            chars=len(text),
            audio_ms=round(result.duration_ms, 1),
            latency_ms=round(result.latency_ms, 2),
        )
        return result
