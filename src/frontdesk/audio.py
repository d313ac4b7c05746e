"""
Audio conversion utilities for the Twilio media bridge.

Twilio streams G.711 mu-law at 8kHz in 20ms frames (160 bytes). Internally the
engine works on linear PCM (numpy int16 arrays) at the same rate:

- decode():   mu-law bytes -> int16 samples (table lookup, all 256 codes)
- encode():   int16 samples -> mu-law bytes (standard G.711 segment search)
- resample(): nearest-sample rate conversion

Resampling uses nearest-sample selection without a low-pass filter.

All functions are pure.
"""

from __future__ import annotations

import io
import time
import wave
from dataclasses import dataclass, field
from typing import Generator, List

import numpy as np

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
FRAME_SAMPLES = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 samples for 20ms
TWILIO_FRAME_SIZE = FRAME_SAMPLES  # mu-law is 1 byte per sample
ULAW_SILENCE = 0xFF

_ULAW_BIAS = 0x84
_ULAW_CLIP = 32635


def _build_decode_table() -> np.ndarray:
    table = np.zeros(256, dtype=np.int16)
    for code in range(256):
        u_val = ~code & 0xFF
        t = ((u_val & 0x0F) << 3) + _ULAW_BIAS
        t <<= (u_val & 0x70) >> 4
        t -= _ULAW_BIAS
        table[code] = -t if (u_val & 0x80) else t
    table.setflags(write=False)
    return table


def _build_segment_table() -> np.ndarray:
    # Segment (exponent) for the top byte of a biased magnitude: floor(log2(n)).
    table = np.zeros(256, dtype=np.int32)
    for n in range(1, 256):
        table[n] = n.bit_length() - 1
    table.setflags(write=False)
    return table


_DECODE_TABLE = _build_decode_table()
_SEGMENT_TABLE = _build_segment_table()


@dataclass(frozen=True)
class AudioFrame:
    """A 20ms chunk of linear PCM tagged with a monotonic sequence number."""
    seq: int
    samples: np.ndarray
    received_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if self.samples.flags.writeable:
            self.samples.setflags(write=False)

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[0])


def decode(ulaw_bytes: bytes) -> np.ndarray:
    """
    Convert mu-law bytes to linear PCM 16-bit samples.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        int16 numpy array, one sample per input byte
    """
    if not ulaw_bytes:
        return np.zeros(0, dtype=np.int16)
    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _DECODE_TABLE[codes]


def encode(samples: np.ndarray) -> bytes:
    """
    Convert linear PCM 16-bit samples to mu-law bytes.

    encode(decode(b)) == b for every code except 0x7F ("negative zero"),
    which decodes to the same sample value as 0xFF.

    Args:
        samples: int16 samples (any integer array-like)

    Returns:
        Mu-law encoded bytes
    """
    pcm = np.asarray(samples, dtype=np.int32)
    if pcm.size == 0:
        return b""

    sign = np.where(pcm < 0, 0x80, 0)
    magnitude = np.minimum(np.abs(pcm), _ULAW_CLIP) + _ULAW_BIAS
    segment = _SEGMENT_TABLE[(magnitude >> 7) & 0xFF]
    mantissa = (magnitude >> (segment + 3)) & 0x0F
    ulaw = ~(sign | (segment << 4) | mantissa) & 0xFF
    return ulaw.astype(np.uint8).tobytes()


def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """
    Resample PCM using nearest-sample selection.

    Output sample i takes input sample floor(i * from_rate / to_rate). No
    low-pass filtering is applied.
    """
    pcm = np.asarray(samples, dtype=np.int16)
    if pcm.size == 0 or from_rate == to_rate:
        return pcm
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"Invalid sample rates: {from_rate} -> {to_rate}")

    out_len = (pcm.shape[0] * to_rate) // from_rate
    indices = (np.arange(out_len, dtype=np.int64) * from_rate) // to_rate
    return pcm[indices]


def pcm16_bytes_to_samples(pcm_bytes: bytes) -> np.ndarray:
    """Interpret little-endian 16-bit PCM bytes as samples."""
    if not pcm_bytes:
        return np.zeros(0, dtype=np.int16)
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    return np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.int16)


def samples_to_pcm16_bytes(samples: np.ndarray) -> bytes:
    return np.asarray(samples, dtype="<i2").tobytes()


def rms(samples: np.ndarray) -> int:
    """Root-mean-square energy of a block of samples."""
    pcm = np.asarray(samples, dtype=np.float64)
    if pcm.size == 0:
        return 0
    return int(np.sqrt(np.mean(pcm * pcm)))


def tts_pcm_to_twilio_ulaw(samples: np.ndarray, source_rate: int) -> bytes:
    """Convert synthesized PCM at any rate to Twilio-ready 8kHz mu-law."""
    return encode(resample(samples, source_rate, TWILIO_SAMPLE_RATE))


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk mu-law audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.
    The last chunk is padded with mu-law silence.
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def samples_duration_ms(num_samples: int, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """Duration of `num_samples` at `sample_rate` in milliseconds."""
    if num_samples <= 0 or sample_rate <= 0:
        return 0.0
    return num_samples * 1000.0 / sample_rate


def ms_to_samples(duration_ms: int, sample_rate: int = TWILIO_SAMPLE_RATE) -> int:
    return int(sample_rate * duration_ms / 1000)


def create_silence_ulaw(duration_ms: int) -> bytes:
    """Create mu-law silence of the given duration."""
    return bytes([ULAW_SILENCE]) * ms_to_samples(duration_ms)


def write_wav_mono_pcm16(samples: np.ndarray, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from samples."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(samples_to_pcm16_bytes(samples))
    return buf.getvalue()
