"""
Configuration management for the front-desk voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_auth_token: str = ""
    validate_twilio_signature: bool = False
    greeting: str = "Hello! You are connected to Neurality Health. How can I help you today?"

    # OpenAI (STT / LLM / TTS)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_stt_model: str = "whisper-1"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    tts_sample_rate: int = 24000

    # Dialogue
    # - "llm" uses OpenAI JSON extraction; "rules" uses the deterministic extractor
    extractor: str = "llm"
    clinic_name: str = "Neurality Health"
    agent_name: str = "Ava"
    max_history_turns: int = 4

    # Turn taking (milliseconds unless noted)
    silence_threshold_ms: int = 800
    max_utterance_ms: int = 6000
    min_utterance_samples: int = 4000
    boundary_check_ms: int = 150
    barge_in_threshold_ms: int = 400
    # 0 disables the energy gate: every inbound frame counts as caller activity
    speech_rms_threshold: int = 0
    speech_tail_ms: int = 200
    playback_pace_ms: int = 20

    # External call policy (STT / LLM / TTS / tools)
    external_max_attempts: int = 2
    external_backoff_base_ms: int = 100
    external_failure_threshold: int = 3
    external_cooldown_s: float = 30.0

    # Room directory and audit sink
    room_service_url: str = ""
    room_service_token: str = ""
    audit_dir: str = "logs"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def uses_llm(self) -> bool:
        return self.extractor == "llm"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if self.validate_twilio_signature and not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")

        if self.extractor not in ("llm", "rules"):
            raise ConfigError(
                f"Invalid EXTRACTOR '{self.extractor}'. Expected 'llm' or 'rules'."
            )
        if self.silence_threshold_ms <= 0 or self.max_utterance_ms <= self.silence_threshold_ms:
            raise ConfigError(
                "MAX_UTTERANCE_MS must be greater than SILENCE_THRESHOLD_MS (both positive)."
            )
        if self.boundary_check_ms <= 0:
            raise ConfigError("BOUNDARY_CHECK_MS must be positive.")
        if self.external_max_attempts < 1:
            raise ConfigError("EXTERNAL_MAX_ATTEMPTS must be at least 1.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            openai_model=self.openai_model,
            openai_stt_model=self.openai_stt_model,
            openai_tts_model=self.openai_tts_model,
            extractor=self.extractor,
            silence_threshold_ms=self.silence_threshold_ms,
            max_utterance_ms=self.max_utterance_ms,
            min_utterance_samples=self.min_utterance_samples,
            barge_in_threshold_ms=self.barge_in_threshold_ms,
            speech_rms_threshold=self.speech_rms_threshold,
            room_service=self.room_service_url or "standalone",
            audit_dir=self.audit_dir,
            openai_key_set=bool(self.openai_api_key),
            twilio_token_set=bool(self.twilio_auth_token),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        validate_twilio_signature=_get_bool("VALIDATE_TWILIO_SIGNATURE", False),
        greeting=os.getenv(
            "GREETING",
            "Hello! You are connected to Neurality Health. How can I help you today?",
        ),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        tts_sample_rate=_get_int("TTS_SAMPLE_RATE", 24000),

        # Dialogue
        extractor=os.getenv("EXTRACTOR", "llm").strip().lower(),
        clinic_name=os.getenv("CLINIC_NAME", "Neurality Health"),
        agent_name=os.getenv("AGENT_NAME", "Ava"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 4),

        # Turn taking
        silence_threshold_ms=_get_int("SILENCE_THRESHOLD_MS", 800),
        max_utterance_ms=_get_int("MAX_UTTERANCE_MS", 6000),
        min_utterance_samples=_get_int("MIN_UTTERANCE_SAMPLES", 4000),
        boundary_check_ms=_get_int("BOUNDARY_CHECK_MS", 150),
        barge_in_threshold_ms=_get_int("BARGE_IN_THRESHOLD_MS", 400),
        speech_rms_threshold=_get_int("SPEECH_RMS_THRESHOLD", 0),
        speech_tail_ms=_get_int("SPEECH_TAIL_MS", 200),
        playback_pace_ms=_get_int("PLAYBACK_PACE_MS", 20),

        # External call policy
        external_max_attempts=_get_int("EXTERNAL_MAX_ATTEMPTS", 2),
        external_backoff_base_ms=_get_int("EXTERNAL_BACKOFF_BASE_MS", 100),
        external_failure_threshold=_get_int("EXTERNAL_FAILURE_THRESHOLD", 3),
        external_cooldown_s=_get_float("EXTERNAL_COOLDOWN_S", 30.0),

        # Room directory and audit sink
        room_service_url=os.getenv("ROOM_SERVICE_URL", "").rstrip("/"),
        room_service_token=os.getenv("ROOM_SERVICE_TOKEN", ""),
        audit_dir=os.getenv("AUDIT_DIR", "logs"),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
