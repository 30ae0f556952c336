"""
Runtime settings for the relay, read from environment variables.

Values are read once at startup (after the optional .env file has been loaded)
and validated with pydantic so that a bad deployment fails fast instead of
producing a broken audio cadence mid-call.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from voice_relay.config.constants import (
    DEFAULT_AGENT_URL,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_FRAME_MS,
    DEFAULT_FUNCTION_TIMEOUT,
    DEFAULT_FUNCTION_WATCHDOG,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_SILENCE_CHECK_INTERVAL,
    DEFAULT_SILENCE_GRACE_PERIOD,
    DEFAULT_SILENCE_TIMEOUT,
)


def frame_size_for(sample_rate: int, frame_ms: int) -> int:
    """Bytes in one 8-bit μ-law frame of ``frame_ms`` milliseconds."""
    if sample_rate <= 0 or frame_ms <= 0:
        raise ValueError("Invalid audio parameters")
    return sample_rate * frame_ms // 1000


class RelaySettings(BaseModel):
    """Validated runtime configuration."""

    deepgram_api_key: Optional[str] = Field(None, description="Voice-agent API key")
    agent_url: str = Field(DEFAULT_AGENT_URL, description="Upstream agent WebSocket URL")
    booking_api_url: Optional[str] = Field(None, description="Base URL of the booking API")
    internal_api_secret: Optional[str] = Field(None, description="Booking API shared secret")

    sample_rate: int = Field(DEFAULT_SAMPLE_RATE, description="μ-law sample rate (bytes/s)")
    frame_ms: int = Field(DEFAULT_FRAME_MS, description="Pacer tick interval in ms")
    frame_size: Optional[int] = Field(None, description="Bytes per pacer tick")

    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    silence_timeout: float = DEFAULT_SILENCE_TIMEOUT
    silence_check_interval: float = DEFAULT_SILENCE_CHECK_INTERVAL
    silence_grace_period: float = DEFAULT_SILENCE_GRACE_PERIOD
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    function_timeout: float = DEFAULT_FUNCTION_TIMEOUT
    function_watchdog: float = DEFAULT_FUNCTION_WATCHDOG

    listen_model: str = "nova-3"
    think_provider: str = "open_ai"
    think_model: str = "gpt-4.1-mini"
    speak_model: str = "aura-2-thalia-en"
    language: str = "en"

    @field_validator(
        "keepalive_interval",
        "silence_timeout",
        "silence_check_interval",
        "silence_grace_period",
        "connect_timeout",
        "handshake_timeout",
        "function_timeout",
        "function_watchdog",
    )
    def validate_positive(cls, v):
        """Durations must be strictly positive."""
        if v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @model_validator(mode="after")
    def validate_frame_size(self):
        """Frame size and tick interval must describe the same duration."""
        expected = frame_size_for(self.sample_rate, self.frame_ms)
        if self.frame_size is None:
            self.frame_size = expected
        elif self.frame_size != expected:
            raise ValueError(
                f"Frame size {self.frame_size} does not match "
                f"{self.frame_ms}ms at {self.sample_rate}Hz (expected {expected})"
            )
        return self

    @property
    def tick_interval_ms(self) -> float:
        return 1000 * self.frame_size / self.sample_rate

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """Build settings from environment variables."""
        env = os.environ

        def _get(name, default=None):
            value = env.get(name)
            return default if value in (None, "") else value

        return cls(
            deepgram_api_key=_get("DEEPGRAM_API_KEY"),
            agent_url=_get("AGENT_URL", DEFAULT_AGENT_URL),
            booking_api_url=_get("BOOKING_API_URL"),
            internal_api_secret=_get("INTERNAL_API_SECRET"),
            sample_rate=_get("AUDIO_SAMPLE_RATE", DEFAULT_SAMPLE_RATE),
            frame_ms=_get("AUDIO_FRAME_MS", DEFAULT_FRAME_MS),
            keepalive_interval=_get("KEEPALIVE_INTERVAL", DEFAULT_KEEPALIVE_INTERVAL),
            silence_timeout=_get("SILENCE_TIMEOUT", DEFAULT_SILENCE_TIMEOUT),
            silence_check_interval=_get("SILENCE_CHECK_INTERVAL", DEFAULT_SILENCE_CHECK_INTERVAL),
            silence_grace_period=_get("SILENCE_GRACE_PERIOD", DEFAULT_SILENCE_GRACE_PERIOD),
            connect_timeout=_get("CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT),
            handshake_timeout=_get("HANDSHAKE_TIMEOUT", DEFAULT_HANDSHAKE_TIMEOUT),
            function_timeout=_get("FUNCTION_TIMEOUT", DEFAULT_FUNCTION_TIMEOUT),
            function_watchdog=_get("FUNCTION_WATCHDOG", DEFAULT_FUNCTION_WATCHDOG),
            listen_model=_get("LISTEN_MODEL", "nova-3"),
            think_provider=_get("THINK_PROVIDER", "open_ai"),
            think_model=_get("THINK_MODEL", "gpt-4.1-mini"),
            speak_model=_get("SPEAK_MODEL", "aura-2-thalia-en"),
            language=_get("LANGUAGE", "en"),
        )
