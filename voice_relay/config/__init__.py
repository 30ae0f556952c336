"""
Configuration module for the voice relay.

This module provides centralized configuration management for the entire application,
including constants, logging setup, and environment-based settings.

Key components:
- constants: Defines application-wide constants used across modules, including
  telephony event names, upstream message types, and timing defaults.
- logging_config: The shared relay logger, with every line tagged by the id of
  the call it belongs to, on stdout and an optional rotating file.
- settings: Pydantic model of the runtime settings, built from environment variables.

Usage examples:
```python
from voice_relay.config.constants import LOGGER_NAME, MESSAGE_TYPE_KEEPALIVE
from voice_relay.config.logging_config import configure_logging
from voice_relay.config.settings import RelaySettings

logger = configure_logging()
settings = RelaySettings.from_env()
logger.info(f"Pacer tick: {settings.tick_interval_ms}ms")
```
"""
