"""
FastAPI server for the telephony-to-voice-agent relay.

This module initializes and configures the FastAPI application that serves as
the media-stream endpoint for the telephony carrier. Each stream is bridged to
its own voice-agent connection by a CallSession; business configuration,
function calls and transcript storage are delegated to the booking API when
BOOKING_API_URL is set.
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import dotenv
from fastapi import FastAPI, WebSocket

from voice_relay.config.logging_config import configure_logging
from voice_relay.config.settings import RelaySettings
from voice_relay.services.booking_api import (
    BookingApiClient,
    HttpAgentConfigProvider,
    HttpFunctionHandler,
    HttpTranscriptStore,
)
from voice_relay.services.collaborators import (
    AgentConfig,
    LoggingTranscriptStore,
    StaticAgentConfigProvider,
    UnavailableFunctionHandler,
)
from voice_relay.websocket_manager import WebSocketManager

# Load environment variables from .env file if it exists
env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)

# Configure logging
logger = configure_logging()

# Get configuration from environment variables
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "0.0.0.0")

DEFAULT_PROMPT = (
    "You are a friendly phone receptionist. Help the caller book, change or cancel "
    "appointments. Keep answers short."
)
DEFAULT_FUNCTIONS = [
    {
        "name": "get_services",
        "description": "List the services the business offers.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
]


def build_websocket_manager(settings: RelaySettings, booking_client: Optional[BookingApiClient] = None):
    """
    Wire the collaborators for the configured environment.

    With a booking client everything goes through the booking API; without one
    a fixed prompt is used, functions answer with an error and transcripts are
    logged.
    """
    if booking_client is not None:
        return WebSocketManager(
            settings=settings,
            config_provider=HttpAgentConfigProvider(booking_client),
            function_handler=HttpFunctionHandler(booking_client),
            transcript_store=HttpTranscriptStore(booking_client),
        )
    logger.warning("BOOKING_API_URL not set, using a static agent configuration")
    return WebSocketManager(
        settings=settings,
        config_provider=StaticAgentConfigProvider(
            AgentConfig(prompt=os.getenv("AGENT_PROMPT", DEFAULT_PROMPT), functions=DEFAULT_FUNCTIONS)
        ),
        function_handler=UnavailableFunctionHandler(),
        transcript_store=LoggingTranscriptStore(),
    )


settings = RelaySettings.from_env()
booking_client = (
    BookingApiClient(settings.booking_api_url, settings.internal_api_secret, settings.function_timeout)
    if settings.booking_api_url
    else None
)
websocket_manager = build_websocket_manager(settings, booking_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Voice relay starting: {settings.frame_size} byte frames every {settings.tick_interval_ms:g}ms"
    )
    yield
    for session in list(websocket_manager.session_manager.get_all_sessions().values()):
        await session.close("server shutdown")
    if booking_client is not None:
        await booking_client.close()
    logger.info("Voice relay stopped")


# Create FastAPI application
app = FastAPI(
    title="Voice Relay",
    description="Relay between telephony media streams and a voice-agent WebSocket",
    version="1.0.0",
    lifespan=lifespan,
)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for the telephony media stream.

    Handles the complete lifecycle of one call: connected, start (session
    creation and agent handshake), media in both directions, and stop.
    """
    await websocket_manager.handle_websocket(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status, whether the agent API key is configured and the number
        of active call sessions.
    """
    return {
        "status": "healthy",
        "api_key_configured": bool(settings.deepgram_api_key),
        "booking_api_configured": booking_client is not None,
        "active_sessions": len(websocket_manager.session_manager),
    }


@app.get("/")
async def root():
    """Root endpoint to display basic information about the API."""
    return {
        "name": "Voice Relay",
        "description": "Relay between telephony media streams and a voice-agent WebSocket",
        "version": "1.0.0",
        "endpoints": {
            "/ws": "WebSocket endpoint for the telephony media stream",
            "/health": "Health check endpoint",
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on http://{HOST}:{PORT}")
    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        ws_ping_interval=5,
        ws_max_size=16777216,  # 16MB - large enough for audio chunks
        ws_ping_timeout=20,
        http="h11",
    )
