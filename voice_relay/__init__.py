"""
Voice Relay - Telephony Media Stream to Voice Agent Bridge

This application bridges a telephony media stream (8 kHz μ-law audio carried in
JSON envelopes over a WebSocket) to a cloud voice-agent endpoint that speaks a
mixed binary/JSON WebSocket protocol. It keeps audio flowing at a constant
cadence in both directions and answers the agent's function-call requests by
calling an external booking API over HTTP.

Architecture Overview:
- FastAPI server exposing a WebSocket endpoint for the telephony leg
- One CallSession per call, owning every piece of per-call state
- Jitter-buffered pacer emitting one telephony frame per tick
- Table-driven state machine for the upstream agent protocol
- Keep-alive and silence supervisors with owned, cancelable timers

Key Components:
- bot: Per-call components (pacer, protocol state machine, supervisors,
  function-call dispatcher, telephony relay, call session)
- config: Constants, settings and logging setup
- handlers: Event handlers for the telephony WebSocket protocol
- models: Pydantic message schemas, session registry and transcript log
- services: Clients for the upstream agent and the external HTTP collaborators
- websocket_manager: Routing of telephony WebSocket messages

Getting Started:
1. Set up environment variables:
   - DEEPGRAM_API_KEY: API key for the voice-agent endpoint
   - BOOKING_API_URL: Base URL of the booking API
   - INTERNAL_API_SECRET: Shared secret for the booking API
   - PORT / HOST / LOG_LEVEL: Server settings

2. Start the server:
   ```bash
   python run.py
   ```

3. Point the carrier's media stream at ws://your-server:8000/ws and pass the
   tenant id as the `business_id` custom parameter.
"""
