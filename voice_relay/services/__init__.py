"""
Services module for the external connections of the relay.

Key components:
- agent_client: WebSocket client for the upstream voice-agent endpoint, with
  token authentication and a receive loop that hands every frame to the
  protocol state machine.
- collaborators: Interfaces of the business-side collaborators (agent
  configuration, function handler, transcript store) plus in-process
  implementations for development.
- booking_api: aiohttp implementations of those interfaces that call the
  booking API.

Usage examples:
```python
from voice_relay.services.booking_api import BookingApiClient, HttpFunctionHandler

client = BookingApiClient("https://booking.example.com", secret="...")
handler = HttpFunctionHandler(client)
result = await handler.invoke("get_services", {}, context)
await client.close()
```
"""
