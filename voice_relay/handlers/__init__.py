"""
Handlers module for the telephony media-stream WebSocket.

This module provides one handler per telephony event (connected, start, media,
stop, mark, dtmf). The WebSocketManager routes each decoded envelope to its
handler together with the per-connection TelephonyConnection state.

Usage examples:
```python
from voice_relay.handlers.telephony_handlers import TelephonyConnection, handle_media

connection = TelephonyConnection(websocket=websocket, manager=manager)
await handle_media({"event": "media", "media": {"payload": "AAAA"}}, connection)
```
"""
