"""State of the upstream agent connection."""

from enum import Enum


class UpstreamState(str, Enum):
    """Handshake states of the upstream agent connection."""
    CONNECTING = "connecting"
    AWAITING_WELCOME = "awaiting_welcome"
    CONFIGURING_AGENT = "configuring_agent"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


class UpstreamConnectionState:
    """Main handshake state plus the function-call-in-flight sub-flag."""

    def __init__(self):
        self.state = UpstreamState.CONNECTING
        self.function_call_in_flight = False
        self.socket_open = False
        self.close_code = None

    @property
    def is_ready(self) -> bool:
        return self.state == UpstreamState.READY

    @property
    def is_closed(self) -> bool:
        return self.state in (UpstreamState.CLOSING, UpstreamState.CLOSED)

    def __repr__(self):
        return (
            f"UpstreamConnectionState(state={self.state.value}, "
            f"function_call_in_flight={self.function_call_in_flight}, socket_open={self.socket_open})"
        )
