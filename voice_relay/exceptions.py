"""Exception types raised across the relay."""


class VoiceRelayError(Exception):
    """Base class for relay errors."""


class UpstreamConnectError(VoiceRelayError):
    """The upstream agent socket could not be opened in time."""


class HandshakeError(VoiceRelayError):
    """The upstream handshake could not be completed."""


class SessionStartError(VoiceRelayError):
    """A call session could not be established."""


class FunctionHandlerError(VoiceRelayError):
    """The external function handler returned an unusable response."""
