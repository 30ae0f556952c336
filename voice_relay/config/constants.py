"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for protocol names and audio defaults so that the
telephony and upstream legs agree on naming.
"""

# Logger name used throughout the application
LOGGER_NAME = "voice_relay"

# Default upstream voice-agent endpoint
DEFAULT_AGENT_URL = "wss://agent.deepgram.com/v1/agent/converse"

# Audio defaults for an 8 kHz μ-law telephony leg
AUDIO_ENCODING_MULAW = "mulaw"
DEFAULT_SAMPLE_RATE = 8000
DEFAULT_FRAME_MS = 20
MULAW_SILENCE_BYTE = 0xFF
FADE_IN_MS = 30
UTTERANCE_GAP_MS = 500

# Supervisor defaults (seconds)
DEFAULT_KEEPALIVE_INTERVAL = 4.0
DEFAULT_SILENCE_TIMEOUT = 10.0
DEFAULT_SILENCE_CHECK_INTERVAL = 1.0
DEFAULT_SILENCE_GRACE_PERIOD = 4.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_FUNCTION_TIMEOUT = 8.0
DEFAULT_FUNCTION_WATCHDOG = 8.0

# WebSocket close codes treated as a normal shutdown
NORMAL_CLOSE_CODES = (1000, 1001)

# Telephony event constants
EVENT_CONNECTED = "connected"
EVENT_START = "start"
EVENT_MEDIA = "media"
EVENT_STOP = "stop"
EVENT_MARK = "mark"
EVENT_DTMF = "dtmf"
EVENT_CLEAR = "clear"

# Upstream message type constants
MESSAGE_TYPE_WELCOME = "Welcome"
MESSAGE_TYPE_SETTINGS = "Settings"
MESSAGE_TYPE_SETTINGS_APPLIED = "SettingsApplied"
MESSAGE_TYPE_KEEPALIVE = "KeepAlive"
MESSAGE_TYPE_RESULTS = "Results"
MESSAGE_TYPE_CONVERSATION_TEXT = "ConversationText"
MESSAGE_TYPE_HISTORY = "History"
MESSAGE_TYPE_SPEECH_STARTED = "SpeechStarted"
MESSAGE_TYPE_USER_STARTED_SPEAKING = "UserStartedSpeaking"
MESSAGE_TYPE_UTTERANCE_END = "UtteranceEnd"
MESSAGE_TYPE_TTS_AUDIO = "TtsAudio"
MESSAGE_TYPE_AGENT_AUDIO_DONE = "AgentAudioDone"
MESSAGE_TYPE_AGENT_THINKING = "AgentThinking"
MESSAGE_TYPE_AGENT_STARTED_SPEAKING = "AgentStartedSpeaking"
MESSAGE_TYPE_FUNCTION_CALL = "FunctionCall"
MESSAGE_TYPE_FUNCTION_CALL_REQUEST = "FunctionCallRequest"
MESSAGE_TYPE_FUNCTION_CALL_RESPONSE = "FunctionCallResponse"
MESSAGE_TYPE_INJECT_AGENT_MESSAGE = "InjectAgentMessage"
MESSAGE_TYPE_ERROR = "Error"
MESSAGE_TYPE_WARNING = "Warning"

# Farewell spoken by the agent when the caller stays silent
SILENCE_FAREWELL_MESSAGE = (
    "I notice you've been quiet for a while. Thank you for calling! Goodbye!"
)

# Words in a caller transcript that should lead to a function call
FUNCTION_TRIGGER_KEYWORDS = (
    "available",
    "appointment",
    "book",
    "schedule",
    "reschedule",
    "cancel",
    "tomorrow",
    "today",
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# Functions answered by the relay itself instead of the booking API
LOCAL_FUNCTION_END_CALL = "end_call"
