"""
Registry of active call sessions.

This module provides the SessionManager class which tracks the CallSession
instances currently alive in this process. The registry only indexes sessions by
call id; it never holds per-call audio or transcript state, which stays inside
each CallSession.
"""

from typing import TYPE_CHECKING, Dict, Optional

if TYPE_CHECKING:
    from voice_relay.bot.call_session import CallSession


class SessionManager:
    """
    Manages the set of active call sessions.

    Sessions are added when the telephony leg starts a stream and removed when
    the session tears down, whichever leg triggered it.
    """

    def __init__(self):
        """Initialize an empty dictionary of active sessions."""
        self.active_sessions: Dict[str, "CallSession"] = {}

    def add_session(self, session: "CallSession"):
        """
        Add a session to the registry.

        Args:
            session: The call session, keyed by its call id
        """
        self.active_sessions[session.call_id] = session

    def get_session(self, call_id: str) -> Optional["CallSession"]:
        """
        Get an active session by its call id.

        Returns:
            The session, or None if the call is not active
        """
        return self.active_sessions.get(call_id)

    def remove_session(self, call_id: str):
        """
        Remove a session from the registry.

        Args:
            call_id: Call identifier of the session to remove
        """
        self.active_sessions.pop(call_id, None)

    def get_all_sessions(self) -> Dict[str, "CallSession"]:
        return self.active_sessions

    def __len__(self):
        return len(self.active_sessions)
