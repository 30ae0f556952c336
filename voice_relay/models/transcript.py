"""
Transcript tracking for a single call.

The TranscriptLog is append-only for the lifetime of a CallSession and is handed
to the transcript store when the session ends.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from voice_relay.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

DUPLICATE_WINDOW_SECONDS = 5.0

SPEAKER_USER = "User"
SPEAKER_AGENT = "AI"


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: str
    text: str
    timestamp: datetime

    def as_dict(self):
        return {
            "speaker": self.speaker,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TranscriptLog:
    """Ordered (speaker, text, timestamp) records for one call."""

    call_id: Optional[str] = None
    entries: List[TranscriptEntry] = field(default_factory=list)

    def add_entry(
        self, speaker: str, text: str, timestamp: Optional[datetime] = None
    ) -> Optional[TranscriptEntry]:
        """
        Append an entry, skipping empty text and repeats of the same speaker
        and text within a few seconds (the agent reports some lines twice).

        Returns:
            The new entry, or None if it was skipped
        """
        text = (text or "").strip()
        if not text:
            return None
        timestamp = timestamp or datetime.now(timezone.utc)

        for entry in reversed(self.entries):
            if abs((timestamp - entry.timestamp).total_seconds()) >= DUPLICATE_WINDOW_SECONDS:
                break
            if entry.speaker == speaker and entry.text == text:
                logger.debug(f"Skipping duplicate transcript entry for call {self.call_id}: {speaker}: {text}")
                return None

        entry = TranscriptEntry(speaker, text, timestamp)
        self.entries.append(entry)
        logger.info(f"Transcript [{self.call_id}] {speaker}: {text}")
        return entry

    def __len__(self):
        return len(self.entries)

    def entries_by_speaker(self, speaker: str) -> List[TranscriptEntry]:
        return [entry for entry in self.entries if entry.speaker == speaker]

    def as_text(self) -> str:
        return "\n".join(
            f"[{entry.timestamp.isoformat()}] {entry.speaker}: {entry.text}"
            for entry in self.entries
        )

    def export(self) -> dict:
        """Export the transcript for storage."""
        return {
            "call_id": self.call_id,
            "entries": [entry.as_dict() for entry in self.entries],
            "entry_count": len(self.entries),
            "text": self.as_text(),
            "exported_at": datetime.now(timezone.utc).isoformat(),
        }
