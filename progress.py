import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional

from models import SongIdentity
from storage import PracticeStorage

logger = logging.getLogger(__name__)

COMPLETE = 100


@dataclass
class ProgressStats:
    completed_count: int
    section_count: int
    completion_percentage: int


class ProgressTracker:
    """Per-section completion for the loaded song, written through to storage on every change."""

    def __init__(self, storage: PracticeStorage):
        self.storage = storage
        self.identity: Optional[SongIdentity] = None
        self.section_count = 0
        self.current_section_index = 0
        self.completed: Dict[int, int] = {}

    def load_song(self, identity: SongIdentity, section_count: int) -> int:
        """Restores the saved index and completions for `identity`, or starts fresh. Returns the index."""
        self.identity = identity
        self.section_count = section_count
        record = self.storage.get_song_progress(identity.key)
        if record:
            self.completed = {int(k): int(v) for k, v in (record.get('completedSections') or {}).items()}
            index = int(record.get('currentSectionIndex', 0))
            self.current_section_index = max(0, min(index, section_count - 1)) if section_count else 0
            logger.info("Restored progress for %s: section %d, %d completed",
                        identity.file_name, self.current_section_index, len(self.completed))
        else:
            self.completed = {}
            self.current_section_index = 0
        return self.current_section_index

    def mark_complete(self, section_index: int) -> bool:
        newly = self.completed.get(section_index) != COMPLETE
        self.completed[section_index] = COMPLETE
        self._persist()
        return newly

    def set_current_section(self, section_index: int) -> None:
        self.current_section_index = section_index
        self._persist()

    def completed_in_range(self) -> Dict[int, int]:
        """Completions for the current section list; a saved record may hold indices past it."""
        return {i: v for i, v in self.completed.items() if 0 <= i < self.section_count}

    def derived_stats(self) -> ProgressStats:
        completed = len(self.completed_in_range())
        if self.section_count == 0:
            percentage = 0
        else:
            percentage = round(completed / self.section_count * 100)
        return ProgressStats(completed, self.section_count, percentage)

    def _persist(self) -> bool:
        if self.identity is None:
            return False
        record = {
            'currentSectionIndex': self.current_section_index,
            'completedSections': {str(k): v for k, v in sorted(self.completed.items())},
            'totalSections': self.section_count,
            'completionPercentage': self.derived_stats().completion_percentage,
            'lastPlayedTimestamp': int(time.time() * 1000),
        }
        return self.storage.save_song_progress(self.identity.key, record)

    # --- Aggregate statistics ---
    def record_session(self, duration_minutes: float, sections_completed: int, notes_played: int,
                       today: Optional[str] = None) -> bool:
        return self.storage.update_practice_stats({
            'durationMinutes': duration_minutes,
            'sectionsCompletedThisSession': sections_completed,
            'notesPlayed': notes_played,
        }, today=today)

    def practice_stats(self) -> Dict:
        return self.storage.get_practice_stats()

    def practice_streak(self, today: Optional[date] = None) -> int:
        """Consecutive days with practice, counting back from today."""
        today = today or datetime.now(timezone.utc).date()
        days = set(self.practice_stats()['daily'])
        streak = 0
        while (today - timedelta(days=streak)).isoformat() in days:
            streak += 1
        return streak


def format_minutes(minutes: float) -> str:
    hours = int(minutes // 60)
    mins = round(minutes % 60)
    return f"{hours}h {mins}m" if hours > 0 else f"{mins}m"


@dataclass
class SessionAccumulator:
    """Counters for one app session, flushed once to the statistics document on teardown."""
    practice_seconds: int = 0
    notes_played: int = 0
    sections_completed: int = 0
    flushed: bool = False

    def sample(self, is_playing: bool) -> None:
        if is_playing:
            self.practice_seconds += 1

    def record_note(self) -> None:
        self.notes_played += 1

    def record_section_completed(self) -> None:
        self.sections_completed += 1

    @property
    def duration_minutes(self) -> float:
        return round(self.practice_seconds / 60.0, 2)

    def flush(self, tracker: ProgressTracker, today: Optional[str] = None) -> bool:
        if self.flushed or self.practice_seconds == 0:
            return False
        self.flushed = True
        logger.info("Recording session: %.2f min, %d sections, %d notes",
                    self.duration_minutes, self.sections_completed, self.notes_played)
        return tracker.record_session(self.duration_minutes, self.sections_completed, self.notes_played, today=today)
