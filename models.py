import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import DEFAULT_PREFERENCES

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
FLAT_TO_SHARP = {"Db": "C#", "Eb": "D#", "Gb": "F#", "Ab": "G#", "Bb": "A#"}
MIDDLE_C = 60

_NOTE_RE = re.compile(r"^([A-Ga-g])([#b]?)(-?\d+)$")


def midi_note_name(midi: int) -> str:
    """60 -> 'C4'. Sharps only."""
    octave = midi // 12 - 1
    return f"{NOTE_NAMES[midi % 12]}{octave}"


def note_name_to_midi(name: str) -> int:
    m = _NOTE_RE.match(name.strip())
    if not m:
        raise ValueError(f"Could not parse note name: {name!r}")
    letter, accidental, octave_str = m.groups()
    base = {"c": 0, "d": 2, "e": 4, "f": 5, "g": 7, "a": 9, "b": 11}[letter.lower()]
    if accidental == "#":
        base += 1
    elif accidental == "b":
        base -= 1
    return 12 * (int(octave_str) + 1) + base


@dataclass(frozen=True)
class NoteEvent:
    start_time: float
    duration: float
    pitch_name: str
    velocity: float = 0.8
    track_index: int = 0

    def __post_init__(self):
        if self.start_time < 0:
            raise ValueError(f"start_time must be >= 0, got {self.start_time}")
        if self.duration <= 0:
            raise ValueError(f"duration must be > 0, got {self.duration}")
        if not 0.0 <= self.velocity <= 1.0:
            raise ValueError(f"velocity must be in [0, 1], got {self.velocity}")
        if self.track_index < 0:
            raise ValueError(f"track_index must be >= 0, got {self.track_index}")

    @property
    def midi(self) -> int:
        return note_name_to_midi(self.pitch_name)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass
class MidiTrack:
    index: int
    name: str
    notes: List[NoteEvent] = field(default_factory=list)

    @property
    def note_count(self) -> int:
        return len(self.notes)

    @property
    def avg_pitch(self) -> Optional[float]:
        if not self.notes:
            return None
        return sum(n.midi for n in self.notes) / len(self.notes)

    @property
    def hand_guess(self) -> Optional[str]:
        # Informational only: the hand filter selects by track position.
        avg = self.avg_pitch
        if avg is None:
            return None
        return 'left' if avg < MIDDLE_C else 'right'


@dataclass
class ParsedSong:
    tracks: List[MidiTrack]
    duration: float
    tempo_bpm: Optional[float] = None
    beats_per_measure: Optional[int] = None
    beat_type: Optional[int] = None
    name: str = ''

    @property
    def note_count(self) -> int:
        return sum(t.note_count for t in self.tracks)


@dataclass(frozen=True)
class Section:
    index: int
    start_time: float
    end_time: float
    notes: Tuple[NoteEvent, ...] = ()

    @property
    def length(self) -> float:
        return self.end_time - self.start_time


@dataclass
class PlaybackState:
    current_section_index: int = 0
    is_playing: bool = False
    loop_enabled: bool = DEFAULT_PREFERENCES['isLooping']
    tempo_scale: float = DEFAULT_PREFERENCES['playbackRate']
    transport_position_seconds: float = 0.0


@dataclass(frozen=True)
class SongIdentity:
    """Disambiguates persisted progress between different files sharing a name."""
    file_name: str
    file_size: int
    last_modified: int

    @property
    def key(self) -> str:
        return f"{self.file_name}_{self.file_size}_{self.last_modified}"

    @classmethod
    def from_path(cls, path: str) -> "SongIdentity":
        st = os.stat(path)
        return cls(os.path.basename(path), st.st_size, int(st.st_mtime * 1000))

    def as_file_info(self) -> Dict[str, object]:
        return {'name': self.file_name, 'size': self.file_size, 'lastModified': self.last_modified}
