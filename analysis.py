"""Hand filtering and bar-aligned section segmentation."""

import logging
import math
from typing import Iterable, List, Optional, Sequence

from config import (DEFAULT_BEATS_PER_MEASURE, DEFAULT_TEMPO_BPM,
                    HAND_BOTH, HAND_LEFT, HAND_RIGHT, HAND_SELECTIONS)
from errors import EmptySelectionError
from models import MidiTrack, NoteEvent, ParsedSong, Section

logger = logging.getLogger(__name__)

# Hand selection is positional: track 0 is the left hand, track 1 the right.
HAND_TRACK_INDEX = {HAND_LEFT: 0, HAND_RIGHT: 1}


def filter_tracks(tracks: Sequence[MidiTrack], hand_selection: str) -> List[NoteEvent]:
    """Returns the notes of the selected tracks as one list, stable-sorted by start time.

    Raises EmptySelectionError when the selection contains no notes.
    """
    if hand_selection not in HAND_SELECTIONS:
        raise ValueError(f"Unknown hand selection: {hand_selection!r}")

    selected: List[NoteEvent] = []
    for position, track in enumerate(tracks):
        if hand_selection == HAND_BOTH or HAND_TRACK_INDEX[hand_selection] == position:
            selected.extend(track.notes)

    if not selected:
        raise EmptySelectionError(hand_selection)
    logger.debug("Processing %s hand(s): %d notes", hand_selection, len(selected))
    return sorted(selected, key=lambda n: n.start_time)


def time_per_bar(tempo_bpm: Optional[float] = None, beats_per_measure: Optional[int] = None) -> float:
    tempo = tempo_bpm or DEFAULT_TEMPO_BPM
    beats = beats_per_measure or DEFAULT_BEATS_PER_MEASURE
    if tempo <= 0 or beats <= 0:
        raise ValueError(f"tempo and beats must be positive, got {tempo} bpm, {beats} beats")
    return 60.0 / tempo * beats


def segment_sections(
    notes: Iterable[NoteEvent],
    total_duration: float,
    bars_per_section: int,
    tempo_bpm: Optional[float] = None,
    beats_per_measure: Optional[int] = None,
) -> List[Section]:
    """Partitions notes into contiguous sections of `bars_per_section` bars.

    The last section ends at `total_duration`; membership is start <= t < end,
    so a note starting exactly at `total_duration` belongs to no section.
    """
    if isinstance(bars_per_section, bool) or not isinstance(bars_per_section, int) or bars_per_section < 1:
        raise ValueError(f"bars_per_section must be an integer >= 1, got {bars_per_section!r}")

    bar = time_per_bar(tempo_bpm, beats_per_measure)
    notes = list(notes)
    if total_duration <= 0:
        return []

    total_bars = math.ceil(total_duration / bar)
    section_count = math.ceil(total_bars / bars_per_section)

    sections = []
    for i in range(section_count):
        start = i * bars_per_section * bar
        end = min((i + 1) * bars_per_section * bar, total_duration)
        members = tuple(n for n in notes if start <= n.start_time < end)
        sections.append(Section(index=i, start_time=start, end_time=end, notes=members))
    return sections


class SectionAnalyzer:
    """Re-derives the section list of one parsed song for a given hand/bars pair."""

    def __init__(self, song: ParsedSong):
        self.song = song

    def analyze(self, hand_selection: str = HAND_BOTH, bars_per_section: int = 4) -> List[Section]:
        notes = filter_tracks(self.song.tracks, hand_selection)
        sections = segment_sections(
            notes,
            self.song.duration,
            bars_per_section,
            tempo_bpm=self.song.tempo_bpm,
            beats_per_measure=self.song.beats_per_measure,
        )
        logger.info("Built %d sections (%s hand(s), %d bars each)", len(sections), hand_selection, bars_per_section)
        return sections
